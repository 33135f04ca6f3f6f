"""
Reference host services built on the mutation kernel

payout       - payout requests and the reward.payout_eligible consumer
escrow       - campaign escrow holds, releases, refunds and balances
portability  - user data exports and erase requests
"""
