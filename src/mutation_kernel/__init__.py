"""
Mutation Kernel - reliable mutations and event emission for microservices

Caller-supplied idempotency keys make mutating requests safely retryable,
inbound events are processed at most once per event_id, and outbound
events travel through a transactional outbox with dead-letter fallback.
"""

from mutation_kernel.kernel.config import KernelConfig
from mutation_kernel.kernel.coordinator import MutationCoordinator
from mutation_kernel.kernel.models import Actor

__version__ = "0.1.0"
__all__ = ["Actor", "KernelConfig", "MutationCoordinator", "__version__"]
