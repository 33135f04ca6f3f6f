"""
Background workers - periodic outbox flusher and inbound consumer

Each worker runs its tick on a daemon thread until stopped. A failing tick
is logged and the loop continues on the next tick: a stuck domain record
stays at the head of the outbox and is retried (and dead-lettered again)
every interval until it ships or an operator releases it.
"""

import threading

from mutation_kernel.kernel.context import RequestContext
from mutation_kernel.kernel.coordinator import InboundOutcome, MutationCoordinator
from mutation_kernel.kernel.errors import Cancelled, KernelError
from mutation_kernel.kernel.logging import get_logger

logger = get_logger(__name__)


class _PeriodicWorker:
    """Runs ``run_once`` on a thread every ``interval`` seconds"""

    name = "worker"

    def __init__(self, coordinator: MutationCoordinator, interval: float) -> None:
        self.coordinator = coordinator
        self.interval = interval
        self._ctx = RequestContext.background()
        self._thread: threading.Thread | None = None
        self.ticks = 0
        self.failures = 0

    def run_once(self, ctx: RequestContext) -> None:
        raise NotImplementedError

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._ctx = RequestContext.background()
        self._thread = threading.Thread(
            target=self._loop, name=f"mutation-kernel-{self.name}", daemon=True
        )
        self._thread.start()
        logger.info(f"{self.name} started", interval_seconds=self.interval)

    def stop(self, timeout: float = 5.0) -> None:
        """Cancel the worker context and wait for the loop to exit"""
        self._ctx.cancel()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info(f"{self.name} stopped", ticks=self.ticks, failures=self.failures)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        ctx = self._ctx
        while not ctx.cancelled:
            self.tick(ctx)
            if ctx.wait(self._next_wait()):
                break

    def _next_wait(self) -> float:
        return self.interval

    def tick(self, ctx: RequestContext) -> None:
        """Run one tick, logging any failure instead of raising it"""
        self.ticks += 1
        try:
            self.run_once(ctx)
        except Cancelled:
            logger.debug(f"{self.name} tick cancelled")
        except KernelError as e:
            self.failures += 1
            logger.error(
                f"{self.name} tick failed",
                error=str(e),
                code=e.code,
            )
        except Exception as e:
            self.failures += 1
            logger.error(
                f"{self.name} tick failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )


class OutboxFlusher(_PeriodicWorker):
    """Drains the outbox every ``outbox_flush_interval``"""

    name = "outbox_flusher"

    def __init__(self, coordinator: MutationCoordinator, interval: float | None = None) -> None:
        super().__init__(
            coordinator,
            interval
            if interval is not None
            else coordinator.config.outbox_flush_interval.total_seconds(),
        )

    def run_once(self, ctx: RequestContext) -> None:
        self.coordinator.flush_outbox(ctx)


class ConsumerWorker(_PeriodicWorker):
    """
    Polls the inbound consumer

    Keeps receiving while events are available and sleeps one
    ``consumer_poll_interval`` once the stream reports end of stream.
    """

    name = "consumer_worker"

    def __init__(self, coordinator: MutationCoordinator, interval: float | None = None) -> None:
        super().__init__(
            coordinator,
            interval
            if interval is not None
            else coordinator.config.consumer_poll_interval.total_seconds(),
        )
        self._last_outcome = InboundOutcome.IDLE

    def run_once(self, ctx: RequestContext) -> None:
        self._last_outcome = InboundOutcome.IDLE
        self._last_outcome = self.coordinator.consume_once(ctx)

    def _next_wait(self) -> float:
        if self._last_outcome is InboundOutcome.IDLE:
            return self.interval
        return 0.0


class KernelRuntime:
    """Starts and stops the background workers of one service together"""

    def __init__(
        self,
        coordinator: MutationCoordinator,
        *,
        flush_interval: float | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.flusher = OutboxFlusher(coordinator, flush_interval)
        self.consumer_worker: ConsumerWorker | None = None
        if coordinator.consumer is not None:
            self.consumer_worker = ConsumerWorker(coordinator, poll_interval)

    def start(self) -> None:
        self.flusher.start()
        if self.consumer_worker is not None:
            self.consumer_worker.start()

    def stop(self, timeout: float = 5.0) -> None:
        if self.consumer_worker is not None:
            self.consumer_worker.stop(timeout)
        self.flusher.stop(timeout)

    def __enter__(self) -> "KernelRuntime":
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()
