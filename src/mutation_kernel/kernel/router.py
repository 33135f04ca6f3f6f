"""
Inbound event router

Maps each consumed event_type to exactly one handler. Handlers run
synchronously in the consumer worker; a handler's exception propagates to
the coordinator, which decides between dropping and dead-lettering.
"""

from collections.abc import Callable

from mutation_kernel.kernel.context import RequestContext
from mutation_kernel.kernel.envelope import EventEnvelope
from mutation_kernel.kernel.errors import UnsupportedEventType
from mutation_kernel.kernel.logging import get_logger

logger = get_logger(__name__)

EventHandler = Callable[[EventEnvelope, RequestContext], None]


class EventRouter:
    """
    Registry of inbound event handlers

    Each event type has a single handler, and optionally the partition path
    it is expected to carry so envelopes keyed on the wrong field are
    rejected before the handler sees them.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, EventHandler] = {}
        self._partition_paths: dict[str, str] = {}

    def register(
        self,
        event_type: str,
        handler: EventHandler,
        partition_key_path: str | None = None,
    ) -> None:
        """
        Register the handler for an inbound event type

        Raises:
            ValueError: If a handler is already registered for the type
        """
        if event_type in self._handlers:
            logger.error(
                "Event handler registration failed - already exists",
                event_type=event_type,
            )
            raise ValueError(f"Event handler already registered for {event_type}")
        self._handlers[event_type] = handler
        if partition_key_path:
            self._partition_paths[event_type] = partition_key_path
        logger.debug("Event handler registered", event_type=event_type)

    def expected_partition_key_path(self, event_type: str) -> str | None:
        return self._partition_paths.get(event_type)

    def handles(self, event_type: str) -> bool:
        return event_type in self._handlers

    def dispatch(self, envelope: EventEnvelope, ctx: RequestContext) -> None:
        """
        Run the handler registered for the envelope's event type

        Raises:
            UnsupportedEventType: If no handler is registered
        """
        handler = self._handlers.get(envelope.event_type)
        if handler is None:
            logger.warning(
                "No handler registered for event type",
                event_type=envelope.event_type,
                event_id=envelope.event_id,
                available_handlers=list(self._handlers),
            )
            raise UnsupportedEventType(envelope.event_type)
        handler(envelope, ctx)

    def event_types(self) -> list[str]:
        return list(self._handlers)

    def clear(self) -> None:
        """Remove all handlers (useful for testing)"""
        count = len(self._handlers)
        self._handlers.clear()
        self._partition_paths.clear()
        logger.info("Router cleared", handlers_removed=count)
