"""
Typed event channel for cross-component signals.

Subscribers are called in registration order; a failing subscriber is logged
and does not stop delivery to the rest.
"""
import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Union

import structlog

logger = structlog.get_logger(__name__)


class EventType(Enum):
    """Events published by the session to its collaborators."""

    AUTHENTICATED = "authenticated"
    FORCED_LOGOUT = "forced_logout"
    CLEAR_CACHED_STATE = "clear_cached_state"
    AUTHORIZATION_FAILED = "authorization_failed"


@dataclass(frozen=True)
class Event:
    """A published event with an optional payload."""

    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)


Handler = Callable[[Event], Union[None, Awaitable[None]]]


class EventChannel:
    """In-process publish/subscribe keyed by ``EventType``."""

    def __init__(self) -> None:
        self._subscribers: Dict[EventType, List[Handler]] = {}

    def subscribe(self, event_type: EventType, handler: Handler) -> Callable[[], None]:
        """
        Register a handler (sync or async).

        Returns:
            Callable[[], None]: Unsubscribe function
        """
        handlers = self._subscribers.setdefault(event_type, [])
        handlers.append(handler)

        def unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    async def emit(self, event_type: EventType, **payload: Any) -> None:
        """Deliver an event to every subscriber, awaiting async handlers."""
        event = Event(type=event_type, payload=payload)
        logger.debug("event_emitted", event_type=event_type.value)

        for handler in list(self._subscribers.get(event_type, [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "event_handler_failed",
                    event_type=event_type.value,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(e),
                )
