from enum import IntEnum

from pydantic import BaseModel


class EventPriority(IntEnum):
    """Priority levels for event processing in the event bus.

    Lower numeric values are dispatched first.

    Attributes:
        CRITICAL: Session state changes and errors.
        HIGH: Command matches and transcript lines.
        NORMAL: Default priority for status updates.
        LOW: Non-urgent notifications.
    """

    CRITICAL = 10
    HIGH = 20
    NORMAL = 50
    LOW = 80


class BaseEvent(BaseModel):
    """Root of the event hierarchy.

    Every event published through the EventBus or handed to the session controller
    inherits from this class.

    Attributes:
        priority: EventPriority level determining processing order (default NORMAL).
    """

    priority: EventPriority = EventPriority.NORMAL
