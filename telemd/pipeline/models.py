"""
Data models for the event pipeline.

Events are immutable once created; a Batch never changes its event list
after capture, only its retry counter.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class EventType(Enum):
    """Kinds of telemetry events emitted by the web application."""
    PAGE_VIEW = "page_view"
    SERVICE_VIEW = "service_view"
    BOOKING_STARTED = "booking_started"
    BOOKING_COMPLETED = "booking_completed"
    BOOKING_CANCELLED = "booking_cancelled"
    FORM_SUBMITTED = "form_submitted"
    CONVERSION = "conversion"
    ERROR = "error"
    CUSTOM = "custom"


@dataclass(frozen=True)
class EventContext:
    """Who produced an event."""
    ip_address: str
    user_id: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class Event:
    """A single telemetry record."""
    session_id: str
    event_type: EventType
    context: EventContext
    service_id: Optional[str] = None
    booking_id: Optional[str] = None
    event_type_id: Optional[int] = None
    duration: Optional[float] = None
    properties: Tuple[Tuple[str, Any], ...] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def create(cls, session_id: str, event_type: EventType, ip_address: str,
               user_id: Optional[str] = None, user_agent: Optional[str] = None,
               properties: Optional[Dict[str, Any]] = None, **kwargs) -> 'Event':
        """Build an event, freezing the properties mapping."""
        return cls(
            session_id=session_id,
            event_type=event_type,
            context=EventContext(ip_address=ip_address, user_id=user_id, user_agent=user_agent),
            properties=tuple(sorted((properties or {}).items())),
            **kwargs
        )

    @property
    def properties_dict(self) -> Dict[str, Any]:
        return dict(self.properties)

    def to_record(self) -> Dict[str, Any]:
        """Flatten to the column layout used by the event sink."""
        record: Dict[str, Any] = {
            'session_id': self.session_id,
            'event_type': self.event_type.value,
            'ip_address': self.context.ip_address,
            'created_at': self.created_at.isoformat(),
        }
        if self.context.user_id:
            record['user_id'] = self.context.user_id
        if self.context.user_agent:
            record['user_agent'] = self.context.user_agent
        if self.service_id:
            record['service_id'] = self.service_id
        if self.booking_id:
            record['booking_id'] = self.booking_id
        if self.event_type_id is not None:
            record['event_type_id'] = self.event_type_id
        if self.duration is not None:
            record['duration'] = self.duration
        if self.properties:
            record['properties'] = self.properties_dict
        return record


@dataclass
class Batch:
    """Events captured from the live queue at one flush."""
    id: str
    events: Tuple[Event, ...]
    created_at: datetime
    retry_count: int = 0

    def __len__(self) -> int:
        return len(self.events)


class DeliveryStatus(Enum):
    """What happened to a batch handed to the sink."""
    DELIVERED = "delivered"
    DEAD_LETTERED = "dead_lettered"
    DROPPED = "dropped"


@dataclass
class FlushResult:
    """Outcome of one flush or single-event delivery."""
    status: DeliveryStatus
    batch_id: Optional[str] = None
    event_count: int = 0
    attempts: int = 0
    error: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED
