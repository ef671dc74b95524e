"""
Order Pipeline Telemetry
Structured lifecycle events and stage timings for orders, kept in a bounded
in-process window and mirrored to the standard logging tree
"""

import logging
import threading
from collections import Counter, deque
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from utils.timezone_utils import get_utc_for_db


class EventKind(Enum):
    BUSINESS = "business"
    ERROR = "error"
    TIMING = "timing"


@dataclass
class PipelineEvent:
    """One thing that happened to an order, or to a call made on its behalf"""
    kind: EventKind
    component: str
    name: str
    recorded_at: str
    order_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    duration_ms: Optional[float] = None
    succeeded: bool = True

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['kind'] = self.kind.value
        return data


class PipelineTelemetry:
    """
    Recent pipeline events plus running counters

    Counters survive the window; events beyond `window_size` are dropped
    oldest first. Both are surfaced on the health endpoint.
    """

    def __init__(self, window_size: int = 500):
        self._events: Deque[PipelineEvent] = deque(maxlen=window_size)
        self._counters: Counter = Counter()
        self._lock = threading.Lock()

    def record(self, event: PipelineEvent, level: int = logging.INFO) -> PipelineEvent:
        logging.getLogger(event.component).log(
            level,
            f"{event.kind.value}: {event.name}",
            extra={'order_id': event.order_id, 'context': event.details},
        )
        with self._lock:
            self._events.append(event)
            self._counters[f"{event.component}.{event.name}"] += 1
            if not event.succeeded:
                self._counters[f"{event.component}.{event.name}.failed"] += 1
        return event

    def recent(self, order_id: Optional[str] = None, kind: Optional[EventKind] = None) -> List[PipelineEvent]:
        """Events still in the window, oldest first, optionally filtered"""
        with self._lock:
            events = list(self._events)
        return [
            event for event in events
            if (order_id is None or event.order_id == order_id)
            and (kind is None or event.kind == kind)
        ]

    def counters(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def reset(self) -> None:
        with self._lock:
            self._events.clear()
            self._counters.clear()


_telemetry: Optional[PipelineTelemetry] = None


def get_telemetry() -> PipelineTelemetry:
    """Get global telemetry instance"""
    global _telemetry
    if _telemetry is None:
        _telemetry = PipelineTelemetry()
    return _telemetry


def log_business_event(component: str, event: str, details: Dict[str, Any], order_id: Optional[str] = None) -> PipelineEvent:
    """Order lifecycle milestone: created, paid, provisioned, expired..."""
    return get_telemetry().record(PipelineEvent(
        kind=EventKind.BUSINESS,
        component=component,
        name=event,
        recorded_at=get_utc_for_db(),
        order_id=order_id,
        details=details,
    ))


def log_stage_timing(component: str, operation: str, duration_ms: float, success: bool = True) -> PipelineEvent:
    return get_telemetry().record(
        PipelineEvent(
            kind=EventKind.TIMING,
            component=component,
            name=operation,
            recorded_at=get_utc_for_db(),
            duration_ms=round(duration_ms, 2),
            succeeded=success,
        ),
        level=logging.DEBUG,
    )


def log_error_with_context(component: str, error: Exception, context: Dict[str, Any], order_id: Optional[str] = None) -> PipelineEvent:
    """Failure attached to an order, with the exception type and message folded into the details"""
    return get_telemetry().record(
        PipelineEvent(
            kind=EventKind.ERROR,
            component=component,
            name=context.get('stage', 'error'),
            recorded_at=get_utc_for_db(),
            order_id=order_id,
            details={
                'error_type': type(error).__name__,
                'error_message': str(error),
                **context,
            },
            succeeded=False,
        ),
        level=logging.ERROR,
    )
