"""
Engine events consumed by the host application.

Visualization and game logic subscribe here instead of polling the
calibration engine.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple, Type

from petgaze.utils.logger import get_logger

logger = get_logger(__name__)

Point = Tuple[float, float]


@dataclass(frozen=True)
class CalibrationStarted:
    target_count: int
    timestamp: float = 0.0


@dataclass(frozen=True)
class PointRecorded:
    index: int
    observed_point: Point
    target_point: Point
    residual: float  # Raw distance between observed and target (pixels)
    low_confidence: bool = False
    timestamp: float = 0.0


@dataclass(frozen=True)
class CalibrationCompleted:
    report: Any  # QualityReport
    timestamp: float = 0.0


@dataclass(frozen=True)
class CalibrationCancelled:
    completed_points: int
    timestamp: float = 0.0


@dataclass(frozen=True)
class FixationEvent:
    """Gaze dwelled inside a small radius long enough to count as a click."""

    point: Point
    duration: float
    timestamp: float = 0.0


@dataclass(frozen=True)
class QualityCheckCompleted:
    result: Any  # QualityCheckResult
    timestamp: float = 0.0


@dataclass
class _Subscription:
    callback: Callable[[Any], None]
    event_type: Optional[Type] = None


@dataclass
class EventBus:
    """
    Synchronous publish/subscribe hub.

    Subscribers run on the publishing thread (the main loop). A subscriber
    that raises is logged and skipped; it never breaks the publisher.
    """

    _subscriptions: List[_Subscription] = field(default_factory=list)

    def subscribe(self, callback: Callable[[Any], None], event_type: Optional[Type] = None):
        """
        Register a callback.

        Args:
            callback: Called with each matching event
            event_type: Only deliver events of this class (None = all events)
        """
        self._subscriptions.append(_Subscription(callback, event_type))

    def unsubscribe(self, callback: Callable[[Any], None]) -> bool:
        before = len(self._subscriptions)
        self._subscriptions = [s for s in self._subscriptions if s.callback != callback]
        return len(self._subscriptions) != before

    def publish(self, event: Any) -> int:
        """
        Deliver an event to matching subscribers.

        Returns:
            Number of subscribers that handled the event without error
        """
        delivered = 0
        for sub in list(self._subscriptions):
            if sub.event_type is not None and not isinstance(event, sub.event_type):
                continue
            try:
                sub.callback(event)
                delivered += 1
            except Exception as e:
                logger.error(f"Event subscriber failed on {type(event).__name__}: {e}")
        return delivered
