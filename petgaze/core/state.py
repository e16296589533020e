"""
Engine state management.

Defines the calibration state machine with validated transitions and the
shared gaze state read by the host application.
"""

import threading
from enum import Enum, auto
from typing import Optional, Set, Tuple
from dataclasses import dataclass


class CalibrationState(Enum):
    """
    Calibration protocol states.

    State transitions:
        IDLE -> WAITING_FOR_STABILITY -> COLLECTING_SAMPLES -> POINT_COMPLETE
        POINT_COMPLETE -> WAITING_FOR_STABILITY (next target)
        POINT_COMPLETE -> FITTING -> CALIBRATED
        IDLE -> CALIBRATED (saved profile)
        Any active state -> CANCELLED -> IDLE
    """

    IDLE = auto()
    WAITING_FOR_STABILITY = auto()
    COLLECTING_SAMPLES = auto()
    POINT_COMPLETE = auto()
    FITTING = auto()
    CALIBRATED = auto()
    CANCELLED = auto()


ACTIVE_STATES = frozenset(
    {
        CalibrationState.WAITING_FOR_STABILITY,
        CalibrationState.COLLECTING_SAMPLES,
        CalibrationState.POINT_COMPLETE,
        CalibrationState.FITTING,
    }
)


_VALID_TRANSITIONS: dict[CalibrationState, Set[CalibrationState]] = {
    CalibrationState.IDLE: {
        CalibrationState.WAITING_FOR_STABILITY,
        CalibrationState.CALIBRATED,  # saved profile loaded
    },
    CalibrationState.WAITING_FOR_STABILITY: {
        CalibrationState.COLLECTING_SAMPLES,
        CalibrationState.CANCELLED,
    },
    CalibrationState.COLLECTING_SAMPLES: {
        CalibrationState.POINT_COMPLETE,
        CalibrationState.CANCELLED,
    },
    CalibrationState.POINT_COMPLETE: {
        CalibrationState.WAITING_FOR_STABILITY,
        CalibrationState.FITTING,
        CalibrationState.CANCELLED,
    },
    CalibrationState.FITTING: {
        CalibrationState.CALIBRATED,
        CalibrationState.IDLE,  # fit rejected
        CalibrationState.CANCELLED,
    },
    CalibrationState.CALIBRATED: {
        CalibrationState.WAITING_FOR_STABILITY,
        CalibrationState.IDLE,
    },
    CalibrationState.CANCELLED: {
        CalibrationState.IDLE,
    },
}


def is_valid_transition(from_state: CalibrationState, to_state: CalibrationState) -> bool:
    """
    Check if a state transition is valid.

    Args:
        from_state: Current state
        to_state: Target state

    Returns:
        True if transition is allowed, False otherwise
    """
    # Same state is always valid (no-op)
    if from_state == to_state:
        return True

    return to_state in _VALID_TRANSITIONS.get(from_state, set())


@dataclass
class ErrorInfo:
    """Information about an error that occurred."""

    error_type: str
    message: str
    recoverable: bool = True
    details: Optional[str] = None


class CalibrationStateMachine:
    """State holder that refuses transitions outside the table above."""

    def __init__(self, initial_state: CalibrationState = CalibrationState.IDLE):
        self._current_state = initial_state
        self._previous_state: Optional[CalibrationState] = None

    @property
    def current_state(self) -> CalibrationState:
        return self._current_state

    @property
    def previous_state(self) -> Optional[CalibrationState]:
        return self._previous_state

    @property
    def is_active(self) -> bool:
        """True while a calibration run is in progress."""
        return self._current_state in ACTIVE_STATES

    def transition_to(self, new_state: CalibrationState) -> bool:
        """
        Transition to a new state.

        Args:
            new_state: Target state

        Returns:
            True if transition succeeded, False if invalid
        """
        if not is_valid_transition(self._current_state, new_state):
            return False

        self._previous_state = self._current_state
        self._current_state = new_state
        return True

    def can_transition_to(self, new_state: CalibrationState) -> bool:
        return is_valid_transition(self._current_state, new_state)

    def reset(self):
        """Force the machine back to IDLE."""
        self._previous_state = self._current_state
        self._current_state = CalibrationState.IDLE


Point = Tuple[float, float]


@dataclass(frozen=True)
class GazeSnapshot:
    """Immutable copy of the gaze state handed to consumers."""

    raw_point: Optional[Point] = None
    stabilized_point: Optional[Point] = None
    screen_point: Optional[Point] = None
    is_valid: bool = False
    is_calibrated: bool = False
    timestamp: float = 0.0


class GazeState:
    """
    Process-wide gaze state: written once per tick by the engine,
    read by any number of consumers.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._snapshot = GazeSnapshot()

    def update(
        self,
        raw_point: Optional[Point],
        stabilized_point: Optional[Point],
        screen_point: Optional[Point],
        is_valid: bool,
        is_calibrated: bool,
        timestamp: float,
    ) -> GazeSnapshot:
        snapshot = GazeSnapshot(
            raw_point=raw_point,
            stabilized_point=stabilized_point,
            screen_point=screen_point,
            is_valid=is_valid,
            is_calibrated=is_calibrated,
            timestamp=timestamp,
        )
        with self._lock:
            self._snapshot = snapshot
        return snapshot

    def invalidate(self, timestamp: float) -> GazeSnapshot:
        """Mark gaze invalid while keeping the last known points."""
        with self._lock:
            previous = self._snapshot
        return self.update(
            previous.raw_point,
            previous.stabilized_point,
            previous.screen_point,
            False,
            previous.is_calibrated,
            timestamp,
        )

    def snapshot(self) -> GazeSnapshot:
        with self._lock:
            return self._snapshot

    @property
    def is_valid(self) -> bool:
        return self.snapshot().is_valid

    @property
    def is_calibrated(self) -> bool:
        return self.snapshot().is_calibrated
