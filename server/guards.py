"""Hysteresis and gap detection used by the motion/stop detector.

Neither guard raises: holding a transition or breaking a trace on a gap are
ordinary classification outcomes.
"""

import enum


class MotionState(enum.Enum):
    STOP = "stop"
    MOVE = "move"


class Verdict(enum.Enum):
    ACCEPT = "accept"
    HOLD = "hold"


class TimeGuard:
    """Accepts a state transition only once the new state has lasted long enough."""

    def __init__(self, min_stop_duration: float, min_move_duration: float):
        if min_stop_duration < 0 or min_move_duration < 0:
            raise ValueError("minimum durations must be non-negative")
        self.min_stop_duration = min_stop_duration
        self.min_move_duration = min_move_duration

    def minimum(self, target: MotionState) -> float:
        if target is MotionState.STOP:
            return self.min_stop_duration
        return self.min_move_duration

    def check(self, target: MotionState, persisted: float) -> Verdict:
        """``persisted`` is how long (s) the candidate ``target`` state has held."""
        if persisted >= self.minimum(target):
            return Verdict.ACCEPT
        return Verdict.HOLD

    def accepts(self, target: MotionState, persisted: float) -> bool:
        return self.check(target, persisted) is Verdict.ACCEPT


class TimeoutHandler:
    """Signals a hard trace break when two consecutive samples are too far apart."""

    def __init__(self, max_gap: float):
        if max_gap <= 0:
            raise ValueError("max_gap must be positive")
        self.max_gap = max_gap

    def is_break(self, previous_t: float, current_t: float) -> bool:
        return current_t - previous_t > self.max_gap
