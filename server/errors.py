"""Error taxonomy for the segmentation and graph construction engine."""


class DetourError(Exception):
    """Base class for every error raised by the engine."""


class InvalidCoordinate(DetourError, ValueError):
    """A raw sample has a latitude/longitude outside the projectable range."""


class OutOfRange(DetourError, ValueError):
    """An interpolation query lies outside the span of its series."""


class PathBuilderError(DetourError):
    """Ordering or consistency fault while turning runs into graph elements.

    ``time_range`` is the (start, end) epoch-second span of the offending run.
    """

    def __init__(self, message: str, time_range: tuple[float, float] | None = None):
        super().__init__(message)
        self.time_range = time_range


class GraphInvariantViolation(DetourError):
    """A graph mutation would break the ordering or overlap invariants."""
