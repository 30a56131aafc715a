"""Algorithm thresholds: defaults, validation, file and database loading.

Distances are ground meters and durations seconds. ``Thresholds.projected``
converts the distance thresholds to Web Mercator meters for a given
latitude scale factor.
"""

import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

# Motion/stop detection
MIN_STOP_DURATION_S = 300.0    # 5 minutes within STOP_RADIUS_M makes a stop
MIN_MOVE_DURATION_S = 60.0     # leaving a stop must last this long to count
MAX_GAP_S = 600.0              # longer gaps break the trace
STOP_RADIUS_M = 50.0           # max radius of a stationary cluster

# Places and trips
CLUSTER_RADIUS_M = 80.0        # stops whose centers are this close share a place
SIMPLIFY_TOLERANCE_M = 10.0    # Douglas-Peucker tolerance for trip polylines

# GPS error filter
MAX_HORIZONTAL_ACCURACY_M = 100.0  # discard points with accuracy worse than this
MAX_SPEED_MS = 85.0            # ~306 km/h; discard impossible jumps
MIN_POINT_INTERVAL_S = 1.0     # deduplicate points closer than this in time
SPIKE_WINDOW = 0               # samples in the convex-hull spike window; 0 disables it

# Route grouping
MAX_HAUSDORFF_M = 100.0        # trips between the same places closer than this share a route

DISTANCE_KEYS = (
    "stop_radius_m", "cluster_radius_m", "simplify_tolerance_m", "max_hausdorff_m",
)


class Thresholds(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    min_stop_duration: float = Field(MIN_STOP_DURATION_S, gt=0)
    min_move_duration: float = Field(MIN_MOVE_DURATION_S, ge=0)
    max_gap: float = Field(MAX_GAP_S, gt=0)
    stop_radius_m: float = Field(STOP_RADIUS_M, gt=0)
    cluster_radius_m: float = Field(CLUSTER_RADIUS_M, gt=0)
    simplify_tolerance_m: float = Field(SIMPLIFY_TOLERANCE_M, ge=0)
    max_horizontal_accuracy_m: float = Field(MAX_HORIZONTAL_ACCURACY_M, gt=0)
    max_speed_ms: float = Field(MAX_SPEED_MS, gt=0)
    min_point_interval_s: float = Field(MIN_POINT_INTERVAL_S, ge=0)
    spike_window: int = Field(SPIKE_WINDOW, ge=0)
    max_hausdorff_m: float = Field(MAX_HAUSDORFF_M, gt=0)

    def projected(self, scale: float) -> "Thresholds":
        """Copy with distance thresholds multiplied by a projection scale factor."""
        return self.model_copy(update={k: getattr(self, k) * scale for k in DISTANCE_KEYS})


def parse_thresholds(text: str) -> Thresholds:
    """Parse ``key=value`` lines; blank lines and ``#`` comments are ignored."""
    values: dict[str, str] = {}
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.split("#", 1)[0].strip()
        if not line:
            continue
        if "=" not in line:
            raise ValueError(f"line {lineno}: expected key=value, got {raw!r}")
        key, value = (part.strip() for part in line.split("=", 1))
        values[key] = value
    return Thresholds(**values)


def load_thresholds_file(path: str | Path) -> Thresholds:
    p = Path(path)
    logger.info("Reading thresholds from %s", p)
    return parse_thresholds(p.read_text(encoding="utf-8"))


def get_thresholds(db) -> Thresholds:
    """Read thresholds from the Config table, falling back to module defaults."""
    from models import Config

    keys = list(Thresholds.model_fields)
    rows = db.query(Config).filter(Config.key.in_(keys)).all()
    return Thresholds(**{row.key: float(row.value) for row in rows})
