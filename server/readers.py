"""Trace readers: CSV and GPX files to ``{latitude, longitude, timestamp}`` records.

Records come out in file order; sorting and filtering happen in
``processing.filter_gps_errors``.
"""

import csv
import datetime
import logging
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)

# Optional CSV columns copied onto the record when present
_OPTIONAL_FLOATS = ("altitude", "horizontal_accuracy", "speed")


def parse_timestamp(value: str) -> float:
    """Epoch seconds from a number or an ISO 8601 string (naive means UTC)."""
    value = value.strip()
    try:
        return float(value)
    except ValueError:
        pass
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt.timestamp()


def iter_csv_records(path: str | Path) -> Iterator[dict]:
    """Yield records from a CSV with ``latitude,longitude,timestamp`` columns.

    Unparseable rows are skipped with a warning; a missing column is an error.
    """
    p = Path(path)
    with p.open("r", encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        if reader.fieldnames is None:
            return
        missing = {"latitude", "longitude", "timestamp"} - set(reader.fieldnames)
        if missing:
            raise KeyError(f"{p}: missing columns {sorted(missing)}, got {reader.fieldnames}")

        for lineno, row in enumerate(reader, start=2):
            try:
                rec = {
                    "latitude": float(row["latitude"]),
                    "longitude": float(row["longitude"]),
                    "timestamp": parse_timestamp(row["timestamp"]),
                }
                for key in _OPTIONAL_FLOATS:
                    if row.get(key):
                        rec[key] = float(row[key])
            except (ValueError, TypeError) as e:
                logger.warning("%s:%d: skipping row: %s", p, lineno, e)
                continue
            yield rec


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def iter_gpx_records(path: str | Path) -> Iterator[dict]:
    """Yield records from every ``trkpt`` of a GPX file; points without a time are skipped."""
    p = Path(path)
    root = ET.parse(p).getroot()
    for el in root.iter():
        if _local(el.tag) != "trkpt":
            continue
        time_el = next((c for c in el if _local(c.tag) == "time"), None)
        if time_el is None or not (time_el.text or "").strip():
            logger.warning("%s: skipping trkpt without time", p)
            continue
        try:
            rec = {
                "latitude": float(el.attrib["lat"]),
                "longitude": float(el.attrib["lon"]),
                "timestamp": parse_timestamp(time_el.text),
            }
        except (KeyError, ValueError) as e:
            logger.warning("%s: skipping trkpt: %s", p, e)
            continue
        ele = next((c for c in el if _local(c.tag) == "ele"), None)
        if ele is not None and ele.text:
            rec["altitude"] = float(ele.text)
        yield rec


def read_records(path: str | Path) -> list[dict]:
    """Dispatch on file extension (``.gpx`` or anything else as CSV)."""
    p = Path(path)
    if p.suffix.lower() == ".gpx":
        records = list(iter_gpx_records(p))
    else:
        records = list(iter_csv_records(p))
    logger.info("Read %d records from %s", len(records), p)
    return records
