"""Command-line interface: build a Detour graph from a trace file.

Run:
    detour-build trace.gpx -c config.cfg -o out/
"""

import argparse
import logging
import sys
import xml.etree.ElementTree as ET

from errors import DetourError
from export import write_output
from processing import build_graph_from_records, find_routes
from readers import read_records
from thresholds import Thresholds, load_thresholds_file

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="detour-build",
        description="Build a place/trip graph from a GPS trace (CSV or GPX).",
    )
    p.add_argument("input", help="trace file; .gpx or CSV with latitude,longitude,timestamp")
    p.add_argument("-c", "--config", help="thresholds file with key=value lines")
    p.add_argument("-o", "--outdir", default="out", help="output folder (default: out)")
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return p


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s  %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        thresholds = load_thresholds_file(args.config) if args.config else Thresholds()
        records = read_records(args.input)
    except (OSError, ValueError, KeyError, ET.ParseError) as e:
        print(f"detour-build: {e}", file=sys.stderr)
        return 2

    try:
        graph, stats = build_graph_from_records(records, thresholds)
    except DetourError as e:
        print(f"detour-build: {e}", file=sys.stderr)
        return 1

    routes = find_routes(graph, thresholds)
    write_output(graph, args.outdir, stats, thresholds, routes)
    print(stats)
    print(f"{len(routes)} routes")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
