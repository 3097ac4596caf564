#!/usr/bin/env python3
"""Replay recorded positions through the engine.

Loads geofences (and optionally vehicles) from JSON files, feeds a
JSON-lines position file through :class:`geofleet.TelemetryEngine` and
prints the resulting alerts, trips and speed statistics.

Usage
-----
::

    python scripts/replay_positions.py positions.jsonl \\
        --geofences geofences.json --vehicles vehicles.json

Options::

    --geofences FILE     JSON array of geofences (table or nested layout)
    --vehicles FILE      JSON array of vehicles ({id, name, speedLimit})
    --time-zone ZONE     IANA zone for time-window rules (default: UTC)
    --json               Output as machine-readable JSON
    --output FILE        Write output to FILE instead of stdout
    -v, --verbose        Enable DEBUG logging
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

# Allow running from the repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from geofleet import EngineConfig, GeofleetError, TelemetryEngine  # noqa: E402
from geofleet.ingestion.normalize import position_from_payload  # noqa: E402


def _section(title: str) -> str:
    line = "=" * 60
    return f"\n{line}\n  {title}\n{line}"


def _load_json_array(path: Path) -> list[dict[str, Any]]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise SystemExit(f"{path}: expected a JSON array")
    return data


def _load_positions(path: Path) -> list[dict[str, Any]]:
    records: list[dict[str, Any]] = []
    with path.open(encoding="utf-8") as handle:
        for lineno, line in enumerate(handle, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError as exc:
                print(f"{path}:{lineno}: skipping invalid JSON ({exc})", file=sys.stderr)
    return records


async def _replay(args: argparse.Namespace) -> dict[str, Any]:
    config = EngineConfig(time_zone=args.time_zone)
    geofences = _load_json_array(args.geofences) if args.geofences else []
    vehicles = _load_json_array(args.vehicles) if args.vehicles else []
    rejected: list[str] = []

    engine = TelemetryEngine(config, vehicles=vehicles, geofences=geofences)
    async with engine:
        for raw in _load_positions(args.positions):
            try:
                position = position_from_payload(raw)
            except GeofleetError as exc:
                rejected.append(str(exc))
                continue
            # Sweep on recorded time, before the sample, so the silence
            # leading up to it is seen.
            engine.sweep_offline(position.timestamp)
            try:
                await engine.ingest(position)
            except GeofleetError as exc:
                rejected.append(str(exc))

    return {
        "rejected": rejected,
        "alerts": [a.to_wire() for a in engine.list_alerts()],
        "trips": [
            t.model_dump(mode="json", by_alias=True, exclude={"points"})
            for vehicle_id in engine.vehicle_ids()
            for t in engine.get_trips(vehicle_id)
        ],
        "speedViolations": [v.to_wire() for v in engine.get_speed_violations()],
        "speedStats": engine.get_speed_stats().to_wire(),
        "vehicles": [
            engine.get_vehicle_state(vid).model_dump(mode="json", by_alias=True, exclude={"history"})
            for vid in engine.vehicle_ids()
        ],
    }


def _format_text(report: dict[str, Any]) -> str:
    lines: list[str] = []
    lines.append(_section(f"Vehicles ({len(report['vehicles'])})"))
    for v in report["vehicles"]:
        lines.append(f"  {v['vehicleId']}: {v['status']} ({v.get('name') or '-'})")
    lines.append(_section(f"Alerts ({len(report['alerts'])})"))
    for a in report["alerts"]:
        lines.append(f"  {a['timestamp']} [{a['priority']}] {a['type']}: {a['message']}")
    lines.append(_section(f"Trips ({len(report['trips'])})"))
    for t in report["trips"]:
        lines.append(
            f"  {t['vehicleId']} {t['startTime']} -> {t['endTime']}  "
            f"{t['totalDistance']:.0f} m  avg {t['averageSpeed']:.1f} km/h  "
            f"max {t['maxSpeed']:.1f} km/h  stops {t['stopsCount']}"
        )
    stats = report["speedStats"]
    lines.append(_section("Speed statistics"))
    lines.append(f"  total violations: {stats.get('totalViolations', 0)}")
    lines.append(f"  vehicles with violations: {stats.get('vehiclesWithViolations', 0)}")
    lines.append(f"  average excess: {stats.get('averageExcessSpeed', 0.0):.1f} km/h")
    for top in stats.get("topViolators", []):
        lines.append(f"    {top['vehicleName']}: {top['totalViolations']} violations")
    if report["rejected"]:
        lines.append(_section(f"Rejected positions ({len(report['rejected'])})"))
        lines.extend(f"  {reason}" for reason in report["rejected"])
    return "\n".join(lines)


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay recorded positions through the geofleet engine")
    parser.add_argument("positions", type=Path, help="JSON-lines file of position reports")
    parser.add_argument("--geofences", type=Path, help="JSON array of geofences")
    parser.add_argument("--vehicles", type=Path, help="JSON array of vehicles")
    parser.add_argument("--time-zone", default="UTC", help="IANA zone for time-window rules")
    parser.add_argument("--json", action="store_true", help="Output as JSON")
    parser.add_argument("--output", type=Path, help="Write output to FILE")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable DEBUG logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    report = asyncio.run(_replay(args))
    text = json.dumps(report, indent=2) if args.json else _format_text(report)

    if args.output:
        args.output.write_text(text + "\n", encoding="utf-8")
        print(f"Output written to {args.output}", file=sys.stderr)
    else:
        print(text)


if __name__ == "__main__":
    main()
