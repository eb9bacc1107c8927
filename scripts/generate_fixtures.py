#!/usr/bin/env python3
"""
Generate demo fixtures for the arrival alarm backend

Writes the fixture files read by providers/fake_providers.py when
ALARM_MODE=demo or ALARM_MODE=test. All fixtures are deterministic and
reproducible.

Usage:
    python scripts/generate_fixtures.py
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

FIXTURES_DIR = Path(__file__).resolve().parent.parent / "backend" / "fixtures" / "demo"

# Approach to Shinjuku from the south along the Yamanote line
TARGET_LAT = 35.6896
TARGET_LON = 139.7006
START_LAT = 35.6596
STEP_LAT = 0.002
TRACK_LENGTH = 16
OUTAGE_STEPS = range(6, 12)  # 6 polls x 5s = 30s tunnel outage
POOR_ACCURACY_STEPS = {4}


def generate_position_track() -> List[Optional[Dict[str, Any]]]:
    """GPS track toward the target with a poor fix and a tunnel outage."""
    track: List[Optional[Dict[str, Any]]] = []
    for step in range(TRACK_LENGTH):
        if step in OUTAGE_STEPS:
            track.append(None)
            continue
        track.append({
            "lat": round(START_LAT + STEP_LAT * step, 4),
            "lon": TARGET_LON,
            "accuracy": 65.0 if step in POOR_ACCURACY_STEPS else 12.0,
        })
    return track


def generate_schedule() -> Dict[str, Any]:
    return {
        "legs": {
            "demo-leg": {
                "railway_id": "odpt.Railway:JR-East.Yamanote",
                "train_number": "0830G",
                "arrival_time": "2026-01-20T08:30:00+00:00",
                "delay_minutes": 2,
            },
            "on-time-leg": {
                "railway_id": "odpt.Railway:TokyoMetro.Marunouchi",
                "train_number": "A0815",
                "arrival_time": "2026-01-20T08:15:00+00:00",
                "delay_minutes": 0,
            },
        }
    }


def write_fixture(name: str, data: Dict[str, Any]) -> None:
    path = FIXTURES_DIR / name / "data.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
        f.write("\n")
    print(f"Wrote {path}")


def main() -> None:
    write_fixture("positions", {
        "version": "1.0",
        "description": "Approach to Shinjuku with a 30s tunnel outage",
        "target": {"lat": TARGET_LAT, "lon": TARGET_LON},
        "track": generate_position_track(),
    })
    write_fixture("schedule", {"version": "1.0", **generate_schedule()})


if __name__ == "__main__":
    main()
