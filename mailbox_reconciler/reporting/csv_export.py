"""
CSV exporter — one row per target outcome, plus a counter summary.
"""

from __future__ import annotations

import csv
from pathlib import Path

from ..engine.models import RunSummary

OUTCOME_FIELDS = [
    "identifier", "classification", "status", "action",
    "ineligible_reason", "error_kind", "error",
]


def export_csv(summary: RunSummary, output_dir: Path, run_id: str) -> list[Path]:
    """
    Write CSV files for outcomes and summary counters.

    Returns:
        List of created CSV file paths.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    created = []

    outcomes_path = output_dir / f"{summary.mode}_outcomes_{run_id}.csv"
    with open(outcomes_path, "w", newline="", encoding="utf-8-sig") as fh:
        writer = csv.DictWriter(fh, fieldnames=OUTCOME_FIELDS, extrasaction="ignore")
        writer.writeheader()
        for outcome in summary.outcomes:
            writer.writerow(outcome.to_dict())
    created.append(outcomes_path)

    summary_path = output_dir / f"{summary.mode}_summary_{run_id}.csv"
    with open(summary_path, "w", newline="", encoding="utf-8-sig") as fh:
        writer = csv.writer(fh)
        writer.writerow(["metric", "value"])
        for metric, value in summary.counters().items():
            writer.writerow([metric, value])
        for action, count in summary.to_dict()["actions"].items():
            writer.writerow([action, count])
    created.append(summary_path)

    return created
