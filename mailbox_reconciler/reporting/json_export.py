"""
JSON exporter — Full run summary and every per-target outcome.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .. import __version__
from ..engine.models import RunSummary


def export_json(
    summary: RunSummary,
    output_dir: Path,
    run_id: str,
    audit: Optional[dict] = None,
) -> Path:
    """
    Write the run summary and outcomes to a JSON file.

    Returns:
        Path to the created JSON file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    payload = {
        "metadata": {
            "engine": "Mailbox Reconciler",
            "version": __version__,
            "run_id": run_id,
            "generated_utc": datetime.now(timezone.utc).isoformat(),
            "mode": "DRY-RUN" if summary.dry_run else "APPLY",
        },
        "summary": summary.to_dict(),
        "outcomes": [o.to_dict() for o in summary.outcomes],
    }
    if audit:
        payload["audit"] = audit

    filepath = output_dir / f"{summary.mode}_run_{run_id}.json"
    with open(filepath, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, default=str, ensure_ascii=False)

    return filepath
