"""
Markdown run report rendered from a Jinja2 template.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from ..engine.models import OutcomeStatus, RunSummary

TEMPLATE_DIR = Path(__file__).parent / "templates"
TEMPLATE_NAME = "run_report.md.j2"

# Failure listings are capped; the CSV export carries every row
MAX_LISTED = 200


def render_markdown(summary: RunSummary, run_id: str, tenant_name: str = "") -> str:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape([]),
        trim_blocks=True,
        lstrip_blocks=True,
    )
    template = env.get_template(TEMPLATE_NAME)

    failures = [
        o for o in summary.outcomes
        if o.status in (OutcomeStatus.FAILED_PERMANENT, OutcomeStatus.FAILED_TRANSIENT)
    ]
    ineligible = [o for o in summary.outcomes if o.status == OutcomeStatus.INELIGIBLE]
    reasons: dict[str, int] = {}
    for o in ineligible:
        reasons[o.ineligible_reason] = reasons.get(o.ineligible_reason, 0) + 1

    return template.render(
        run_id=run_id,
        tenant_name=tenant_name or "Unknown Tenant",
        generated_utc=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC"),
        summary=summary,
        counters=summary.counters(),
        actions=summary.to_dict()["actions"],
        failures=failures[:MAX_LISTED],
        failures_truncated=max(0, len(failures) - MAX_LISTED),
        ineligible_reasons=sorted(reasons.items(), key=lambda kv: -kv[1]),
    )


def export_markdown(
    summary: RunSummary,
    output_dir: Path,
    run_id: str,
    tenant_name: str = "",
) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    filepath = output_dir / f"{summary.mode}_report_{run_id}.md"
    with open(filepath, "w", encoding="utf-8") as fh:
        fh.write(render_markdown(summary, run_id, tenant_name))
    return filepath
