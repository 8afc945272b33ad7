"""Utilities for writing dispatch report artifacts in JSON and Markdown."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from dental_comms.reporting.summary import REASONED_STATUSES

logger = logging.getLogger(__name__)

SECTION_TITLES = {
    "failed": "Failed",
    "retry": "Retried",
    "requeued": "Requeued",
    "cancelled": "Cancelled",
    "skipped": "Skipped",
}


def write_dispatch_report(
    *,
    artifacts_dir: str | Path,
    summary: dict[str, Any],
    records: list[dict[str, Any]],
    started_at: datetime,
) -> tuple[Path, Path]:
    """Write JSON and Markdown dispatch reports for one tick."""
    out_dir = Path(artifacts_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    slug = started_at.strftime("%Y%m%dT%H%M%S%f")
    if (out_dir / f"dispatch_{slug}.json").exists():
        # Two reports for the same instant (a tick and a send-now).
        slug = f"{slug}_{uuid.uuid4().hex[:6]}"
    json_path = out_dir / f"dispatch_{slug}.json"
    md_path = out_dir / f"dispatch_{slug}.md"

    payload = {
        "started_at": started_at.isoformat(),
        "summary": summary,
        "records": records,
    }
    json_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")

    md_lines = [
        f"# Dispatch Report ({started_at.isoformat()})",
        "",
        "## Summary",
        f"- Due jobs: {summary['total_due']}",
        f"- Attempted sends: {summary['attempted_sends']}",
        f"- Successful sends: {summary['successful_sends']}",
    ]
    for status in REASONED_STATUSES:
        md_lines.append(f"- {SECTION_TITLES[status]}: {summary[status]['total']}")

    for status in REASONED_STATUSES:
        reasons = summary[status]["reasons"]
        if not reasons:
            continue
        md_lines.extend(["", f"## {SECTION_TITLES[status]} Reasons"])
        for reason, count in reasons.items():
            md_lines.append(f"- {reason}: {count}")

    md_lines.extend(["", "## Records", ""])
    for record in records:
        patient = record.get("patient_name", "")
        status = record.get("status", "")
        reason = record.get("reason")
        reason_part = f" ({reason})" if reason else ""
        md_lines.append(f"- {record.get('job_id', '')} {patient}: {status}{reason_part}")

    md_path.write_text("\n".join(md_lines) + "\n", encoding="utf-8")
    return json_path, md_path


def prune_reports(artifacts_dir: str | Path, *, older_than: datetime) -> int:
    """Delete report files last written before ``older_than``."""
    out_dir = Path(artifacts_dir)
    if not out_dir.is_dir():
        return 0

    cutoff = older_than.timestamp()
    removed = 0
    for path in out_dir.glob("dispatch_*"):
        if path.suffix in (".json", ".md") and path.stat().st_mtime < cutoff:
            path.unlink()
            removed += 1
    if removed:
        logger.info("Pruned %s dispatch report file(s) from %s", removed, out_dir)
    return removed
