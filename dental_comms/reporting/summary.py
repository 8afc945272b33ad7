"""Summary generation for dispatch reports."""

from __future__ import annotations

from collections import Counter
from typing import Any

REASONED_STATUSES = ("failed", "retry", "requeued", "cancelled", "skipped")


def compute_summary(records: list[dict[str, Any]], total_due: int) -> dict[str, Any]:
    """Compute aggregate stats from per-job dispatch records."""
    status_counts = Counter(record.get("status") for record in records)
    attempted_sends = sum(1 for record in records if record.get("attempted"))

    summary: dict[str, Any] = {
        "total_due": total_due,
        "attempted_sends": attempted_sends,
        "successful_sends": status_counts.get("sent", 0),
    }
    for status in REASONED_STATUSES:
        reasons = Counter(
            record.get("reason", "unknown")
            for record in records
            if record.get("status") == status
        )
        summary[status] = {
            "total": status_counts.get(status, 0),
            "reasons": dict(reasons),
        }
    return summary
