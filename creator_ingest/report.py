from __future__ import annotations

from collections import Counter
from typing import Any, Mapping

from .batch import BatchSummary, ItemState


def build_batch_report(summary: BatchSummary, *, delay_ms: int) -> dict[str, Any]:
    """Summarize a bulk run and suggest what to change before the next one."""
    reasons: Counter[str] = Counter()
    states: Counter[str] = Counter()
    for outcome in summary.outcomes:
        if outcome.bucket != "error":
            continue
        states[outcome.state.value] += 1
        reasons[outcome.reason or "unknown"] += 1

    details: dict[str, Any] = {
        "success": summary.success,
        "skipped": summary.skipped,
        "errors": summary.errors,
        "total": summary.total,
        "success_rate": round(summary.success_rate, 4),
        "start_index": summary.start_index,
        "next_index": summary.next_index,
        "delay_ms": int(delay_ms),
        "errors_by_state": dict(states),
        "errors_by_reason": dict(reasons),
    }

    recommendations: list[str] = []

    if summary.interrupted:
        status = "interrupted"
        headline = f"Run interrupted after {summary.total} item(s)."
        recommendations.append(f"Resume with --start-index {summary.next_index}.")
    elif summary.total == 0:
        status = "empty"
        headline = "No items to process."
        recommendations.append("Check the sources file and --start-index.")
    elif summary.errors == 0:
        status = "completed"
        headline = f"All {summary.total} item(s) saved or already present."
    elif summary.errors == summary.total:
        status = "all_failed"
        headline = f"Every item failed ({summary.errors}/{summary.total})."
    else:
        status = "completed_with_errors"
        headline = f"{summary.errors} of {summary.total} item(s) failed."

    if reasons.get("http_429"):
        recommendations.append(
            f"Upstream rate limited {reasons['http_429']} request(s); raise --delay-ms above {int(delay_ms)}."
        )
    if any(r.startswith("http_5") for r in reasons) or reasons.get("network_error"):
        recommendations.append("Upstream or network errors occurred; re-run the failed URLs later.")
    if reasons.get("http_401") or reasons.get("http_403"):
        recommendations.append("The upstream rejected the API key; check the configured environment variable.")
    if reasons.get("unsupported_source"):
        recommendations.append("Some lines are not Instagram or TikTok post URLs; fix or remove them.")
    if states.get(ItemState.TRANSFORM_FAILED.value):
        recommendations.append("Some responses had no usable post; the URLs may point at deleted or private posts.")
    if states.get(ItemState.SAVE_FAILED.value):
        recommendations.append("Saving failed for some items; check the board id and the database path.")

    return {
        "status": status,
        "summary": headline,
        "details": details,
        "recommendations": recommendations,
    }


def format_batch_report(report: Mapping[str, Any]) -> str:
    status = str(report.get("status") or "").strip() or "unknown"
    headline = str(report.get("summary") or "").strip() or f"Run finished ({status})."

    lines: list[str] = [headline]
    recs = report.get("recommendations")
    if isinstance(recs, list) and recs:
        lines.append("Recommendations:")
        for r in recs:
            t = str(r or "").strip()
            if t:
                lines.append(f"- {t}")

    return "\n".join(lines)
