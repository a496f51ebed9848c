from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from procureflow.permissions import Role
from procureflow.states import CaseState, StageKind, stage_spec

BOTTLENECK_DAYS = 7.0
REPORT_VIEWER_ROLES = frozenset({Role.ADMIN.value, Role.PROCUREMENT_MANAGER.value, Role.BAC_SECRETARIAT.value})

# (label, start kind, end kind); a ``None`` start measures from case creation.
REPORT_SPANS: tuple[tuple[str, StageKind | None, StageKind], ...] = (
    ("RFQ-Award", StageKind.RFQ, StageKind.AWARD),
    ("Award-Contract", StageKind.AWARD, StageKind.CONTRACT),
    ("Contract-NTP", StageKind.CONTRACT, StageKind.NTP),
    ("NTP-Check", StageKind.NTP, StageKind.CHECK),
    ("Total", None, StageKind.CHECK),
)

_COMPLETED_STATES = frozenset({CaseState.CHECK.value, CaseState.CLOSED.value})


def _parse_ts(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def stage_date(records: Iterable[dict[str, Any]], kind: StageKind) -> datetime | None:
    """Date of the earliest record of ``kind``, read from the kind's date field."""
    field = stage_spec(kind).date_field
    if field is None:
        return None
    dates = [
        ts
        for ts in (_parse_ts((row.get("data") or {}).get(field)) for row in records if row.get("kind") == kind.value)
        if ts is not None
    ]
    return min(dates) if dates else None


def created_in_year(case: Mapping[str, Any], year: int) -> bool:
    created = _parse_ts(case.get("created_at"))
    return created is not None and created.year == year


def _summarize(stage: str, values: list[float]) -> dict[str, Any]:
    count = len(values)
    return {
        "stage": stage,
        "avg": sum(values) / count if count else 0.0,
        "min": min(values) if count else 0.0,
        "max": max(values) if count else 0.0,
        "count": count,
    }


def build_workflow_report(
    cases: list[dict[str, Any]],
    records_by_case: Mapping[str, list[dict[str, Any]]],
    *,
    year: int,
) -> dict[str, Any]:
    """Stage-to-stage durations in days for cases created in ``year``.

    A span is counted only when both of its endpoints are dated. Spans
    averaging more than ``BOTTLENECK_DAYS`` are listed as bottlenecks.
    """
    durations: dict[str, list[float]] = {label: [] for label, _, _ in REPORT_SPANS}
    completed = 0
    awarded = 0
    for case in cases:
        records = records_by_case.get(str(case["case_id"]), [])
        if case.get("current_state") in _COMPLETED_STATES:
            completed += 1
        if any(row.get("kind") == StageKind.AWARD.value for row in records):
            awarded += 1
        for label, start_kind, end_kind in REPORT_SPANS:
            start = _parse_ts(case.get("created_at")) if start_kind is None else stage_date(records, start_kind)
            end = stage_date(records, end_kind)
            if start is not None and end is not None:
                durations[label].append((end - start).total_seconds() / 86400.0)

    stats = [_summarize(label, values) for label, values in durations.items()]
    return {
        "year": year,
        "total_cases": len(cases),
        "completed_count": completed,
        "awarded_count": awarded,
        "stats": stats,
        "bottlenecks": [
            {"stage": item["stage"], "avg": item["avg"]} for item in stats if item["avg"] > BOTTLENECK_DAYS
        ],
    }
