from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from unical.models import RemoteEvent, parse_iso_datetime


ALLOWED_FIELDS = {"title", "description", "location", "start", "end", "all_day", "timezone", "status", "rrule", "ex_dates"}
APPLY_FIELD_ORDER = ("start", "end", "all_day", "timezone", "title", "location", "description", "status", "rrule", "ex_dates")


@dataclass
class ReconcileOutcome:
    applied: bool
    conflicted: bool
    reason: str
    event: RemoteEvent
    changed_fields: list[str] = field(default_factory=list)


def _coerce(field_name: str, value: Any) -> Any:
    if field_name in {"start", "end"}:
        return parse_iso_datetime(value)
    if field_name == "all_day":
        return bool(value)
    if field_name == "ex_dates":
        return [parse_iso_datetime(item) for item in value or []]
    if field_name == "rrule":
        return str(value) if value else None
    return str(value) if value is not None else ""


def apply_change(
    *,
    current_event: RemoteEvent,
    change: dict[str, Any],
    baseline_etag: str | None = None,
) -> ReconcileOutcome:
    # Fields in ``change`` win; a stale baseline etag only marks the outcome conflicted.
    conflicted = bool(baseline_etag and current_event.etag and baseline_etag != current_event.etag)

    coerced: dict[str, Any] = {}
    for name in APPLY_FIELD_ORDER:
        if name not in change or name not in ALLOWED_FIELDS:
            continue
        try:
            coerced[name] = _coerce(name, change[name])
        except ValueError:
            return ReconcileOutcome(
                applied=False,
                conflicted=conflicted,
                reason="invalid_value",
                event=current_event,
            )

    updated = current_event.clone()
    changed: list[str] = []
    for name, value in coerced.items():
        if name in {"start", "end"} and value is None:
            continue
        if getattr(updated, name) != value:
            setattr(updated, name, value)
            changed.append(name)

    if updated.start and updated.end and updated.end < updated.start:
        return ReconcileOutcome(
            applied=False,
            conflicted=conflicted,
            reason="end_before_start",
            event=current_event,
        )

    if conflicted:
        reason = "remote_modified_since_sync"
    else:
        reason = "applied" if changed else "no_changes"
    return ReconcileOutcome(
        applied=bool(changed),
        conflicted=conflicted,
        reason=reason,
        event=updated,
        changed_fields=changed,
    )
