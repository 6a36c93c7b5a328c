"""
Change summaries between consecutive issued revisions.

Computed from the two snapshots, never from live rows, so the summary of an
issue does not depend on what happened afterwards. Written once per
(family, revision_number).
"""
from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.riskdocs.constants import CARRY_FORWARD_STATUSES, ITEM_CLOSED, ITEM_SOURCE_CARRIED
from app.riskdocs.errors import LifecycleError, NotFound
from app.riskdocs.models import User

from .models import ChangeSummary, DocumentRevision
from .snapshots import canonical_json, get_snapshot, load_payload

logger = logging.getLogger(__name__)


def _brief(item: dict[str, Any]) -> dict[str, Any]:
    return {
        "lineage_id": item.get("lineage_id"),
        "reference_number": item.get("reference_number"),
        "priority_code": item.get("priority_code"),
        "description": item.get("description"),
        "status": item.get("status"),
    }


def _by_lineage(items: list[dict[str, Any]]) -> dict[int, dict[str, Any]]:
    return {i["lineage_id"]: i for i in items}


def diff_payloads(previous: dict[str, Any] | None, current: dict[str, Any]) -> dict[str, Any]:
    cur_items = current.get("items") or []
    cur_by = _by_lineage(cur_items)

    if previous is None:
        return {
            "initial_issue": True,
            "new_items": [_brief(i) for i in cur_items],
            "closed_items": [],
            "removed_items": [],
            "outstanding_count": sum(1 for i in cur_items if i.get("status") in CARRY_FORWARD_STATUSES),
            "carried_count": 0,
            "changed_modules": [],
            "metadata_changes": [],
        }

    prev_by = _by_lineage(previous.get("items") or [])
    new_items = [_brief(i) for lid, i in cur_by.items() if lid not in prev_by]
    closed_items = [
        _brief(i)
        for lid, i in cur_by.items()
        if i.get("status") == ITEM_CLOSED and prev_by.get(lid, {}).get("status") in CARRY_FORWARD_STATUSES
    ]
    removed_items = [
        _brief(i)
        for lid, i in prev_by.items()
        if lid not in cur_by and i.get("status") in CARRY_FORWARD_STATUSES
    ]

    prev_mods = previous.get("modules") or {}
    cur_mods = current.get("modules") or {}
    changed_modules = sorted(
        key
        for key in set(prev_mods) | set(cur_mods)
        if canonical_json({"m": prev_mods.get(key)}) != canonical_json({"m": cur_mods.get(key)})
    )

    metadata_changes = []
    prev_rev = previous.get("revision") or {}
    cur_rev = current.get("revision") or {}
    for field in ("title", "assessment_date"):
        if prev_rev.get(field) != cur_rev.get(field):
            metadata_changes.append({"field": field, "from": prev_rev.get(field), "to": cur_rev.get(field)})

    return {
        "initial_issue": False,
        "new_items": sorted(new_items, key=lambda i: i["lineage_id"]),
        "closed_items": sorted(closed_items, key=lambda i: i["lineage_id"]),
        "removed_items": sorted(removed_items, key=lambda i: i["lineage_id"]),
        "outstanding_count": sum(1 for i in cur_items if i.get("status") in CARRY_FORWARD_STATUSES),
        "carried_count": sum(1 for i in cur_items if i.get("source") == ITEM_SOURCE_CARRIED),
        "changed_modules": changed_modules,
        "metadata_changes": metadata_changes,
    }


def has_material_changes(details: dict[str, Any]) -> bool:
    if details.get("initial_issue"):
        return True
    return bool(
        details.get("new_items")
        or details.get("closed_items")
        or details.get("removed_items")
        or details.get("changed_modules")
        or details.get("metadata_changes")
    )


def format_summary_text(details: dict[str, Any]) -> str:
    lines: list[str] = []
    if details.get("initial_issue"):
        lines.append("# Initial Issue\n")
        n = len(details.get("new_items") or [])
        lines.append(f"First issued revision with {n} recommendation{'s' if n != 1 else ''}.\n")
        return "\n".join(lines).rstrip() + "\n"

    lines.append("# Changes Since Last Issue\n")
    new_items = details.get("new_items") or []
    if new_items:
        lines.append(f"## New Actions ({len(new_items)})\n")
        for i in new_items:
            lines.append(f"- [{i.get('priority_code') or '-'}] {i.get('description')}")
        lines.append("")

    closed = details.get("closed_items") or []
    if closed:
        lines.append(f"## Closed Actions ({len(closed)})\n")
        for i in closed:
            lines.append(f"- [{i.get('priority_code') or '-'}] {i.get('description')}")
        lines.append("")

    removed = details.get("removed_items") or []
    if removed:
        lines.append(f"## Removed Actions ({len(removed)})\n")
        for i in removed:
            lines.append(f"- [{i.get('priority_code') or '-'}] {i.get('description')}")
        lines.append("")

    if details.get("changed_modules"):
        lines.append("## Sections Changed\n")
        lines.extend(f"- {k}" for k in details["changed_modules"])
        lines.append("")

    for change in details.get("metadata_changes") or []:
        lines.append(f"- {change['field']}: {change['from'] or '-'} -> {change['to'] or '-'}")

    if details.get("outstanding_count"):
        lines.append(f"## Outstanding Actions: {details['outstanding_count']}\n")

    if not has_material_changes(details):
        lines.append("_No material changes since last issue._\n")

    return "\n".join(lines).rstrip() + "\n"


def get_change_summary(s, family_id: int, revision_number: int) -> ChangeSummary | None:
    return (
        s.execute(
            select(ChangeSummary).where(
                ChangeSummary.family_id == family_id, ChangeSummary.revision_number == revision_number
            )
        )
        .scalars()
        .one_or_none()
    )


def change_summary_to_dict(cs: ChangeSummary) -> dict[str, Any]:
    return {
        "family_id": cs.family_id,
        "revision_number": cs.revision_number,
        "previous_revision_number": cs.previous_revision_number,
        "generated_at": cs.generated_at.isoformat() if cs.generated_at else None,
        "generated_by_user_id": cs.generated_by_user_id,
        "new_items_count": cs.new_items_count,
        "closed_items_count": cs.closed_items_count,
        "outstanding_items_count": cs.outstanding_items_count,
        "has_material_changes": cs.has_material_changes,
        "details": cs.details,
        "summary_text": cs.summary_text,
    }


def generate_change_summary(s, revision: DocumentRevision, *, actor: User | None) -> ChangeSummary:
    """Idempotent: a summary already stored for this revision number is returned untouched."""
    existing = get_change_summary(s, revision.family_id, revision.revision_number)
    if existing is not None:
        return existing

    current_snap = get_snapshot(s, revision.family_id, revision.revision_number)
    if current_snap is None:
        raise NotFound(f"No snapshot for revision {revision.revision_number}; cannot summarise changes.")
    previous_number = revision.revision_number - 1 if revision.revision_number > 1 else None
    previous_payload = None
    if previous_number is not None:
        prev_snap = get_snapshot(s, revision.family_id, previous_number)
        if prev_snap is None:
            logger.warning(
                "Revision %s of family %s has no snapshot; summarising as initial issue",
                previous_number,
                revision.family_id,
            )
        else:
            previous_payload = load_payload(prev_snap)

    details = diff_payloads(previous_payload, load_payload(current_snap))
    cs = ChangeSummary(
        family_id=revision.family_id,
        revision_id=revision.id,
        revision_number=revision.revision_number,
        previous_revision_number=previous_number if previous_payload is not None else None,
        generated_by_user_id=actor.id if actor else None,
        new_items_count=len(details["new_items"]),
        closed_items_count=len(details["closed_items"]),
        outstanding_items_count=details["outstanding_count"],
        has_material_changes=has_material_changes(details),
        details_json=json.dumps(details, sort_keys=True),
        summary_text=format_summary_text(details),
    )
    s.add(cs)
    try:
        s.commit()
    except IntegrityError:
        s.rollback()
        existing = get_change_summary(s, revision.family_id, revision.revision_number)
        if existing is None:
            raise LifecycleError("Change summary insert failed and no existing summary was found.")
        return existing
    return cs
