from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from sqlalchemy import select

from app.riskdocs.audit import record_event
from app.riskdocs.constants import (
    ITEM_CLOSED,
    ITEM_DEFERRED,
    ITEM_IN_PROGRESS,
    ITEM_NOT_APPLICABLE,
    ITEM_OPEN,
    ITEM_SOURCE_MANUAL,
    REFERENCE_PREFIX,
)
from app.riskdocs.errors import InvalidRequest, NotFound
from app.riskdocs.models import User

from .models import DocumentRevision, RemediationItem
from .write_lock import assert_revision_editable

logger = logging.getLogger(__name__)

# Statuses reachable through set_item_status; closing goes through close_item.
SETTABLE_STATUSES = (ITEM_OPEN, ITEM_IN_PROGRESS, ITEM_DEFERRED, ITEM_NOT_APPLICABLE)
EDITABLE_ITEM_FIELDS = ("description", "module_key", "target_date", "owner_user_id", "explanation")

_REF_RE = re.compile(rf"^{re.escape(REFERENCE_PREFIX)}(\d+)$")


@dataclass(frozen=True)
class Classification:
    tier: str
    priority_code: str
    explanation: str


TIER_TO_PRIORITY = {"T4": "P1", "T3": "P2", "T2": "P3", "T1": "P4"}


class DefaultClassifier:
    """
    Deterministic severity tiers from structured facts (no likelihood x impact scoring).

    T4 material life-safety risk -> P1, T3 significant deficiency -> P2,
    T2 improvement required -> P3, T1 minor -> P4.
    """

    def classify(self, draft: dict[str, Any]) -> Classification:
        tier, why = self._tier(draft)
        return Classification(tier=tier, priority_code=TIER_TO_PRIORITY[tier], explanation=why)

    def _tier(self, d: dict[str, Any]) -> tuple[str, str]:
        ctx = d.get("context") or {}
        occupancy = (ctx.get("occupancy_risk") or "non_sleeping").lower()
        sleeping = occupancy in ("sleeping", "vulnerable")
        storeys = int(ctx.get("storeys") or 0)

        def fact(name: str) -> bool:
            return d.get(name) is True

        if fact("final_exit_locked") or fact("final_exit_obstructed"):
            return "T4", "Final exit locked or obstructed."
        if sleeping and fact("no_fire_detection"):
            return "T4", "No fire detection in sleeping or vulnerable premises."
        if storeys >= 2 and fact("no_emergency_lighting"):
            return "T4", "No emergency lighting in a multi-storey building."
        if storeys >= 4 and fact("single_stair_compromised"):
            return "T4", "Single stair compromised above low-rise."
        if sleeping and fact("serious_compartmentation_failure"):
            return "T4", "Serious compartmentation failure where escape relies on it."
        if fact("high_risk_room_to_escape_route"):
            return "T4", "High-risk room opens onto an escape route without protection."
        if fact("assessor_marked_critical") and (d.get("justification") or "").strip():
            return "T4", f"Assessor up-rated to critical: {d['justification'].strip()}"

        if fact("no_fire_detection"):
            return "T3", "No fire detection."
        if fact("detection_inadequate_coverage"):
            return "T3", "Detection coverage inadequate."
        if fact("serious_compartmentation_failure"):
            return "T3", "Serious compartmentation failure."
        if fact("single_stair_compromised"):
            return "T3", "Single stair compromised."
        if fact("no_fra_evidence_or_review"):
            return "T3", "No evidence of assessment review."

        if (d.get("category") or "").lower() in ("management", "housekeeping", "fire_fighting"):
            return "T2", "Improvement required (category default)."
        return "T1", "Minor deficiency."


def _parse_date(value: Any) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as e:
        raise InvalidRequest(f"Invalid date (expected YYYY-MM-DD): {value!r}") from e


def _parse_user_id(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise InvalidRequest(f"owner_user_id must be numeric (got {value!r}).") from e


def get_item(s, item_id: int) -> RemediationItem:
    item = s.get(RemediationItem, item_id)
    if item is None:
        raise NotFound(f"Remediation item {item_id} not found.")
    return item


def item_to_dict(item: RemediationItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "family_id": item.family_id,
        "revision_id": item.revision_id,
        "origin_item_id": item.origin_item_id,
        "origin_revision_number": item.origin_revision_number,
        "carried_from_item_id": item.carried_from_item_id,
        "reference_number": item.reference_number,
        "module_key": item.module_key,
        "description": item.description,
        "tier": item.tier,
        "priority_code": item.priority_code,
        "explanation": item.explanation,
        "target_date": item.target_date.isoformat() if item.target_date else None,
        "owner_user_id": item.owner_user_id,
        "source": item.source,
        "status": item.status,
        "closed_at": item.closed_at.isoformat() if item.closed_at else None,
        "closed_by_user_id": item.closed_by_user_id,
        "closure_note": item.closure_note,
        "reopened_at": item.reopened_at.isoformat() if item.reopened_at else None,
    }


def create_item(s, revision_id: int, draft: dict[str, Any], *, actor: User, classifier) -> RemediationItem:
    rev = s.get(DocumentRevision, revision_id)
    if rev is None:
        raise NotFound(f"Revision {revision_id} not found.")
    assert_revision_editable(rev)

    description = (draft.get("description") or "").strip()
    if not description:
        raise InvalidRequest("description is required.")
    status = (draft.get("status") or ITEM_OPEN).strip()
    if status not in SETTABLE_STATUSES:
        raise InvalidRequest(f"New items must start in one of: {', '.join(SETTABLE_STATUSES)}")

    cls = classifier.classify({**draft, "context": rev.context})
    now = datetime.utcnow()
    item = RemediationItem(
        family_id=rev.family_id,
        revision_id=rev.id,
        origin_revision_number=rev.revision_number,
        module_key=(draft.get("module_key") or None),
        description=description,
        tier=cls.tier,
        priority_code=cls.priority_code,
        explanation=cls.explanation,
        target_date=_parse_date(draft.get("target_date")),
        owner_user_id=_parse_user_id(draft.get("owner_user_id")),
        source=ITEM_SOURCE_MANUAL,
        status=status,
        created_at=now,
        updated_at=now,
    )
    s.add(item)
    s.flush()
    # A root item is the origin of its own lineage.
    item.origin_item_id = item.id
    s.flush()

    record_event(
        s,
        actor=actor,
        action="remediation_item.create",
        entity_type="RemediationItem",
        entity_id=str(item.id),
        metadata={
            "revision_id": rev.id,
            "revision_number": rev.revision_number,
            "tier": item.tier,
            "priority_code": item.priority_code,
        },
    )
    return item


def update_item(s, item_id: int, changes: dict[str, Any], *, actor: User) -> RemediationItem:
    item = get_item(s, item_id)
    assert_revision_editable(item.revision)

    unknown = sorted(set(changes) - set(EDITABLE_ITEM_FIELDS))
    if unknown:
        raise InvalidRequest(f"Fields not editable here: {', '.join(unknown)}")

    before = {k: getattr(item, k) for k in changes}
    if "description" in changes:
        desc = (changes["description"] or "").strip()
        if not desc:
            raise InvalidRequest("description cannot be empty.")
        item.description = desc
    if "module_key" in changes:
        item.module_key = changes["module_key"] or None
    if "target_date" in changes:
        item.target_date = _parse_date(changes["target_date"])
    if "owner_user_id" in changes:
        item.owner_user_id = _parse_user_id(changes["owner_user_id"])
    if "explanation" in changes:
        item.explanation = changes["explanation"] or None
    item.updated_at = datetime.utcnow()

    after = {k: getattr(item, k) for k in changes}
    record_event(
        s,
        actor=actor,
        action="remediation_item.update",
        entity_type="RemediationItem",
        entity_id=str(item.id),
        metadata={"before": before, "after": after, "fields_changed": [k for k in changes if before[k] != after[k]]},
    )
    return item


def set_item_status(s, item_id: int, status: str, *, actor: User, note: str | None = None) -> RemediationItem:
    item = get_item(s, item_id)
    assert_revision_editable(item.revision)
    if status == ITEM_CLOSED:
        raise InvalidRequest("Use the close action to close an item.")
    if status not in SETTABLE_STATUSES:
        raise InvalidRequest(f"Unknown item status: {status!r}")
    if item.status == ITEM_CLOSED:
        raise InvalidRequest("Closed items must be reopened first.")

    old = item.status
    item.status = status
    item.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="remediation_item.status",
        entity_type="RemediationItem",
        entity_id=str(item.id),
        reason=note,
        metadata={"from": old, "to": status},
    )
    return item


def delete_item(s, item_id: int, *, actor: User, reason: str | None = None) -> None:
    item = get_item(s, item_id)
    assert_revision_editable(item.revision)
    record_event(
        s,
        actor=actor,
        action="remediation_item.delete",
        entity_type="RemediationItem",
        entity_id=str(item.id),
        reason=reason,
        metadata={"revision_id": item.revision_id, "reference_number": item.reference_number, "description": item.description},
    )
    s.delete(item)
    s.flush()


def _reference_seq(ref: str | None) -> int:
    m = _REF_RE.match(ref or "")
    return int(m.group(1)) if m else 0


def assign_reference_numbers(s, revision: DocumentRevision) -> list[RemediationItem]:
    """
    R-01, R-02, ... sequential within the family. Numbers already assigned
    (including ones inherited by carried items) are kept; new items continue
    after the highest number ever used in the family.
    """
    existing = s.execute(
        select(RemediationItem.reference_number).where(
            RemediationItem.family_id == revision.family_id,
            RemediationItem.reference_number.is_not(None),
        )
    ).scalars()
    next_n = max((_reference_seq(r) for r in existing), default=0) + 1

    pending = (
        s.execute(
            select(RemediationItem)
            .where(RemediationItem.revision_id == revision.id, RemediationItem.reference_number.is_(None))
            .order_by(RemediationItem.created_at.asc(), RemediationItem.id.asc())
        )
        .scalars()
        .all()
    )
    for item in pending:
        item.reference_number = f"{REFERENCE_PREFIX}{next_n:02d}"
        next_n += 1
    if pending:
        s.flush()
        logger.info("Assigned %s reference numbers on revision_id=%s", len(pending), revision.id)
    return pending
