"""
Carry-forward and lineage closure.

Lineage is append-only: every copy of a remediation item points at the root
of its chain (`origin_item_id`). Closing one copy is a query over that chain,
not a walk of live back-references.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select

from app.riskdocs.audit import record_event
from app.riskdocs.constants import (
    CARRY_FORWARD_STATUSES,
    ITEM_CLOSED,
    ITEM_OPEN,
    ITEM_SOURCE_CARRIED,
    PERM_REOPEN_ACTION,
)
from app.riskdocs.errors import InvalidRequest, NotFound, PermissionDenied
from app.riskdocs.models import User
from app.riskdocs.rbac import user_has_permission

from .models import DocumentRevision, RemediationItem
from .remediation import get_item
from .write_lock import assert_revision_editable

logger = logging.getLogger(__name__)


def carry_forward(s, prior_revision_id: int, new_revision_id: int) -> list[RemediationItem]:
    """
    Copy open/in_progress/deferred items of the prior revision into the new one.
    Flushes only; the caller's transaction decides when the copies become visible.
    """
    new_rev = s.get(DocumentRevision, new_revision_id)
    if new_rev is None:
        raise NotFound(f"Revision {new_revision_id} not found.")

    prior_items = (
        s.execute(
            select(RemediationItem)
            .where(
                RemediationItem.revision_id == prior_revision_id,
                RemediationItem.status.in_(tuple(CARRY_FORWARD_STATUSES)),
            )
            .order_by(RemediationItem.id.asc())
        )
        .scalars()
        .all()
    )

    now = datetime.utcnow()
    copies: list[RemediationItem] = []
    for prior in prior_items:
        copy = RemediationItem(
            family_id=prior.family_id,
            revision_id=new_rev.id,
            origin_item_id=prior.lineage_id,
            origin_revision_number=prior.origin_revision_number,
            carried_from_item_id=prior.id,
            module_key=prior.module_key,
            description=prior.description,
            tier=prior.tier,
            priority_code=prior.priority_code,
            explanation=prior.explanation,
            target_date=prior.target_date,
            owner_user_id=prior.owner_user_id,
            source=ITEM_SOURCE_CARRIED,
            reference_number=prior.reference_number,
            status=prior.status,
            created_at=now,
            updated_at=now,
        )
        s.add(copy)
        copies.append(copy)
    s.flush()

    logger.info(
        "Carried forward %s of %s items from revision_id=%s to revision_id=%s",
        len(copies),
        len(prior_items),
        prior_revision_id,
        new_revision_id,
    )
    return copies


def propagate_closure(s, item: RemediationItem, *, actor: User | None) -> list[RemediationItem]:
    """
    Close every still-open copy of `item`'s lineage in earlier revisions.
    Only revisions that exist now are touched; later revisions never inherit a closed copy anyway.
    """
    current_number = item.revision.revision_number
    lineage = item.lineage_id
    stale = (
        s.execute(
            select(RemediationItem)
            .join(DocumentRevision, DocumentRevision.id == RemediationItem.revision_id)
            .where(
                RemediationItem.family_id == item.family_id,
                (RemediationItem.origin_item_id == lineage) | (RemediationItem.id == lineage),
                RemediationItem.id != item.id,
                RemediationItem.status.in_(tuple(CARRY_FORWARD_STATUSES)),
                DocumentRevision.revision_number < current_number,
            )
            .order_by(RemediationItem.id.asc())
        )
        .scalars()
        .all()
    )
    for other in stale:
        other.status = ITEM_CLOSED
        other.closed_at = item.closed_at
        other.closed_by_user_id = actor.id if actor else None
        other.closure_note = f"Closed in revision {current_number}" + (f": {item.closure_note}" if item.closure_note else "")
        other.updated_at = datetime.utcnow()
    if stale:
        s.flush()
        logger.info("Propagated closure of lineage %s to %s earlier copies", lineage, len(stale))
    return stale


def close_item(s, item_id: int, *, actor: User, note: str | None = None) -> RemediationItem:
    item = get_item(s, item_id)
    assert_revision_editable(item.revision)
    if item.status == ITEM_CLOSED:
        return item
    if item.status not in CARRY_FORWARD_STATUSES:
        raise InvalidRequest(f"Cannot close an item with status '{item.status}'.")

    old = item.status
    item.status = ITEM_CLOSED
    item.closed_at = datetime.utcnow()
    item.closed_by_user_id = actor.id if actor else None
    item.closure_note = (note or "").strip() or None
    item.updated_at = item.closed_at
    s.flush()

    propagated = propagate_closure(s, item, actor=actor)
    record_event(
        s,
        actor=actor,
        action="remediation_item.close",
        entity_type="RemediationItem",
        entity_id=str(item.id),
        reason=item.closure_note,
        metadata={
            "from": old,
            "lineage_id": item.lineage_id,
            "propagated_to": [o.id for o in propagated],
        },
    )
    return item


def reopen_item(s, item_id: int, *, actor: User, note: str | None = None) -> RemediationItem:
    """Reopen in the editable revision only; closed copies in history stay closed."""
    if not user_has_permission(actor, PERM_REOPEN_ACTION):
        raise PermissionDenied(PERM_REOPEN_ACTION)
    item = get_item(s, item_id)
    assert_revision_editable(item.revision)
    if item.status != ITEM_CLOSED:
        raise InvalidRequest("Only closed items can be reopened.")

    closed_note = item.closure_note
    item.status = ITEM_OPEN
    item.reopened_at = datetime.utcnow()
    item.reopened_by_user_id = actor.id if actor else None
    item.closed_at = None
    item.closed_by_user_id = None
    item.closure_note = None
    item.updated_at = item.reopened_at
    s.flush()

    record_event(
        s,
        actor=actor,
        action="remediation_item.reopen",
        entity_type="RemediationItem",
        entity_id=str(item.id),
        reason=note,
        metadata={"lineage_id": item.lineage_id, "previous_closure_note": closed_note},
    )
    return item
