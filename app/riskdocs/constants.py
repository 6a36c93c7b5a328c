"""
Central constants for the document lifecycle engine.
"""
from __future__ import annotations

# Document kinds
FIRE_RISK_ASSESSMENT = "fire_risk_assessment"
FIRE_STRATEGY = "fire_strategy"
EXPLOSIVE_ATMOSPHERE = "explosive_atmosphere"
ENGINEERING_RISK = "engineering_risk"

DOCUMENT_KINDS = frozenset({FIRE_RISK_ASSESSMENT, FIRE_STRATEGY, EXPLOSIVE_ATMOSPHERE, ENGINEERING_RISK})

# Revision statuses
DRAFT = "draft"
IN_REVIEW = "in_review"
APPROVED = "approved"
ISSUED = "issued"
SUPERSEDED = "superseded"

REVISION_STATUSES = (DRAFT, IN_REVIEW, APPROVED, ISSUED, SUPERSEDED)
EDITABLE_STATUSES = frozenset({DRAFT, IN_REVIEW, APPROVED})
LOCKED_STATUSES = frozenset({ISSUED, SUPERSEDED})

# Remediation item statuses
ITEM_OPEN = "open"
ITEM_IN_PROGRESS = "in_progress"
ITEM_CLOSED = "closed"
ITEM_NOT_APPLICABLE = "not_applicable"
ITEM_DEFERRED = "deferred"

ITEM_STATUSES = (ITEM_OPEN, ITEM_IN_PROGRESS, ITEM_CLOSED, ITEM_NOT_APPLICABLE, ITEM_DEFERRED)
CARRY_FORWARD_STATUSES = frozenset({ITEM_OPEN, ITEM_IN_PROGRESS, ITEM_DEFERRED})
TERMINAL_ITEM_STATUSES = frozenset({ITEM_CLOSED, ITEM_NOT_APPLICABLE})

ITEM_SOURCE_MANUAL = "manual"
ITEM_SOURCE_CARRIED = "carried_forward"

REFERENCE_PREFIX = "R-"

# Permissions
PERM_VIEW = "docs.view"
PERM_CREATE = "docs.create"
PERM_EDIT = "docs.edit"
PERM_SUBMIT = "docs.submit"
PERM_APPROVE = "docs.approve"
PERM_ISSUE = "docs.issue"
PERM_REVISE = "docs.revise"
PERM_DELETE = "docs.delete"
PERM_DOWNLOAD = "docs.download"
PERM_CLOSE_ACTION = "actions.close"
PERM_REOPEN_ACTION = "actions.reopen"

ALL_PERMISSIONS = {
    PERM_VIEW: "Docs: view",
    PERM_CREATE: "Docs: create",
    PERM_EDIT: "Docs: edit drafts",
    PERM_SUBMIT: "Docs: submit for review",
    PERM_APPROVE: "Docs: approve",
    PERM_ISSUE: "Docs: issue",
    PERM_REVISE: "Docs: create revision",
    PERM_DELETE: "Docs: delete drafts",
    PERM_DOWNLOAD: "Docs: download issued reports",
    PERM_CLOSE_ACTION: "Actions: close",
    PERM_REOPEN_ACTION: "Actions: reopen",
}
