"""
Domain errors for the document lifecycle engine.

Every error carries a stable machine `code`, the HTTP status the API layer
should answer with, and whether a bounded retry is safe.
"""
from __future__ import annotations

from typing import Any


class LifecycleError(RuntimeError):
    code = "lifecycle_error"
    status_code = 400
    retryable = False

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": str(self), "retryable": self.retryable}


class NotFound(LifecycleError):
    code = "not_found"
    status_code = 404


class InvalidRequest(LifecycleError):
    code = "invalid_request"
    status_code = 400


class InvalidTransition(LifecycleError):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, current: str, requested: str, reason: str | None = None):
        msg = f"Cannot '{requested}' a revision in status '{current}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.current = current
        self.requested = requested
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d.update({"current_status": self.current, "requested": self.requested})
        return d


class ValidationBlocked(LifecycleError):
    """Readiness check failed; `blockers` is always the full list."""

    code = "validation_blocked"
    status_code = 422

    def __init__(self, blockers: list[dict[str, Any]]):
        n = len(blockers)
        super().__init__(f"{n} issue{'s' if n != 1 else ''} must be resolved before issuing")
        self.blockers = blockers

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["blockers"] = self.blockers
        return d


class ConfirmationRequired(LifecycleError):
    code = "confirmation_required"
    status_code = 400

    def __init__(self, action: str):
        super().__init__(f"'{action}' requires explicit confirmation (confirm=true).")
        self.action = action


class PermissionDenied(LifecycleError):
    code = "permission_denied"
    status_code = 403

    def __init__(self, permission: str):
        super().__init__(f"Missing permission: {permission}")
        self.permission = permission


class ArtifactLockFailed(LifecycleError):
    code = "artifact_lock_failed"
    status_code = 503
    retryable = True


class SnapshotWriteFailed(LifecycleError):
    code = "snapshot_write_failed"
    status_code = 503
    retryable = True


class RevisionLocked(LifecycleError):
    code = "revision_locked"
    status_code = 423

    def __init__(self, revision_number: int | None, status: str):
        super().__init__(
            f"Revision {revision_number} is {status} and cannot be modified. "
            "Create a new revision to make changes."
        )
        self.revision_number = revision_number
        self.status = status

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d.update({"revision_number": self.revision_number, "status": self.status})
        return d


class ImmutableRecordError(LifecycleError):
    """Snapshots and change summaries are append-only."""

    code = "immutable_record"
    status_code = 409


class WriteLockBypass(LifecycleError):
    """Bulk SQL against guarded tables would skip the per-row write-lock checks."""

    code = "write_lock_bypass"
    status_code = 500


class SnapshotMismatch(SnapshotWriteFailed):
    """The revision's live content no longer matches the snapshot it must issue from."""

    code = "snapshot_mismatch"
    status_code = 409
    retryable = False
