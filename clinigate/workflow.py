"""
Pending Permission Workflow.

Reconciles recommender-sourced permission suggestions into the live
Permission Model through human review.

**Lifecycle:**

    Pending -> Approved
    Pending -> Rejected

``Approved`` and ``Rejected`` are terminal.  A suggestion is created only
by ``ingest()`` and only when no equivalent (same principal, permission
and change type) suggestion is already Pending.  Approving an ``Add``
suggestion adds the permission to the principal's ad-hoc set; approving a
``Remove`` suggestion removes it.  Rejecting changes nothing but the
suggestion.

**Atomicity:**

One lock is held across "check Pending -> mutate the Permission Model ->
mark terminal".  The reviewed copy is built before the mutation, so the
mutation is the only step that can fail; if it raises, the suggestion
stays Pending.  ``approve_all_for_principal`` undoes its earlier
mutations when a later one raises.
Concurrent approvals of one suggestion serialise on that lock; the loser
sees ``InvalidStateError`` and the mutation is applied once.  Ingest
checks and fills a unique index of Pending
``(principal_id, permission_key, change_type)`` under the same lock.

Bulk operations isolate any failure per id so one bad id cannot block the
rest of the batch.
"""

from __future__ import annotations

import itertools
import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from pydantic import BaseModel, Field

from clinigate.audit import AuditLog, AuditRecord, record_best_effort
from clinigate.errors import InvalidStateError, NotFoundError
from clinigate.models import (
    ChangeType,
    PendingPermissionSuggestion,
    PermissionSuggestion,
    RequestType,
    SuggestionStatus,
)
from clinigate.permissions import PermissionModel


logger = logging.getLogger(__name__)

SUGGESTION_RESOURCE_TYPE = "PendingPermissionSuggestion"

_VALID_TRANSITIONS: dict[SuggestionStatus, set[SuggestionStatus]] = {
    SuggestionStatus.PENDING: {SuggestionStatus.APPROVED, SuggestionStatus.REJECTED},
    SuggestionStatus.APPROVED: set(),  # terminal
    SuggestionStatus.REJECTED: set(),  # terminal
}


class BulkResult(BaseModel):
    """Outcome of a bulk approve or reject."""

    succeeded: int = Field(default=0, ge=0, description="Suggestions moved to the target status.")
    failed: int = Field(default=0, ge=0)
    errors: list[str] = Field(default_factory=list, description="One message per failed id.")


class PendingPermissionWorkflow:
    """Ingests, lists, approves and rejects pending permission suggestions.

    Args:
        model: The Permission Model mutated on approval.
        audit_log: Optional log receiving one record per review action.
        clock: Returns the current time; defaults to UTC wall clock.
    """

    def __init__(
        self,
        model: PermissionModel,
        audit_log: Optional[AuditLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._model = model
        self._audit_log = audit_log
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._suggestions: dict[int, PendingPermissionSuggestion] = {}
        self._pending_index: dict[tuple[str, str, ChangeType], int] = {}
        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    # -----------------------------------------------------------------------
    # Ingestion
    # -----------------------------------------------------------------------

    def ingest(
        self,
        principal_id: str,
        suggestions: Iterable[PermissionSuggestion],
        request_type: RequestType,
    ) -> int:
        """Create Pending suggestions from recommender output.

        Each suggestion is skipped silently when its label cannot be
        resolved, when it would add a permission the principal's role
        already grants, or when an equivalent suggestion is already
        Pending.

        Args:
            principal_id: The principal the suggestions are for.
            suggestions: Scored suggestions from the recommender.
            request_type: Why the suggestions were produced.

        Returns:
            The number of Pending suggestions created.

        Raises:
            NotFoundError: If the principal does not exist.
        """
        if not self._model.exists(principal_id):
            raise NotFoundError(f"Principal not found: '{principal_id}'")

        catalog = self._model.catalog
        created = 0
        with self._lock:
            for suggestion in suggestions:
                permission = catalog.resolve_label(suggestion.permission)
                if permission is None:
                    logger.debug(
                        "suggestion_skipped_unresolvable principal_id=%s label=%s",
                        principal_id,
                        suggestion.permission,
                    )
                    continue
                if (
                    suggestion.change_type == ChangeType.ADD
                    and self._model.role_holds(principal_id, permission)
                ):
                    continue
                index_key = (principal_id, permission.key, suggestion.change_type)
                if index_key in self._pending_index:
                    continue

                suggestion_id = next(self._ids)
                self._suggestions[suggestion_id] = PendingPermissionSuggestion(
                    suggestion_id=suggestion_id,
                    principal_id=principal_id,
                    permission=permission,
                    confidence=suggestion.confidence,
                    request_type=request_type,
                    change_type=suggestion.change_type,
                    created_at=self._clock(),
                )
                self._pending_index[index_key] = suggestion_id
                created += 1

        logger.info(
            "suggestions_ingested principal_id=%s request_type=%s created=%s",
            principal_id,
            request_type.value,
            created,
        )
        return created

    # -----------------------------------------------------------------------
    # Review actions
    # -----------------------------------------------------------------------

    def approve(
        self,
        suggestion_id: int,
        reviewer: str,
        notes: Optional[str] = None,
    ) -> PendingPermissionSuggestion:
        """Approve a Pending suggestion and apply it to the Permission Model.

        Raises:
            NotFoundError: If no suggestion has that id.
            InvalidStateError: If the suggestion is not Pending.
        """
        with self._lock:
            suggestion = self._require(suggestion_id)
            self._check_transition(suggestion, SuggestionStatus.APPROVED)
            reviewed = self._reviewed_copy(suggestion, SuggestionStatus.APPROVED, reviewer, notes)
            self._apply(suggestion)
            reviewed = self._store(reviewed)

        self._record_approval(reviewed, reviewer)
        return reviewed

    def reject(
        self,
        suggestion_id: int,
        reviewer: str,
        notes: Optional[str] = None,
    ) -> PendingPermissionSuggestion:
        """Reject a Pending suggestion.  The Permission Model is untouched.

        Raises:
            NotFoundError: If no suggestion has that id.
            InvalidStateError: If the suggestion is not Pending.
        """
        with self._lock:
            suggestion = self._require(suggestion_id)
            self._check_transition(suggestion, SuggestionStatus.REJECTED)
            reviewed = self._reviewed_copy(suggestion, SuggestionStatus.REJECTED, reviewer, notes)
            reviewed = self._store(reviewed)

        logger.info(
            "suggestion_rejected suggestion_id=%s permission=%s principal_id=%s reviewer=%s",
            suggestion_id,
            reviewed.permission_key,
            reviewed.principal_id,
            reviewer,
        )
        self._emit_audit(reviewed, reviewer, "reject")
        return reviewed

    def bulk_approve(
        self,
        suggestion_ids: Iterable[int],
        reviewer: str,
        notes: Optional[str] = None,
    ) -> BulkResult:
        """Approve each id independently, collecting per-id failures."""
        result = self._bulk(suggestion_ids, self.approve, reviewer, notes)
        logger.info(
            "bulk_approve_completed reviewer=%s approved=%s failed=%s",
            reviewer,
            result.succeeded,
            result.failed,
        )
        return result

    def bulk_reject(
        self,
        suggestion_ids: Iterable[int],
        reviewer: str,
        notes: Optional[str] = None,
    ) -> BulkResult:
        """Reject each id independently, collecting per-id failures."""
        result = self._bulk(suggestion_ids, self.reject, reviewer, notes)
        logger.info(
            "bulk_reject_completed reviewer=%s rejected=%s failed=%s",
            reviewer,
            result.succeeded,
            result.failed,
        )
        return result

    def approve_all_for_principal(
        self,
        principal_id: str,
        reviewer: str,
        notes: Optional[str] = None,
    ) -> int:
        """Approve every Pending suggestion for one principal.

        All or nothing: if any Permission Model mutation raises, the
        mutations already applied in this call are undone and every
        suggestion stays Pending.

        Returns:
            The number approved; zero when nothing is pending.

        Raises:
            NotFoundError: If the principal does not exist.
        """
        if not self._model.exists(principal_id):
            raise NotFoundError(f"Principal not found: '{principal_id}'")

        with self._lock:
            pending = sorted(
                (
                    s for s in self._suggestions.values()
                    if s.principal_id == principal_id and s.status == SuggestionStatus.PENDING
                ),
                key=lambda s: s.suggestion_id,
            )
            reviewed = [
                self._reviewed_copy(s, SuggestionStatus.APPROVED, reviewer, notes)
                for s in pending
            ]
            changed: list[PendingPermissionSuggestion] = []
            try:
                for suggestion in pending:
                    if self._apply(suggestion):
                        changed.append(suggestion)
            except Exception:
                for suggestion in reversed(changed):
                    self._apply(suggestion, undo=True)
                raise
            stored = [self._store(r) for r in reviewed]

        for r in stored:
            self._record_approval(r, reviewer)
        logger.info(
            "approve_all_completed principal_id=%s reviewer=%s approved=%s",
            principal_id,
            reviewer,
            len(stored),
        )
        return len(stored)

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    def get(self, suggestion_id: int) -> PendingPermissionSuggestion:
        """Return a copy of one suggestion.

        Raises:
            NotFoundError: If no suggestion has that id.
        """
        with self._lock:
            return self._require(suggestion_id).model_copy(deep=True)

    def list_pending(self) -> list[PendingPermissionSuggestion]:
        """All Pending suggestions, newest first."""
        return self._select(lambda s: s.status == SuggestionStatus.PENDING)

    def list_pending_for_principal(self, principal_id: str) -> list[PendingPermissionSuggestion]:
        return self._select(
            lambda s: s.status == SuggestionStatus.PENDING and s.principal_id == principal_id
        )

    def list_pending_by_type(self, request_type: RequestType) -> list[PendingPermissionSuggestion]:
        return self._select(
            lambda s: s.status == SuggestionStatus.PENDING and s.request_type == request_type
        )

    def pending_changes(self, principal_id: str) -> dict[str, object]:
        """Pending permission keys for a principal, split by change type."""
        pending = self.list_pending_for_principal(principal_id)
        to_add = [s.permission_key for s in pending if s.change_type == ChangeType.ADD]
        to_remove = [s.permission_key for s in pending if s.change_type == ChangeType.REMOVE]
        return {
            "to_add": to_add,
            "to_remove": to_remove,
            "total_pending": len(pending),
        }

    def stats(self) -> dict[str, int]:
        with self._lock:
            statuses = [s.status for s in self._suggestions.values()]
        return {
            "pending": statuses.count(SuggestionStatus.PENDING),
            "approved": statuses.count(SuggestionStatus.APPROVED),
            "rejected": statuses.count(SuggestionStatus.REJECTED),
            "total": len(statuses),
        }

    def __len__(self) -> int:
        return len(self._suggestions)

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    def _require(self, suggestion_id: int) -> PendingPermissionSuggestion:
        suggestion = self._suggestions.get(suggestion_id)
        if suggestion is None:
            raise NotFoundError(f"Suggestion not found: {suggestion_id}")
        return suggestion

    @staticmethod
    def _check_transition(
        suggestion: PendingPermissionSuggestion,
        target: SuggestionStatus,
    ) -> None:
        if target not in _VALID_TRANSITIONS[suggestion.status]:
            raise InvalidStateError(
                f"Suggestion {suggestion.suggestion_id} already processed: "
                f"{suggestion.status.value}"
            )

    def _reviewed_copy(
        self,
        suggestion: PendingPermissionSuggestion,
        status: SuggestionStatus,
        reviewer: str,
        notes: Optional[str],
    ) -> PendingPermissionSuggestion:
        return suggestion.model_copy(update={
            "status": status,
            "reviewed_by": reviewer,
            "reviewed_at": self._clock(),
            "review_notes": notes,
        })

    def _apply(self, suggestion: PendingPermissionSuggestion, undo: bool = False) -> bool:
        """Mutate the principal's ad-hoc set; True if it changed."""
        remove = (suggestion.change_type == ChangeType.REMOVE) != undo
        if remove:
            return self._model.revoke_additional(suggestion.principal_id, suggestion.permission)
        return self._model.grant_additional(suggestion.principal_id, suggestion.permission)

    def _store(self, reviewed: PendingPermissionSuggestion) -> PendingPermissionSuggestion:
        # Must not raise: the Permission Model has already been mutated.
        self._suggestions[reviewed.suggestion_id] = reviewed
        self._pending_index.pop(
            (reviewed.principal_id, reviewed.permission_key, reviewed.change_type),
            None,
        )
        return reviewed.model_copy(deep=True)

    def _record_approval(self, reviewed: PendingPermissionSuggestion, reviewer: str) -> None:
        logger.info(
            "suggestion_approved suggestion_id=%s permission=%s principal_id=%s change_type=%s reviewer=%s",
            reviewed.suggestion_id,
            reviewed.permission_key,
            reviewed.principal_id,
            reviewed.change_type.value,
            reviewer,
        )
        self._emit_audit(reviewed, reviewer, "approve")

    def _bulk(
        self,
        suggestion_ids: Iterable[int],
        action: Callable[[int, str, Optional[str]], PendingPermissionSuggestion],
        reviewer: str,
        notes: Optional[str],
    ) -> BulkResult:
        result = BulkResult()
        for suggestion_id in suggestion_ids:
            try:
                action(suggestion_id, reviewer, notes)
                result.succeeded += 1
            except InvalidStateError:
                result.failed += 1
                result.errors.append(f"Suggestion {suggestion_id} already processed")
            except Exception as exc:
                logger.warning(
                    "bulk_item_failed suggestion_id=%s reviewer=%s error=%s",
                    suggestion_id,
                    reviewer,
                    exc,
                )
                result.failed += 1
                result.errors.append(f"Suggestion {suggestion_id}: {exc}")
        return result

    def _select(
        self,
        predicate: Callable[[PendingPermissionSuggestion], bool],
    ) -> list[PendingPermissionSuggestion]:
        with self._lock:
            matches = [s.model_copy(deep=True) for s in self._suggestions.values() if predicate(s)]
        matches.sort(key=lambda s: (s.created_at, s.suggestion_id), reverse=True)
        return matches

    def _emit_audit(
        self,
        suggestion: PendingPermissionSuggestion,
        reviewer: str,
        action: str,
    ) -> None:
        if self._audit_log is None:
            return
        record_best_effort(self._audit_log, AuditRecord(
            actor_id=reviewer,
            resource_type=SUGGESTION_RESOURCE_TYPE,
            resource_id=str(suggestion.suggestion_id),
            action=action,
            allowed=True,
            policy_id=f"ALLOW_{SUGGESTION_RESOURCE_TYPE}_{action}",
            timestamp=suggestion.reviewed_at or self._clock(),
        ))
