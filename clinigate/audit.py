"""
Audit Trail -- Append-Only, Hash-Chained Log and the Audit Interceptor.

Every authorization decision and every call to an operation marked
auditable leaves one ``AuditRecord``.  Records are write-once: the log
offers no update or delete, and each record carries the SHA-256 hash of
its predecessor so that ``verify_chain()`` detects after-the-fact edits.

**Audit interceptor:**

``audited(...)`` wraps an operation and records it on every exit path --
normal return, raised exception, or an exception raised before any
decision was reached.  For each call it determines:

* the actor (``"anonymous"`` when no principal is available),
* the resource type and action (explicit override, else inferred from the
  wrapped function's owner and name),
* a status code (explicit result status, else the exception's mapped
  status, else 500 for an unexpected failure),
* a policy id derived from outcome and status.

A failure while writing the record is logged and swallowed.  The wrapped
operation's own exception is re-raised unchanged.

**Queries** filter by principal, resource type, outcome, time range and
risk floor, and return pages of records newest first.
"""

from __future__ import annotations

import functools
import hashlib
import json
import logging
import math
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar

from pydantic import BaseModel, Field

from clinigate.errors import ClinigateError
from clinigate.models import Principal


logger = logging.getLogger(__name__)

ANONYMOUS_ACTOR = "anonymous"
NO_RESOURCE_ID = "N/A"
DEFAULT_PAGE_SIZE = 20
DEFAULT_HIGH_RISK_THRESHOLD = 5

F = TypeVar("F", bound=Callable[..., Any])


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class AuditRecord(BaseModel):
    """One write-once audit row."""

    record_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique identifier for this record (UUID).",
    )
    actor_id: str = Field(
        default=ANONYMOUS_ACTOR,
        description="Principal id of the actor, or 'anonymous'.",
    )
    resource_type: str = Field(..., description="Resource type, or the wrapped operation's owner.")
    resource_id: str = Field(
        default=NO_RESOURCE_ID,
        description="Resource identifier or request path; 'N/A' when none.",
    )
    action: str = Field(..., description="Action, or the wrapped operation's name.")
    allowed: bool = Field(...)
    policy_id: str = Field(...)
    deny_reasons: Optional[str] = Field(
        default=None,
        description="Deny reasons flattened to text.",
    )
    risk_score: Optional[int] = Field(default=None)
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="UTC wall-clock time of the event.",
    )
    ip_address: Optional[str] = Field(default=None)
    user_agent: Optional[str] = Field(default=None)
    previous_hash: str = Field(
        default="",
        description="SHA-256 of the previous record; empty for the first record.",
    )

    def canonical_bytes(self) -> bytes:
        """Deterministic byte representation for hashing."""
        data = self.model_dump(mode="json")
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


class AuditPage(BaseModel):
    """One page of query results, newest first."""

    items: list[AuditRecord] = Field(default_factory=list)
    total: int = Field(default=0, ge=0)
    page: int = Field(default=0, ge=0)
    size: int = Field(default=DEFAULT_PAGE_SIZE, ge=1)

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.size) if self.total else 0


class RequestContext(BaseModel):
    """Transport metadata for the current call, when there is one."""

    remote_address: Optional[str] = None
    user_agent: Optional[str] = None
    path: Optional[str] = None


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog:
    """Append-only audit log with SHA-256 hash chaining.

    There is no ``update()`` or ``delete()``.  Appends are serialised by a
    lock so that concurrent writers cannot fork the chain.
    """

    def __init__(self) -> None:
        self._records: list[AuditRecord] = []
        self._hashes: list[str] = []
        self._lock = threading.Lock()

    def append(self, record: AuditRecord) -> AuditRecord:
        """Append ``record``, linking it to the previous record's hash.

        Returns:
            A copy of the stored record with ``previous_hash`` populated.
        """
        with self._lock:
            stored = record.model_copy(
                update={"previous_hash": self._hashes[-1] if self._hashes else ""},
                deep=True,
            )
            self._records.append(stored)
            self._hashes.append(stored.compute_hash())
            return stored.model_copy(deep=True)

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the log and validate every hash link.

        Returns:
            ``(valid, broken_at)`` where ``broken_at`` is the index of the
            first broken link, or None when the chain is intact.
        """
        with self._lock:
            for i, record in enumerate(self._records):
                expected_prev = self._hashes[i - 1] if i else ""
                if record.previous_hash != expected_prev:
                    return (False, i)
                if self._hashes[i] != record.compute_hash():
                    return (False, i)
        return (True, None)

    def query(
        self,
        principal_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        allowed: Optional[bool] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        min_risk: Optional[int] = None,
        page: int = 0,
        size: int = DEFAULT_PAGE_SIZE,
    ) -> AuditPage:
        """Filter and paginate audit records, newest first.

        Args:
            principal_id: Only records for this actor.
            resource_type: Only records for this resource type.
            allowed: Only allowed (True) or denied (False) records.
            start: Inclusive lower bound on ``timestamp``.
            end: Inclusive upper bound on ``timestamp``.
            min_risk: Only records whose risk score is strictly greater
                than this value.  Records without a score never match.
            page: Zero-based page index.
            size: Page size.

        Returns:
            An ``AuditPage`` of copies.

        Raises:
            ValueError: If ``page`` is negative or ``size`` is not positive.
        """
        if page < 0:
            raise ValueError(f"page must be >= 0, got {page}")
        if size < 1:
            raise ValueError(f"size must be >= 1, got {size}")

        with self._lock:
            snapshot = list(self._records)

        matches = []
        for record in reversed(snapshot):
            if principal_id is not None and record.actor_id != principal_id:
                continue
            if resource_type is not None and record.resource_type != resource_type:
                continue
            if allowed is not None and record.allowed != allowed:
                continue
            if start is not None and record.timestamp < start:
                continue
            if end is not None and record.timestamp > end:
                continue
            if min_risk is not None and (record.risk_score is None or record.risk_score <= min_risk):
                continue
            matches.append(record)

        # reversed() puts later appends first among equal timestamps
        matches.sort(key=lambda r: r.timestamp, reverse=True)
        offset = page * size
        return AuditPage(
            items=[r.model_copy(deep=True) for r in matches[offset:offset + size]],
            total=len(matches),
            page=page,
            size=size,
        )

    def denied(self, page: int = 0, size: int = DEFAULT_PAGE_SIZE) -> AuditPage:
        return self.query(allowed=False, page=page, size=size)

    def high_risk(
        self,
        threshold: int = DEFAULT_HIGH_RISK_THRESHOLD,
        page: int = 0,
        size: int = DEFAULT_PAGE_SIZE,
    ) -> AuditPage:
        """Records whose risk score is strictly greater than ``threshold``."""
        return self.query(min_risk=threshold, page=page, size=size)

    def __len__(self) -> int:
        return len(self._records)


# ---------------------------------------------------------------------------
# Status and policy id derivation
# ---------------------------------------------------------------------------

def status_for_exception(exc: BaseException) -> int:
    """Map an exception to an HTTP-like status code.

    ``ClinigateError`` subclasses carry their own ``status_code``; a bare
    ``PermissionError`` is 403; anything else carrying an integer
    ``status_code`` attribute uses it; otherwise 500.
    """
    if isinstance(exc, ClinigateError):
        return exc.status_code
    if isinstance(exc, PermissionError):
        return 403
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    return 500


def derive_policy_id(resource_type: str, action: str, allowed: bool, status: int) -> str:
    """Build the policy id recorded for an intercepted call."""
    if allowed:
        return f"ALLOW_{resource_type}_{action}"
    if status == 401:
        return "DENY_UNAUTHENTICATED"
    if status == 403:
        return "DENY_UNAUTHORIZED"
    if status == 404:
        return "DENY_NOT_FOUND"
    return f"DENY_HTTP_{status}"


def _result_status(result: Any) -> int:
    status = getattr(result, "status_code", None)
    return status if isinstance(status, int) else 200


def _resolve(provider: Optional[Callable[[], Any]], label: str) -> Any:
    """Call a principal or context provider; None if absent or failing."""
    if provider is None:
        return None
    try:
        return provider()
    except Exception as exc:
        logger.warning("audit_%s_lookup_failed error=%s", label, exc, exc_info=exc)
        return None


def _infer_labels(func: Callable[..., Any]) -> tuple[str, str]:
    """Resource type from the function's owning class (or module), action from its name."""
    qualname = getattr(func, "__qualname__", func.__name__)
    parts = qualname.split(".<locals>.")[-1].split(".")
    if len(parts) > 1:
        owner = parts[-2]
    else:
        owner = func.__module__.rsplit(".", 1)[-1]
    return owner, func.__name__


# ---------------------------------------------------------------------------
# Interceptor
# ---------------------------------------------------------------------------

def audited(
    audit_log: AuditLog,
    resource_type: Optional[str] = None,
    action: Optional[str] = None,
    principal_provider: Optional[Callable[[], Optional[Principal]]] = None,
    context_provider: Optional[Callable[[], Optional[RequestContext]]] = None,
) -> Callable[[F], F]:
    """Decorate an operation so that every call leaves one audit record.

    Args:
        audit_log: Destination log.
        resource_type: Explicit resource label; inferred when omitted.
        action: Explicit action label; inferred when omitted.
        principal_provider: Returns the current principal, or None.
        context_provider: Returns the current request context, or None.

    Returns:
        A decorator preserving the wrapped function's signature.
    """

    def decorator(func: F) -> F:
        inferred_type, inferred_action = _infer_labels(func)
        label_type = resource_type or inferred_type
        label_action = action or inferred_action

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            timestamp = datetime.now(timezone.utc)
            principal = _resolve(principal_provider, "principal")
            context = _resolve(context_provider, "context") or RequestContext()

            allowed = True
            status = 200
            deny_reasons: Optional[str] = None
            try:
                result = func(*args, **kwargs)
                status = _result_status(result)
                allowed = status < 400
                deny_reasons = f"HTTP_{status}"
                return result
            except BaseException as exc:
                allowed = False
                status = status_for_exception(exc)
                deny_reasons = str(exc) or type(exc).__name__
                raise
            finally:
                record_best_effort(audit_log, AuditRecord(
                    actor_id=principal.principal_id if principal else ANONYMOUS_ACTOR,
                    resource_type=label_type,
                    resource_id=context.path or NO_RESOURCE_ID,
                    action=label_action,
                    allowed=allowed,
                    policy_id=derive_policy_id(label_type, label_action, allowed, status),
                    deny_reasons=deny_reasons,
                    timestamp=timestamp,
                    ip_address=context.remote_address,
                    user_agent=context.user_agent,
                ))

        return wrapper  # type: ignore[return-value]

    return decorator


def record_best_effort(audit_log: AuditLog, record: AuditRecord) -> Optional[AuditRecord]:
    """Append ``record``; on failure log and return None instead of raising."""
    try:
        return audit_log.append(record)
    except Exception as exc:
        logger.warning(
            "audit_record_write_failed resource_type=%s action=%s",
            record.resource_type,
            record.action,
            exc_info=exc,
        )
        return None
