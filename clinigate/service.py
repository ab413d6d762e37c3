"""
Access Control Service -- the entry point resource controllers call.

Binds the decision engine, the Permission Model, the audit log and the
pending-permission workflow to the *current* principal and request
context supplied by the host application.

**Operations:**

* ``authorize(request)`` -- evaluate the request for the current principal
  and record the decision in the audit log (best-effort).
* ``has_permission(resource_type, action)`` -- role-table-only hint for UI
  capability checks.
* ``onboard_principal(record, recommender)`` -- register a new principal
  and queue the recommender's suggestions for review.
* ``initiate_job_transfer(principal_id, recommender, ...)`` -- apply a
  role, department or branch change and queue the recommender's add and
  remove suggestions.
* ``ingest_rightsizing(principal_id, suggestions)`` -- queue revocations
  of unused permissions.
* ``audited(...)`` -- the audit interceptor pre-bound to this service's
  principal and context providers.

A recommender outage never fails onboarding or a job transfer; the
profile change goes through and no suggestions are queued.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from clinigate.audit import (
    AuditLog,
    AuditRecord,
    NO_RESOURCE_ID,
    RequestContext,
    audited,
    record_best_effort,
)
from clinigate.config import EngineConfig
from clinigate.engine import DecisionEngine
from clinigate.errors import AuthenticationRequiredError, NotFoundError, RecommenderError
from clinigate.models import (
    AuthorizationRequest,
    ChangeType,
    Decision,
    PermissionSuggestion,
    Principal,
    PrincipalRecord,
    RequestType,
)
from clinigate.permissions import PermissionModel
from clinigate.recommender import RecommenderClient, parse_recommendations
from clinigate.workflow import PendingPermissionWorkflow


logger = logging.getLogger(__name__)

PrincipalProvider = Callable[[], Optional[Principal]]
ContextProvider = Callable[[], Optional[RequestContext]]


class AccessControlService:
    """Facade over the engine, model, workflow and audit log.

    Args:
        model: Stored principals and their ad-hoc permissions.
        audit_log: Destination for decision and interceptor records.
        principal_provider: Returns the authenticated principal, or None.
        context_provider: Returns the current request context, or None.
        engine: Decision engine; built from the model's config when omitted.
        workflow: Pending-permission workflow; built over ``model`` when
            omitted.
    """

    def __init__(
        self,
        model: PermissionModel,
        audit_log: AuditLog,
        principal_provider: PrincipalProvider,
        context_provider: Optional[ContextProvider] = None,
        engine: Optional[DecisionEngine] = None,
        workflow: Optional[PendingPermissionWorkflow] = None,
    ) -> None:
        self._model = model
        self._audit_log = audit_log
        self._principal_provider = principal_provider
        self._context_provider = context_provider or (lambda: None)
        self._engine = engine or DecisionEngine(model.config)
        self._workflow = workflow or PendingPermissionWorkflow(model, audit_log=audit_log)

    @property
    def config(self) -> EngineConfig:
        return self._engine.config

    @property
    def engine(self) -> DecisionEngine:
        return self._engine

    @property
    def workflow(self) -> PendingPermissionWorkflow:
        return self._workflow

    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log

    # -----------------------------------------------------------------------
    # Authorization
    # -----------------------------------------------------------------------

    def authorize(self, request: AuthorizationRequest, now: Optional[datetime] = None) -> Decision:
        """Evaluate ``request`` for the current principal and record it.

        Raises:
            AuthenticationRequiredError: If no principal is authenticated.
        """
        principal = self._principal_provider()
        if principal is None:
            raise AuthenticationRequiredError("Authentication required.")

        decision = self._engine.authorize(principal, request, now=now)
        context = self._context_provider() or RequestContext()
        record_best_effort(self._audit_log, AuditRecord(
            actor_id=principal.principal_id,
            resource_type=request.resource_type,
            resource_id=request.resource_id or NO_RESOURCE_ID,
            action=request.action,
            allowed=decision.allowed,
            policy_id=decision.policy_id,
            deny_reasons=", ".join(decision.deny_reasons) or None,
            risk_score=decision.risk_score,
            ip_address=context.remote_address,
            user_agent=context.user_agent,
        ))
        return decision

    def has_permission(self, resource_type: str, action: str) -> bool:
        """Role-table-only check for the current principal; False when anonymous."""
        principal = self._principal_provider()
        if principal is None:
            return False
        return self._engine.has_permission(principal, resource_type, action)

    def audited(
        self,
        resource_type: Optional[str] = None,
        action: Optional[str] = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """The audit interceptor bound to this service's providers."""
        return audited(
            self._audit_log,
            resource_type=resource_type,
            action=action,
            principal_provider=self._principal_provider,
            context_provider=self._context_provider,
        )

    # -----------------------------------------------------------------------
    # Recommender-driven flows
    # -----------------------------------------------------------------------

    def onboard_principal(
        self,
        record: PrincipalRecord,
        recommender: Optional[RecommenderClient] = None,
    ) -> int:
        """Register ``record`` and queue NewPrincipal suggestions.

        Returns:
            The number of Pending suggestions created.

        Raises:
            ValueError: If the principal is already registered.
        """
        stored = self._model.register(record)
        if recommender is None:
            return 0

        try:
            payload = recommender.recommend_new_principal(stored.profile())
        except RecommenderError as exc:
            logger.warning(
                "recommender_unavailable_on_onboarding principal_id=%s error=%s",
                stored.principal_id,
                exc,
            )
            return 0

        created = self._workflow.ingest(
            stored.principal_id,
            parse_recommendations(payload, "recommendations", ChangeType.ADD),
            RequestType.NEW_PRINCIPAL,
        )
        logger.info(
            "principal_onboarded principal_id=%s pending_created=%s",
            stored.principal_id,
            created,
        )
        return created

    def initiate_job_transfer(
        self,
        principal_id: str,
        recommender: Optional[RecommenderClient] = None,
        *,
        role: Optional[str] = None,
        department: Optional[str] = None,
        branch: Optional[str] = None,
        position: Optional[str] = None,
        has_license: Optional[bool] = None,
        seniority: Optional[str] = None,
    ) -> dict[str, Any]:
        """Apply a job transfer and queue the recommender's permission changes.

        The old profile is captured before the change.  ``None`` arguments
        leave the corresponding attribute unchanged.

        Args:
            principal_id: The transferring principal.
            recommender: Source of add/remove suggestions; optional.
            role: New role name; must exist in the role table.
            department: New department.
            branch: New home branch.
            position: New position title.
            has_license: New licence flag.
            seniority: New seniority tier.

        Returns:
            A summary with ``changes`` (from/to per attribute) and
            ``pending`` counts of queued additions and removals.

        Raises:
            NotFoundError: If the principal or the new role does not exist.
        """
        if role is not None and role not in self.config.role_table:
            raise NotFoundError(f"Role not found: '{role}'")

        before = self._model.get(principal_id)
        old_profile = before.profile()
        changes = {
            "role": role,
            "department": department,
            "branch": branch,
            "position": position,
            "has_license": has_license,
            "seniority": seniority,
        }
        new_profile = {
            **old_profile,
            **{k: v for k, v in changes.items() if v is not None and k != "has_license"},
        }
        if has_license is not None:
            new_profile["license"] = "Yes" if has_license else "No"

        payload: Optional[dict[str, Any]] = None
        if recommender is not None:
            try:
                payload = recommender.recommend_job_transfer(old_profile, new_profile)
            except RecommenderError as exc:
                logger.warning(
                    "recommender_unavailable_on_job_transfer principal_id=%s error=%s",
                    principal_id,
                    exc,
                )

        after = self._model.update_profile(principal_id, **changes)

        to_add = to_remove = 0
        if payload is not None:
            to_add = self._workflow.ingest(
                principal_id,
                parse_recommendations(payload, "added_permissions", ChangeType.ADD),
                RequestType.JOB_TRANSFER,
            )
            to_remove = self._workflow.ingest(
                principal_id,
                parse_recommendations(payload, "removed_permissions", ChangeType.REMOVE),
                RequestType.JOB_TRANSFER,
            )

        logger.info(
            "job_transfer_completed principal_id=%s from_department=%s to_department=%s to_add=%s to_remove=%s",
            principal_id,
            before.department,
            after.department,
            to_add,
            to_remove,
        )
        return {
            "principal_id": principal_id,
            "changes": {
                "role": {"from": before.role, "to": after.role},
                "department": {"from": before.department, "to": after.department},
                "branch": {"from": before.branch, "to": after.branch},
            },
            "pending": {"to_add": to_add, "to_remove": to_remove},
            "recommender_available": payload is not None,
        }

    def ingest_rightsizing(
        self,
        principal_id: str,
        suggestions: Iterable[PermissionSuggestion],
    ) -> int:
        """Queue revocations of unused permissions as Rightsizing suggestions."""
        removals = [s.model_copy(update={"change_type": ChangeType.REMOVE}) for s in suggestions]
        return self._workflow.ingest(principal_id, removals, RequestType.RIGHTSIZING)
