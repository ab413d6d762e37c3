"""
Authorization Decision Engine.

Produces a binary allow/deny ``Decision`` for one principal and one
request.  The engine is a pure in-memory computation over the role table,
the principal snapshot and the request fields.  It never blocks on I/O and
never raises for a well-formed request: denial is a normal return value.

**Evaluation order:**

1. *Role lookup* -- ``rbac_allows`` is True only if the role table lists
   the action for the resource type.  Ad-hoc permissions are not
   consulted.
2. *Explicit deny rules* -- every rule is evaluated, and each one that
   triggers appends a reason code.  Rules are never short-circuited, so a
   response can carry several reasons at once.
3. *Attribute-based conditions* -- ``abac_ok`` is computed per resource
   family (clinical, branch-scoped, staff, report, system).  Resource
   types outside every family pass.
4. *Final decision* -- ``allowed = rbac_allows and abac_ok and not
   deny_reasons``.

**Deny reason codes:**

* ``RECEPTIONIST_NO_CLINICAL_ACCESS``, ``CASHIER_NO_CLINICAL_ACCESS``,
  ``HR_NO_PATIENT_OR_FINANCE_ACCESS``, ``ITADMIN_NO_PATIENT_DATA``
* ``NO_DELETE_PATIENT_DATA``
* ``EXPORT_REQUIRES_APPROVAL_OR_EMERGENCY``,
  ``ONLY_SECURITYADMIN_CAN_EXPORT_IN_EMERGENCY``
* ``BRANCH_MISMATCH``
* ``SOD_CREATOR_CANNOT_APPROVE``

Risk score and obligations come from ``clinigate.risk``.  The score is
attached to every decision; obligations only to allowed ones.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Union

from clinigate.config import DEFAULT_CONFIG, EngineConfig
from clinigate.models import AuthorizationRequest, Decision, Principal
from clinigate.rbac import check_permission
from clinigate.risk import calculate_risk_score, derive_obligations


UNAUTHORIZED_POLICY_ID = "DENY_UNAUTHORIZED"


class DecisionEngine:
    """Evaluates authorization requests against a frozen ``EngineConfig``.

    The engine holds no mutable state; one instance may serve any number
    of concurrent callers.
    """

    def __init__(self, config: EngineConfig = DEFAULT_CONFIG) -> None:
        self._config = config

    @property
    def config(self) -> EngineConfig:
        return self._config

    def authorize(
        self,
        principal: Principal,
        request: AuthorizationRequest,
        now: Optional[datetime] = None,
    ) -> Decision:
        """Decide whether ``principal`` may perform ``request``.

        Args:
            principal: Snapshot of the acting principal.
            request: The attempted operation.
            now: Evaluation time used for the off-hours factors; defaults
                to the local wall clock.

        Returns:
            A ``Decision``.  Never raises for a validated request.
        """
        now = now or datetime.now()

        rbac_allows = check_permission(
            self._config.role_table, principal.role, request.resource_type, request.action
        )
        deny_reasons = self.deny_reasons(principal, request)
        abac_ok = self.abac_ok(principal, request)

        allowed = rbac_allows and abac_ok and not deny_reasons

        if allowed:
            policy_id = f"ALLOW_{principal.role}_{request.resource_type}_{request.action}"
            obligations = derive_obligations(request, principal.role, self._config, now)
        else:
            policy_id = "DENY_" + "_".join(deny_reasons) if deny_reasons else UNAUTHORIZED_POLICY_ID
            obligations = []

        return Decision(
            allowed=allowed,
            policy_id=policy_id,
            deny_reasons=deny_reasons,
            obligations=obligations,
            risk_score=calculate_risk_score(request, self._config, now),
            rbac_allows=rbac_allows,
            abac_ok=abac_ok,
        )

    def has_permission(
        self,
        principal: Union[Principal, str],
        resource_type: str,
        action: str,
    ) -> bool:
        """Role-table-only check; ignores deny rules and attributes."""
        role = principal if isinstance(principal, str) else principal.role
        return check_permission(self._config.role_table, role, resource_type, action)

    # -----------------------------------------------------------------------
    # Explicit deny rules
    # -----------------------------------------------------------------------

    def deny_reasons(self, principal: Principal, request: AuthorizationRequest) -> list[str]:
        """Evaluate every explicit deny rule and collect the triggered codes."""
        rules = self._config.deny_rules
        resources = self._config.resources
        role = principal.role
        resource_type = request.resource_type
        action = request.action
        reasons: list[str] = []

        for barrier in rules.role_barriers:
            if role == barrier.role and resource_type in barrier.resource_types:
                reasons.append(barrier.reason)

        if action == rules.delete_action and resource_type in resources.patient_identifying:
            reasons.append("NO_DELETE_PATIENT_DATA")

        if action == rules.export_action and resource_type in resources.export_controlled:
            env = request.environment
            if not env.emergency_mode and not env.export_approved:
                reasons.append("EXPORT_REQUIRES_APPROVAL_OR_EMERGENCY")
            elif env.emergency_mode and role != rules.emergency_export_role:
                reasons.append(f"ONLY_{rules.emergency_export_role.upper()}_CAN_EXPORT_IN_EMERGENCY")

        if (
            role in rules.branch_bound_roles
            and request.resource_branch is not None
            and request.resource_branch != principal.branch
        ):
            reasons.append("BRANCH_MISMATCH")

        if (
            action == rules.approve_action
            and resource_type in resources.creator_attributable
            and request.created_by == principal.principal_id
        ):
            reasons.append("SOD_CREATOR_CANNOT_APPROVE")

        return reasons

    # -----------------------------------------------------------------------
    # Attribute-based conditions
    # -----------------------------------------------------------------------

    def abac_ok(self, principal: Principal, request: AuthorizationRequest) -> bool:
        """Evaluate the attribute gate for the request's resource family."""
        resources = self._config.resources
        resource_type = request.resource_type

        if resource_type in resources.clinical:
            return self._clinical_ok(principal, request)
        if resource_type in resources.branch_scoped:
            return _same_branch(principal, request)
        if resource_type in resources.staff:
            return self._staff_ok(principal, request)
        if resource_type in resources.report:
            return self._report_ok(principal, request)
        if resource_type in resources.system:
            return principal.role in self._config.abac.system_roles
        return True

    def _clinical_ok(self, principal: Principal, request: AuthorizationRequest) -> bool:
        abac = self._config.abac
        if principal.role not in abac.assigned_patient_roles:
            return False
        if not _patient_assigned(principal, request):
            return False
        if principal.role in abac.same_department_clinical_roles:
            return _same_department(principal, request)
        return True

    def _staff_ok(self, principal: Principal, request: AuthorizationRequest) -> bool:
        abac = self._config.abac
        if principal.role in abac.staff_branch_roles:
            return _same_branch(principal, request)
        if principal.role in abac.staff_branch_department_roles:
            return _same_branch(principal, request) and _same_department(principal, request)
        return False

    def _report_ok(self, principal: Principal, request: AuthorizationRequest) -> bool:
        abac = self._config.abac
        if _same_branch(principal, request):
            return True
        if request.resource_type not in abac.cross_branch_report_types:
            return False
        if principal.role == abac.report_department_role:
            return _same_department(principal, request)
        return principal.role == abac.report_cross_branch_role


# ---------------------------------------------------------------------------
# Attribute helpers -- an absent resource attribute always matches
# ---------------------------------------------------------------------------

def _patient_assigned(principal: Principal, request: AuthorizationRequest) -> bool:
    if request.patient_id is None:
        return True
    return request.patient_id in principal.assigned_patients


def _same_branch(principal: Principal, request: AuthorizationRequest) -> bool:
    if request.resource_branch is None:
        return True
    return request.resource_branch == principal.branch


def _same_department(principal: Principal, request: AuthorizationRequest) -> bool:
    if request.resource_department is None:
        return True
    return request.resource_department == principal.department
