"""
Core data models for Clinigate.

Principals, permissions, authorization requests and decisions, and the
pending permission suggestions that reviewers approve or reject.

``Principal`` and ``Permission`` are frozen: a principal is a snapshot
built once at authentication time, and a permission is never edited after
creation -- only created.  The mutable per-principal row that the
pending-permission workflow changes is ``PrincipalRecord``.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Sensitivity(str, enum.Enum):
    """Sensitivity label attached to the resource being accessed."""

    NORMAL = "Normal"
    HIGH = "High"


class ObligationType(str, enum.Enum):
    """Follow-up requirements a caller should honour after an allow."""

    STEP_UP_MFA = "step_up_mfa"
    MASK_FIELDS = "mask_fields"
    LOG_HIGH_RISK = "log_high_risk"
    REQUIRE_APPROVAL_REF = "require_approval_ref"
    RATE_LIMIT = "rate_limit"


class RequestType(str, enum.Enum):
    """Why the recommender produced a suggestion.

    * ``NEW_PRINCIPAL`` -- onboarding a newly registered staff member.
    * ``JOB_TRANSFER``  -- role, department or branch change.
    * ``RIGHTSIZING``   -- revoking permissions that went unused.
    """

    NEW_PRINCIPAL = "NewPrincipal"
    JOB_TRANSFER = "JobTransfer"
    RIGHTSIZING = "Rightsizing"


class ChangeType(str, enum.Enum):
    """Direction of a suggested change to a principal's ad-hoc permissions."""

    ADD = "Add"
    REMOVE = "Remove"


class SuggestionStatus(str, enum.Enum):
    """Review status of a pending suggestion.

    ``APPROVED`` and ``REJECTED`` are terminal: no transition leaves them.
    """

    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


# ---------------------------------------------------------------------------
# Permissions and principals
# ---------------------------------------------------------------------------

ANY_SCOPE = "any"


class Permission(BaseModel):
    """A ``resourceType:action:scope`` permission.

    Permissions are immutable once created.  The composite ``key`` is the
    identity used everywhere a permission is stored or compared.
    """

    model_config = ConfigDict(frozen=True)

    resource_type: str = Field(..., min_length=1, description="Resource type, e.g. 'MedicalRecord'.")
    action: str = Field(..., min_length=1, description="Action, e.g. 'read'.")
    scope: str = Field(default=ANY_SCOPE, min_length=1, description="Scope qualifier; 'any' when unrestricted.")
    description: str = Field(default="", description="Human-readable description.")

    @field_validator("resource_type", "action", "scope")
    @classmethod
    def no_separator(cls, v: str) -> str:
        if ":" in v:
            raise ValueError(f"':' is reserved as the key separator, got '{v}'")
        return v

    @property
    def key(self) -> str:
        return f"{self.resource_type}:{self.action}:{self.scope}"


class Principal(BaseModel):
    """The authenticated actor for a single request.

    Built once from a ``PrincipalRecord`` and read-only for the lifetime of
    the request.  ``additional_permissions`` holds ad-hoc permission keys;
    the decision engine does not consult them when gating on the role
    table.
    """

    model_config = ConfigDict(frozen=True)

    principal_id: str = Field(..., min_length=1, description="Stable staff identifier, e.g. 'DOC001'.")
    role: str = Field(..., min_length=1, description="Role name, e.g. 'Doctor'.")
    branch: str = Field(..., description="Home branch, e.g. 'CN_HN'.")
    department: str = Field(..., description="Home department.")
    has_license: bool = Field(default=False, description="Whether the principal holds a practising licence.")
    seniority: str = Field(default="Junior", description="Seniority tier.")
    assigned_patients: frozenset[str] = Field(
        default_factory=frozenset,
        description="Patients this principal is assigned to care for.",
    )
    additional_permissions: frozenset[str] = Field(
        default_factory=frozenset,
        description="Ad-hoc permission keys granted outside the role table.",
    )


class PrincipalRecord(BaseModel):
    """Stored profile of a staff member, including ad-hoc permissions.

    This is the row the pending-permission workflow mutates.  Use
    ``to_principal()`` to take an immutable snapshot for a request.
    """

    principal_id: str = Field(..., min_length=1)
    username: str = Field(default="")
    role: str = Field(..., min_length=1)
    branch: str = Field(...)
    department: str = Field(...)
    position: str = Field(default="Staff")
    has_license: bool = Field(default=False)
    seniority: str = Field(default="Junior")
    employment_type: str = Field(default="FullTime")
    assigned_patients: set[str] = Field(default_factory=set)
    additional_permissions: set[str] = Field(default_factory=set)

    def to_principal(self) -> Principal:
        return Principal(
            principal_id=self.principal_id,
            role=self.role,
            branch=self.branch,
            department=self.department,
            has_license=self.has_license,
            seniority=self.seniority,
            assigned_patients=frozenset(self.assigned_patients),
            additional_permissions=frozenset(self.additional_permissions),
        )

    def profile(self) -> dict[str, str]:
        """Profile in the shape the permission recommender expects."""
        return {
            "role": self.role,
            "department": self.department,
            "branch": self.branch,
            "license": "Yes" if self.has_license else "No",
            "seniority": self.seniority or "Junior",
            "position": self.position or self.role,
            "employment_type": self.employment_type or "FullTime",
        }


# ---------------------------------------------------------------------------
# Authorization request / decision
# ---------------------------------------------------------------------------

class Environment(BaseModel):
    """Contextual flags supplied with a request.

    Unknown keys are rejected so that a misspelled flag fails loudly
    instead of silently reading as ``False``.  Absent flags default to
    ``False``.
    """

    model_config = ConfigDict(extra="forbid")

    emergency_mode: bool = Field(default=False, description="Break-glass emergency access.")
    export_approved: bool = Field(default=False, description="An export has been approved in advance.")
    is_bulk: bool = Field(default=False, description="The caller is reading many records at once.")
    approval_ticket_id: Optional[str] = Field(
        default=None,
        description="Reference to the approval ticket backing an export.",
    )


class AuthorizationRequest(BaseModel):
    """A single attempted operation, constructed fresh per call."""

    resource_type: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    resource_id: Optional[str] = Field(default=None)
    resource_branch: Optional[str] = Field(default=None)
    resource_department: Optional[str] = Field(default=None)
    patient_id: Optional[str] = Field(default=None)
    resource_sensitivity: Optional[Sensitivity] = Field(default=None)
    created_by: Optional[str] = Field(
        default=None,
        description="Original author of the resource, for separation-of-duties checks.",
    )
    environment: Environment = Field(default_factory=Environment)


class Obligation(BaseModel):
    """A typed follow-up requirement attached to a decision.

    Only the fields relevant to ``type`` are set; ``as_dict()`` drops the
    rest and uses the wire names ``fields`` / ``field``.
    """

    type: ObligationType
    reason: Optional[str] = None
    masked_fields: Optional[list[str]] = Field(default=None, serialization_alias="fields")
    required_field: Optional[str] = Field(default=None, serialization_alias="field")
    limit_per_minute: Optional[int] = None

    def as_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True, by_alias=True)


class RiskAssessment(BaseModel):
    """Output of the risk & obligation calculator."""

    risk_score: int = Field(default=0, ge=0)
    obligations: list[Obligation] = Field(default_factory=list)


class Decision(BaseModel):
    """The engine's answer for one request.

    ``deny_reasons`` is empty when ``allowed``, and also on a role-table or
    attribute-only denial (``DENY_UNAUTHORIZED``).  Obligations and reasons
    are advisory; the engine enforces neither.
    """

    allowed: bool
    policy_id: str
    deny_reasons: list[str] = Field(default_factory=list)
    obligations: list[Obligation] = Field(default_factory=list)
    risk_score: int = Field(default=0, ge=0)
    rbac_allows: bool = Field(default=False, description="Result of the role-table gate.")
    abac_ok: bool = Field(default=False, description="Result of the attribute-based gate.")


# ---------------------------------------------------------------------------
# Pending permission suggestions
# ---------------------------------------------------------------------------

class PermissionSuggestion(BaseModel):
    """One scored hint from the recommender, before resolution.

    ``permission`` is a label such as ``'MedicalRecord_read'`` or a full
    key such as ``'MedicalRecord:read:any'``.
    """

    permission: str = Field(..., min_length=1)
    confidence: float = Field(default=0.6, ge=0, le=1)
    change_type: ChangeType = Field(default=ChangeType.ADD)


class PendingPermissionSuggestion(BaseModel):
    """A recommender-sourced permission change awaiting human review."""

    suggestion_id: int = Field(..., ge=1)
    principal_id: str = Field(..., min_length=1)
    permission: Permission
    confidence: float = Field(..., ge=0, le=1)
    request_type: RequestType
    change_type: ChangeType
    status: SuggestionStatus = Field(default=SuggestionStatus.PENDING)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None

    @property
    def permission_key(self) -> str:
        return self.permission.key

    @property
    def is_terminal(self) -> bool:
        return self.status != SuggestionStatus.PENDING
