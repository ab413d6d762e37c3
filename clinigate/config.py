"""
Engine Configuration -- Role Table, Resource Families, and Risk Settings.

The hospital's access rules are a small, hand-maintained table, not a
policy language.  This module holds that table and the handful of named
resource-type sets and role sets that the deny rules, the attribute-based
checks, and the risk calculator refer to.

**Sharing:**

The role table changes only through controlled data migration.  An
``EngineConfig`` is built once at startup, frozen, and passed by
reference to the engine, the permission catalog and the workflow.
Lookups in ``clinigate.rbac`` hand out copies, never the table itself.

The built-in ``DEFAULT_CONFIG`` mirrors the hospital's production table.
``load_config_from_yaml()`` reads an alternative table from disk.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


RoleTable = dict[str, dict[str, frozenset[str]]]


# ---------------------------------------------------------------------------
# Resource families
# ---------------------------------------------------------------------------

class ResourceFamilies(BaseModel):
    """Named sets of resource types.

    Attribute-based checks are opt-in per family: a resource type that
    belongs to none of these families passes the attribute gate.
    """

    model_config = ConfigDict(frozen=True)

    clinical: frozenset[str] = Field(
        default=frozenset({
            "MedicalRecord", "ClinicalNote", "VitalSigns", "Prescription",
            "LabResult", "ImagingResult", "DischargeSummary",
        }),
        description="Clinical data; gated by patient assignment and department.",
    )
    branch_scoped: frozenset[str] = Field(
        default=frozenset({
            "PatientProfile", "Appointment", "AdmissionRecord", "TransferRecord",
            "BillingRecord", "Invoice", "InsuranceClaim",
        }),
        description="Patient, appointment, admission/transfer and billing records; same-branch only.",
    )
    staff: frozenset[str] = Field(
        default=frozenset({"StaffProfile", "WorkSchedule", "TrainingRecord"}),
        description="HR records.",
    )
    report: frozenset[str] = Field(
        default=frozenset({"MedicalReport", "OperationReport", "FinancialReport"}),
        description="Aggregated reports.",
    )
    system: frozenset[str] = Field(
        default=frozenset({"SystemConfig", "AccessPolicy", "AuditLog", "IncidentCase"}),
        description="System and security resources; restricted to administrative roles.",
    )
    patient_identifying: frozenset[str] = Field(
        default=frozenset({
            "MedicalRecord", "ClinicalNote", "VitalSigns", "Prescription",
            "LabResult", "ImagingResult", "PatientProfile",
        }),
        description="Resources that identify a patient; never deletable.",
    )
    creator_attributable: frozenset[str] = Field(
        default=frozenset({"Invoice", "InsuranceClaim", "Prescription"}),
        description="Resources whose creator may not approve them.",
    )
    export_controlled: frozenset[str] = Field(
        default=frozenset({"MedicalRecord"}),
        description="High-sensitivity resources whose export needs approval or emergency mode.",
    )
    high_risk: frozenset[str] = Field(
        default=frozenset({"MedicalRecord", "AuditLog", "AccessPolicy", "SystemConfig"}),
        description="Resources that add to the risk score on every access.",
    )
    masked_profile: frozenset[str] = Field(
        default=frozenset({"PatientProfile"}),
        description="Patient-profile-like resources whose identifying fields are masked.",
    )


# ---------------------------------------------------------------------------
# Deny rules
# ---------------------------------------------------------------------------

class RoleBarrier(BaseModel):
    """A role that is wholly barred from a set of resource types."""

    model_config = ConfigDict(frozen=True)

    role: str = Field(..., min_length=1)
    resource_types: frozenset[str] = Field(...)
    reason: str = Field(..., min_length=1, description="Deny reason code appended when triggered.")


class DenyRuleSettings(BaseModel):
    """Inputs to the explicit deny rules.  The rules themselves are code."""

    model_config = ConfigDict(frozen=True)

    role_barriers: tuple[RoleBarrier, ...] = Field(
        default=(
            RoleBarrier(
                role="Receptionist",
                resource_types=frozenset({
                    "MedicalRecord", "ClinicalNote", "VitalSigns", "Prescription",
                    "LabResult", "ImagingResult", "DischargeSummary",
                }),
                reason="RECEPTIONIST_NO_CLINICAL_ACCESS",
            ),
            RoleBarrier(
                role="Cashier",
                resource_types=frozenset({
                    "MedicalRecord", "ClinicalNote", "VitalSigns", "Prescription",
                    "LabResult", "ImagingResult",
                }),
                reason="CASHIER_NO_CLINICAL_ACCESS",
            ),
            RoleBarrier(
                role="HR",
                resource_types=frozenset({
                    "MedicalRecord", "ClinicalNote", "VitalSigns", "Prescription",
                    "LabResult", "ImagingResult", "BillingRecord", "Invoice", "InsuranceClaim",
                }),
                reason="HR_NO_PATIENT_OR_FINANCE_ACCESS",
            ),
            RoleBarrier(
                role="ITAdmin",
                resource_types=frozenset({
                    "MedicalRecord", "ClinicalNote", "VitalSigns", "Prescription",
                    "LabResult", "ImagingResult", "PatientProfile",
                }),
                reason="ITADMIN_NO_PATIENT_DATA",
            ),
        ),
    )
    branch_bound_roles: frozenset[str] = Field(
        default=frozenset({"Doctor", "Nurse", "Receptionist", "Cashier", "HR"}),
        description="Roles that may only act on resources of their home branch.",
    )
    emergency_export_role: str = Field(
        default="SecurityAdmin",
        description="The only role allowed to export under emergency mode.",
    )
    export_action: str = Field(default="export")
    delete_action: str = Field(default="delete")
    approve_action: str = Field(default="approve")


# ---------------------------------------------------------------------------
# Attribute-based conditions
# ---------------------------------------------------------------------------

class AbacSettings(BaseModel):
    """Which roles carry which attribute semantics."""

    model_config = ConfigDict(frozen=True)

    assigned_patient_roles: frozenset[str] = Field(
        default=frozenset({"Doctor", "Nurse"}),
        description="Roles that may only touch clinical data of their assigned patients.",
    )
    same_department_clinical_roles: frozenset[str] = Field(
        default=frozenset({"Nurse"}),
        description="Roles that must also match the resource's department for clinical data.",
    )
    staff_branch_roles: frozenset[str] = Field(
        default=frozenset({"HR"}),
        description="Roles that manage staff records within their own branch.",
    )
    staff_branch_department_roles: frozenset[str] = Field(
        default=frozenset({"Manager"}),
        description="Roles that need both branch and department to match on staff records.",
    )
    report_department_role: str = Field(
        default="Manager",
        description="Role that may read cross-branch reports only within its own department.",
    )
    report_cross_branch_role: str = Field(
        default="Doctor",
        description="Role that may read cross-branch medical reports regardless of branch.",
    )
    cross_branch_report_types: frozenset[str] = Field(
        default=frozenset({"MedicalReport"}),
    )
    system_roles: frozenset[str] = Field(
        default=frozenset({"ITAdmin", "SecurityAdmin"}),
        description="The only roles that pass the attribute gate on system resources.",
    )


# ---------------------------------------------------------------------------
# Risk settings
# ---------------------------------------------------------------------------

class RiskSettings(BaseModel):
    """Weights and thresholds for the risk & obligation calculator.

    Weights are non-negative so that adding a risk factor can never lower
    the score.
    """

    model_config = ConfigDict(frozen=True)

    business_hours_start: int = Field(
        default=8, ge=0, le=23,
        description="Hours strictly before this are off-hours.",
    )
    business_hours_end: int = Field(
        default=18, ge=0, le=23,
        description="Hours strictly after this are off-hours.",
    )
    off_hours_weight: int = Field(default=2, ge=0)
    export_weight: int = Field(default=3, ge=0)
    high_sensitivity_weight: int = Field(default=2, ge=0)
    high_risk_resource_weight: int = Field(default=3, ge=0)
    high_risk_action_weight: int = Field(default=2, ge=0)
    high_risk_actions: frozenset[str] = Field(default=frozenset({"export", "delete"}))
    export_action: str = Field(default="export")
    unmasked_roles: frozenset[str] = Field(
        default=frozenset({"Receptionist"}),
        description="Front-desk roles that see patient profiles unmasked.",
    )
    masked_fields: tuple[str, ...] = Field(default=("national_id", "address"))
    approval_ref_field: str = Field(default="environment.approval_ticket_id")
    bulk_rate_limit_per_minute: int = Field(default=60, gt=0)

    @field_validator("business_hours_end")
    @classmethod
    def end_after_start(cls, v: int, info) -> int:
        start = info.data.get("business_hours_start")
        if start is not None and v <= start:
            raise ValueError(
                f"business_hours_end ({v}) must be > business_hours_start ({start})"
            )
        return v


# ---------------------------------------------------------------------------
# Engine configuration
# ---------------------------------------------------------------------------

class EngineConfig(BaseModel):
    """Everything the engine, calculator and workflow read at request time."""

    model_config = ConfigDict(frozen=True)

    role_table: RoleTable = Field(
        ...,
        description="role -> resourceType -> allowed actions.",
    )
    resources: ResourceFamilies = Field(default_factory=ResourceFamilies)
    deny_rules: DenyRuleSettings = Field(default_factory=DenyRuleSettings)
    abac: AbacSettings = Field(default_factory=AbacSettings)
    risk: RiskSettings = Field(default_factory=RiskSettings)

    @field_validator("role_table")
    @classmethod
    def table_not_empty(cls, v: RoleTable) -> RoleTable:
        if not v:
            raise ValueError("role_table must define at least one role")
        for role, resources in v.items():
            if not role:
                raise ValueError("role names must be non-empty")
            for resource_type, actions in resources.items():
                if not actions:
                    raise ValueError(
                        f"role '{role}' lists resource '{resource_type}' with no actions"
                    )
        return v


def _actions(*names: str) -> frozenset[str]:
    return frozenset(names)


DEFAULT_ROLE_TABLE: RoleTable = {
    "Doctor": {
        "PatientProfile": _actions("read"),
        "MedicalRecord": _actions("read", "create", "update"),
        "ClinicalNote": _actions("read", "create"),
        "VitalSigns": _actions("read"),
        "Prescription": _actions("read", "create", "update", "approve"),
        "LabOrder": _actions("create", "read"),
        "LabResult": _actions("read"),
        "ImagingOrder": _actions("create", "read"),
        "ImagingResult": _actions("read"),
        "AdmissionRecord": _actions("read"),
        "TransferRecord": _actions("read"),
        "DischargeSummary": _actions("create", "read"),
        "MedicalReport": _actions("read"),
    },
    "Nurse": {
        "PatientProfile": _actions("read"),
        "MedicalRecord": _actions("read"),
        "ClinicalNote": _actions("read"),
        "VitalSigns": _actions("read", "create", "update"),
        "LabResult": _actions("read"),
        "ImagingResult": _actions("read"),
        "AdmissionRecord": _actions("read"),
        "TransferRecord": _actions("read"),
        "DischargeSummary": _actions("read"),
    },
    "Receptionist": {
        "PatientProfile": _actions("create", "read", "update"),
        "Appointment": _actions("create", "read", "update"),
        "AdmissionRecord": _actions("create", "read"),
        "TransferRecord": _actions("create", "read"),
    },
    "Cashier": {
        "BillingRecord": _actions("create", "read", "update"),
        "Invoice": _actions("create", "read", "update"),
        "InsuranceClaim": _actions("create", "read", "update"),
        "FinancialReport": _actions("read"),
    },
    "HR": {
        "StaffProfile": _actions("create", "read", "update"),
        "WorkSchedule": _actions("create", "read", "update"),
        "TrainingRecord": _actions("create", "read", "update"),
        "OperationReport": _actions("read"),
    },
    "Manager": {
        "MedicalReport": _actions("read"),
        "OperationReport": _actions("read"),
        "FinancialReport": _actions("read"),
        "WorkSchedule": _actions("read"),
        "StaffProfile": _actions("read"),
    },
    "ITAdmin": {
        "SystemConfig": _actions("read", "update"),
        "AccessPolicy": _actions("read"),
        "AuditLog": _actions("read"),
    },
    "SecurityAdmin": {
        "AuditLog": _actions("read"),
        "IncidentCase": _actions("create", "read", "update"),
        "AccessPolicy": _actions("read", "update"),
        "SystemConfig": _actions("read"),
    },
}


DEFAULT_CONFIG = EngineConfig(role_table=DEFAULT_ROLE_TABLE)
"""The hospital's production role table with the standard rule inputs."""


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def load_config_from_yaml(path: str | Path) -> EngineConfig:
    """Load an engine configuration from a YAML file.

    The file must contain a top-level ``role_table`` mapping of role name
    to a mapping of resource type to a list of actions.  The optional
    ``resources``, ``deny_rules``, ``abac`` and ``risk`` sections override
    the built-in defaults field by field.

    Example YAML structure::

        role_table:
          Nurse:
            VitalSigns: [read, create, update]
            PatientProfile: [read]
        risk:
          business_hours_start: 7

    Args:
        path: Path to the YAML file.

    Returns:
        A validated, frozen ``EngineConfig``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If any section fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Engine config file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "role_table" not in raw:
        raise ValueError("YAML file must contain a top-level 'role_table' mapping.")

    table_data = raw["role_table"]
    if not isinstance(table_data, dict):
        raise ValueError("'role_table' must be a mapping of role name to resources.")

    role_table: RoleTable = {}
    for role, resources in table_data.items():
        if not isinstance(resources, dict):
            raise ValueError(f"Role '{role}' must map resource types to action lists.")
        role_table[str(role)] = {
            str(resource_type): frozenset(_as_action_list(role, resource_type, actions))
            for resource_type, actions in resources.items()
        }

    sections: dict[str, Any] = {"role_table": role_table}
    for name in ("resources", "deny_rules", "abac", "risk"):
        if name in raw:
            if not isinstance(raw[name], dict):
                raise ValueError(f"'{name}' must be a mapping.")
            sections[name] = raw[name]

    return EngineConfig(**sections)


def _as_action_list(role: Any, resource_type: Any, actions: Any) -> list[str]:
    if isinstance(actions, str):
        return [actions]
    if not isinstance(actions, list):
        raise ValueError(
            f"Actions for role '{role}' on '{resource_type}' must be a list."
        )
    return [str(a) for a in actions]
