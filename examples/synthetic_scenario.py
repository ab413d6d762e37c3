"""
Synthetic Scenario: Hospital Access Control Walkthrough
=======================================================

This script demonstrates the Clinigate access-control workflow using
entirely synthetic staff and patient identifiers.

Steps demonstrated:
  1. Load the role table from YAML
  2. Register synthetic staff members
  3. Authorize a series of clinical, billing and export requests
  4. Queue recommender suggestions and review them
  5. Apply a job transfer
  6. Query the audit log and verify its hash chain

The permission recommender is not contacted; suggestions are supplied
inline as the recommender would return them.

Usage:
    python examples/synthetic_scenario.py
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from clinigate.audit import AuditLog, RequestContext
from clinigate.config import load_config_from_yaml
from clinigate.models import (
    AuthorizationRequest,
    ChangeType,
    Environment,
    PermissionSuggestion,
    Principal,
    PrincipalRecord,
    RequestType,
    Sensitivity,
)
from clinigate.permissions import PermissionCatalog, PermissionModel
from clinigate.service import AccessControlService


WARD_ROUND = datetime(2026, 3, 2, 10, 30)
NIGHT_SHIFT = datetime(2026, 3, 2, 23, 15)


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def _show(label: str, decision) -> None:
    verdict = "ALLOW" if decision.allowed else "DENY"
    print(f"{label:<44} {verdict:<5} policy={decision.policy_id} risk={decision.risk_score}")
    for obligation in decision.obligations:
        print(f"    obligation: {json.dumps(obligation.as_dict())}")


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s %(message)s")
    _banner("Clinigate Synthetic Scenario: Hospital Access Control")
    print("All staff and patient identifiers in this demo are synthetic.\n")

    # ------------------------------------------------------------------
    # Step 1: Load role table
    # ------------------------------------------------------------------
    _banner("Step 1: Load Role Table")

    config = load_config_from_yaml(Path(__file__).parent / "role_table.yaml")
    catalog = PermissionCatalog.from_role_table(config.role_table)
    print(f"Roles: {', '.join(sorted(config.role_table))}")
    print(f"Catalog permissions: {len(catalog)}")

    # ------------------------------------------------------------------
    # Step 2: Register staff
    # ------------------------------------------------------------------
    _banner("Step 2: Register Staff")

    model = PermissionModel(config, catalog)
    staff = [
        PrincipalRecord(principal_id="DOC001", role="Doctor", branch="CN_HN",
                        department="Cardiology", has_license=True, seniority="Senior",
                        assigned_patients={"P001", "P002"}),
        PrincipalRecord(principal_id="NUR001", role="Nurse", branch="CN_HN",
                        department="Cardiology", assigned_patients={"P001"}),
        PrincipalRecord(principal_id="CAS001", role="Cashier", branch="CN_HN",
                        department="Finance"),
        PrincipalRecord(principal_id="SEC001", role="SecurityAdmin", branch="CN_HN",
                        department="Security"),
    ]
    for record in staff:
        model.register(record)
        print(f"Registered {record.principal_id} ({record.role}, {record.branch}/{record.department})")

    audit_log = AuditLog()
    session: dict[str, Optional[Principal]] = {"principal": None}
    service = AccessControlService(
        model,
        audit_log,
        principal_provider=lambda: session["principal"],
        context_provider=lambda: RequestContext(remote_address="10.0.0.15", user_agent="demo"),
    )

    # ------------------------------------------------------------------
    # Step 3: Authorize requests
    # ------------------------------------------------------------------
    _banner("Step 3: Authorization Decisions")

    scenarios = [
        ("Nurse records vitals for assigned patient", "NUR001", WARD_ROUND,
         AuthorizationRequest(resource_type="VitalSigns", action="create", patient_id="P001",
                              resource_branch="CN_HN", resource_department="Cardiology")),
        ("Nurse reads vitals of unassigned patient", "NUR001", WARD_ROUND,
         AuthorizationRequest(resource_type="VitalSigns", action="read", patient_id="P002")),
        ("Doctor reads patient profile at night", "DOC001", NIGHT_SHIFT,
         AuthorizationRequest(resource_type="PatientProfile", action="read",
                              resource_branch="CN_HN")),
        ("Doctor approves own prescription", "DOC001", WARD_ROUND,
         AuthorizationRequest(resource_type="Prescription", action="approve", patient_id="P001",
                              created_by="DOC001")),
        ("Cashier opens a medical record", "CAS001", WARD_ROUND,
         AuthorizationRequest(resource_type="MedicalRecord", action="read")),
        ("Cashier reads invoices at another branch", "CAS001", WARD_ROUND,
         AuthorizationRequest(resource_type="Invoice", action="read", resource_branch="CN_HCM")),
        ("Doctor exports a record in emergency mode", "DOC001", NIGHT_SHIFT,
         AuthorizationRequest(resource_type="MedicalRecord", action="export",
                              resource_sensitivity=Sensitivity.HIGH,
                              environment=Environment(emergency_mode=True))),
        ("Security admin bulk-reads the audit log", "SEC001", WARD_ROUND,
         AuthorizationRequest(resource_type="AuditLog", action="read",
                              environment=Environment(is_bulk=True))),
    ]
    for label, principal_id, now, request in scenarios:
        session["principal"] = model.snapshot(principal_id)
        _show(label, service.authorize(request, now=now))

    # ------------------------------------------------------------------
    # Step 4: Pending permission suggestions
    # ------------------------------------------------------------------
    _banner("Step 4: Pending Permission Suggestions")

    workflow = service.workflow
    created = workflow.ingest(
        "NUR001",
        [
            PermissionSuggestion(permission="LabOrder_read", confidence=0.82),
            PermissionSuggestion(permission="ClinicalNote_create", confidence=0.64),
            PermissionSuggestion(permission="VitalSigns_read", confidence=0.99),
        ],
        RequestType.NEW_PRINCIPAL,
    )
    print(f"Queued {created} suggestion(s) for NUR001 (role-held permissions skipped)")
    for suggestion in workflow.list_pending_for_principal("NUR001"):
        print(f"  #{suggestion.suggestion_id} {suggestion.change_type.value} "
              f"{suggestion.permission_key} confidence={suggestion.confidence:.2f}")

    pending = workflow.list_pending_for_principal("NUR001")
    approved = workflow.approve(pending[-1].suggestion_id, "SEC001", notes="Needed on ward rounds")
    rejected = workflow.reject(pending[0].suggestion_id, "SEC001", notes="Doctors author notes")
    print(f"Approved #{approved.suggestion_id}: {approved.permission_key}")
    print(f"Rejected #{rejected.suggestion_id}: {rejected.permission_key}")
    print(f"NUR001 ad-hoc permissions: {sorted(model.additional_permissions('NUR001'))}")

    # ------------------------------------------------------------------
    # Step 5: Job transfer
    # ------------------------------------------------------------------
    _banner("Step 5: Job Transfer")

    summary = service.initiate_job_transfer("NUR001", department="ICU")
    print(json.dumps(summary, indent=2))
    removed = service.ingest_rightsizing(
        "NUR001",
        [PermissionSuggestion(permission="LabOrder:read:any", confidence=0.7,
                              change_type=ChangeType.REMOVE)],
    )
    print(f"Queued {removed} rightsizing removal(s)")
    print(f"Pending changes: {json.dumps(workflow.pending_changes('NUR001'))}")

    # ------------------------------------------------------------------
    # Step 6: Audit log
    # ------------------------------------------------------------------
    _banner("Step 6: Audit Log Review")

    print(f"Total records: {len(audit_log)}")
    denied = audit_log.denied()
    print(f"Denied decisions: {denied.total}")
    for record in denied.items:
        print(f"  {record.actor_id:<7} {record.resource_type}:{record.action} -> {record.deny_reasons}")
    high = audit_log.high_risk()
    print(f"High-risk decisions (score > 5): {high.total}")

    valid, broken_at = audit_log.verify_chain()
    print(f"\nChain verification: valid={valid}, broken_at={broken_at}")

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------
    _banner("Scenario Complete")
    print("This demo exercised:")
    print("  - Role table loading and permission catalog seeding")
    print("  - RBAC, explicit deny rules and attribute conditions")
    print("  - Risk scoring and obligations")
    print("  - Pending permission review with ad-hoc grants")
    print("  - Job transfer and rightsizing suggestions")
    print("  - Hash-chained audit log queries")


if __name__ == "__main__":
    main()
