"""
Tests for clinigate.service -- Access Control Service.

Covers: authorize for the current principal with decision recording,
anonymous callers, best-effort decision recording, role-table hints, the
pre-bound audit interceptor, onboarding, job transfer with recommender
suggestions and outages, and rightsizing ingestion.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

import httpx
import pytest

from clinigate.audit import AuditLog, AuditRecord, RequestContext
from clinigate.config import DEFAULT_CONFIG, DEFAULT_ROLE_TABLE
from clinigate.errors import AuthenticationRequiredError, NotFoundError
from clinigate.models import (
    AuthorizationRequest,
    ChangeType,
    Environment,
    PermissionSuggestion,
    Principal,
    PrincipalRecord,
    RequestType,
)
from clinigate.permissions import PermissionCatalog, PermissionModel
from clinigate.recommender import RecommenderClient
from clinigate.service import AccessControlService


WORKING_HOURS = datetime(2026, 3, 2, 10, 0)


class _Session:
    """Mutable stand-in for the host's authentication and request context."""

    def __init__(self) -> None:
        self.principal: Optional[Principal] = None
        self.context: Optional[RequestContext] = None


class _BrokenAuditLog(AuditLog):
    def append(self, record: AuditRecord) -> AuditRecord:
        raise RuntimeError("audit store offline")


def _make_model() -> PermissionModel:
    model = PermissionModel(DEFAULT_CONFIG, PermissionCatalog.from_role_table(DEFAULT_ROLE_TABLE))
    model.register(PrincipalRecord(
        principal_id="NUR001",
        role="Nurse",
        branch="CN_HN",
        department="ICU",
        assigned_patients={"P001"},
    ))
    return model


def _make_service(
    audit_log: AuditLog | None = None,
    model: PermissionModel | None = None,
) -> tuple[AccessControlService, _Session]:
    session = _Session()
    service = AccessControlService(
        model or _make_model(),
        audit_log if audit_log is not None else AuditLog(),
        principal_provider=lambda: session.principal,
        context_provider=lambda: session.context,
    )
    return service, session


def _recommender(payload: dict | None = None, status: int = 200) -> RecommenderClient:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json=payload or {})

    transport = httpx.MockTransport(handler)
    return RecommenderClient(client=httpx.Client(transport=transport, base_url="http://recommender"))


# ---------------------------------------------------------------------------
# 1. Authorization
# ---------------------------------------------------------------------------

class TestAuthorize:
    def test_decision_is_recorded(self):
        service, session = _make_service()
        session.principal = service.workflow._model.snapshot("NUR001")
        session.context = RequestContext(remote_address="10.1.1.1", user_agent="ward-tablet")

        request = AuthorizationRequest(
            resource_type="VitalSigns",
            action="create",
            resource_id="VS-9",
            resource_branch="CN_HN",
            resource_department="ICU",
        )
        decision = service.authorize(request, now=WORKING_HOURS)
        assert decision.allowed is True

        record = service.audit_log.query().items[0]
        assert record.actor_id == "NUR001"
        assert record.resource_id == "VS-9"
        assert record.policy_id == "ALLOW_Nurse_VitalSigns_create"
        assert record.deny_reasons is None
        assert record.risk_score == 0
        assert record.ip_address == "10.1.1.1"
        assert record.user_agent == "ward-tablet"

    def test_deny_reasons_joined(self):
        service, session = _make_service()
        session.principal = Principal(
            principal_id="REC001", role="Receptionist", branch="CN_HN", department="Front"
        )
        request = AuthorizationRequest(
            resource_type="MedicalRecord", action="delete", resource_branch="CN_DN"
        )
        decision = service.authorize(request, now=WORKING_HOURS)
        assert decision.allowed is False
        record = service.audit_log.denied().items[0]
        assert record.deny_reasons == (
            "RECEPTIONIST_NO_CLINICAL_ACCESS, NO_DELETE_PATIENT_DATA, BRANCH_MISMATCH"
        )
        assert record.resource_id == "N/A"
        assert record.risk_score == 3 + 2

    def test_anonymous_caller_rejected(self):
        service, _ = _make_service()
        with pytest.raises(AuthenticationRequiredError):
            service.authorize(AuthorizationRequest(resource_type="Appointment", action="read"))
        assert len(service.audit_log) == 0

    def test_audit_failure_does_not_fail_authorize(self):
        service, session = _make_service(audit_log=_BrokenAuditLog())
        session.principal = service.workflow._model.snapshot("NUR001")
        decision = service.authorize(
            AuthorizationRequest(resource_type="VitalSigns", action="read"), now=WORKING_HOURS
        )
        assert decision.allowed is True

    def test_export_scenario_records_high_risk(self):
        service, session = _make_service()
        session.principal = Principal(principal_id="DOC001", role="Doctor", branch="CN_HN", department="ICU")
        request = AuthorizationRequest(
            resource_type="MedicalRecord",
            action="export",
            environment=Environment(export_approved=False),
        )
        service.authorize(request, now=datetime(2026, 3, 2, 23, 0))
        high = service.audit_log.high_risk().items
        assert len(high) == 1
        assert high[0].risk_score == 2 + 3 + 3 + 2

    def test_has_permission(self):
        service, session = _make_service()
        assert service.has_permission("VitalSigns", "create") is False
        session.principal = service.workflow._model.snapshot("NUR001")
        assert service.has_permission("VitalSigns", "create") is True
        assert service.has_permission("Prescription", "create") is False


# ---------------------------------------------------------------------------
# 2. Bound interceptor
# ---------------------------------------------------------------------------

class TestBoundInterceptor:
    def test_interceptor_uses_session(self):
        service, session = _make_service()
        session.principal = service.workflow._model.snapshot("NUR001")
        session.context = RequestContext(path="/api/vitals", remote_address="10.0.0.2")

        @service.audited(resource_type="VitalSigns", action="list")
        def list_vitals():
            return []

        list_vitals()
        record = service.audit_log.query().items[0]
        assert record.actor_id == "NUR001"
        assert record.resource_id == "/api/vitals"
        assert record.policy_id == "ALLOW_VitalSigns_list"

    def test_interceptor_anonymous_failure(self):
        service, _ = _make_service()

        @service.audited(resource_type="VitalSigns", action="list")
        def list_vitals():
            raise AuthenticationRequiredError("token expired")

        with pytest.raises(AuthenticationRequiredError):
            list_vitals()
        record = service.audit_log.query().items[0]
        assert record.actor_id == "anonymous"
        assert record.policy_id == "DENY_UNAUTHENTICATED"


# ---------------------------------------------------------------------------
# 3. Recommender-driven flows
# ---------------------------------------------------------------------------

class TestOnboarding:
    def test_onboard_queues_suggestions(self):
        service, _ = _make_service()
        recommender = _recommender({"recommendations": [
            {"permission": "ClinicalNote_create", "confidence": 0.9},
            {"permission": "VitalSigns_read", "confidence": 0.95},
            {"permission": "Unknown_thing"},
        ]})
        record = PrincipalRecord(principal_id="NUR002", role="Nurse", branch="CN_HN", department="ICU")
        assert service.onboard_principal(record, recommender) == 1
        pending = service.workflow.list_pending_for_principal("NUR002")
        assert pending[0].permission_key == "ClinicalNote:create:any"
        assert pending[0].request_type == RequestType.NEW_PRINCIPAL

    def test_onboard_survives_recommender_outage(self):
        service, _ = _make_service()
        record = PrincipalRecord(principal_id="NUR002", role="Nurse", branch="CN_HN", department="ICU")
        assert service.onboard_principal(record, _recommender(status=503)) == 0
        assert service.workflow._model.exists("NUR002")

    def test_onboard_without_recommender(self):
        service, _ = _make_service()
        record = PrincipalRecord(principal_id="NUR002", role="Nurse", branch="CN_HN", department="ICU")
        assert service.onboard_principal(record) == 0


class TestJobTransfer:
    def test_transfer_updates_profile_and_queues_changes(self):
        model = _make_model()
        service, _ = _make_service(model=model)
        recommender = _recommender({
            "added_permissions": [{"permission": "Prescription_read", "confidence": 0.7}],
            "removed_permissions": [{"permission": "VitalSigns_update", "confidence": 0.8}],
        })
        summary = service.initiate_job_transfer(
            "NUR001", recommender, department="Oncology", branch="CN_HCM"
        )
        assert summary["changes"]["department"] == {"from": "ICU", "to": "Oncology"}
        assert summary["changes"]["branch"] == {"from": "CN_HN", "to": "CN_HCM"}
        assert summary["changes"]["role"] == {"from": "Nurse", "to": "Nurse"}
        assert summary["pending"] == {"to_add": 1, "to_remove": 1}
        assert summary["recommender_available"] is True

        assert model.get("NUR001").department == "Oncology"
        changes = service.workflow.pending_changes("NUR001")
        assert changes["to_add"] == ["Prescription:read:any"]
        assert changes["to_remove"] == ["VitalSigns:update:any"]
        assert all(
            s.request_type == RequestType.JOB_TRANSFER
            for s in service.workflow.list_pending_for_principal("NUR001")
        )

    def test_transfer_sends_old_and_new_profile(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={})

        recommender = RecommenderClient(
            client=httpx.Client(transport=httpx.MockTransport(handler), base_url="http://recommender")
        )
        service, _ = _make_service()
        service.initiate_job_transfer("NUR001", recommender, role="Doctor", has_license=True)
        assert seen["old_profile"]["role"] == "Nurse"
        assert seen["old_profile"]["license"] == "No"
        assert seen["new_profile"]["role"] == "Doctor"
        assert seen["new_profile"]["license"] == "Yes"
        assert seen["new_profile"]["department"] == "ICU"

    def test_transfer_survives_recommender_outage(self):
        model = _make_model()
        service, _ = _make_service(model=model)
        summary = service.initiate_job_transfer("NUR001", _recommender(status=500), department="ER")
        assert summary["pending"] == {"to_add": 0, "to_remove": 0}
        assert summary["recommender_available"] is False
        assert model.get("NUR001").department == "ER"

    def test_transfer_to_unknown_role(self):
        service, _ = _make_service()
        with pytest.raises(NotFoundError, match="Role not found"):
            service.initiate_job_transfer("NUR001", role="Astronaut")

    def test_transfer_unknown_principal(self):
        service, _ = _make_service()
        with pytest.raises(NotFoundError):
            service.initiate_job_transfer("GHOST", department="ER")


class TestRightsizing:
    def test_rightsizing_forces_remove(self):
        service, _ = _make_service()
        created = service.ingest_rightsizing("NUR001", [
            PermissionSuggestion(permission="VitalSigns_update", confidence=0.85),
        ])
        assert created == 1
        pending = service.workflow.list_pending_by_type(RequestType.RIGHTSIZING)
        assert pending[0].change_type == ChangeType.REMOVE
