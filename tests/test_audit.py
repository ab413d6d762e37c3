"""
Tests for clinigate.audit -- Hash-Chained Audit Log and Audit Interceptor.

Covers: append + chain verification, tamper detection, query filters and
pagination, risk floor semantics, the interceptor on every exit path,
status-to-policy mapping, label inference, request context capture, and
swallowed audit write failures.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import pytest

from clinigate.audit import (
    AuditLog,
    AuditRecord,
    RequestContext,
    audited,
    derive_policy_id,
    status_for_exception,
)
from clinigate.errors import AuthenticationRequiredError, InvalidStateError, NotFoundError
from clinigate.models import Principal


T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _make_record(
    actor_id: str = "DOC001",
    resource_type: str = "MedicalRecord",
    action: str = "read",
    allowed: bool = True,
    risk_score: int | None = 0,
    timestamp: datetime = T0,
) -> AuditRecord:
    return AuditRecord(
        actor_id=actor_id,
        resource_type=resource_type,
        action=action,
        allowed=allowed,
        policy_id=f"ALLOW_{resource_type}_{action}" if allowed else "DENY_UNAUTHORIZED",
        risk_score=risk_score,
        timestamp=timestamp,
    )


def _make_principal(principal_id: str = "DOC001") -> Principal:
    return Principal(principal_id=principal_id, role="Doctor", branch="CN_HN", department="Cardiology")


class _Response:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code


class _BrokenAuditLog(AuditLog):
    def append(self, record: AuditRecord) -> AuditRecord:
        raise RuntimeError("disk full")


# ---------------------------------------------------------------------------
# 1. Append + chain verification
# ---------------------------------------------------------------------------

class TestChain:
    def test_first_record_has_empty_previous_hash(self):
        log = AuditLog()
        stored = log.append(_make_record())
        assert stored.previous_hash == ""
        assert len(log) == 1

    def test_records_are_linked(self):
        log = AuditLog()
        first = log.append(_make_record())
        second = log.append(_make_record(action="update"))
        assert second.previous_hash == first.compute_hash()
        assert log.verify_chain() == (True, None)

    def test_empty_log_is_valid(self):
        assert AuditLog().verify_chain() == (True, None)

    def test_tampering_is_detected(self):
        log = AuditLog()
        for action in ("read", "update", "create"):
            log.append(_make_record(action=action))
        log._records[1].allowed = False
        assert log.verify_chain() == (False, 1)

    def test_returned_copy_cannot_alter_log(self):
        log = AuditLog()
        stored = log.append(_make_record())
        stored.policy_id = "EDITED"
        assert log.query().items[0].policy_id == "ALLOW_MedicalRecord_read"
        assert log.verify_chain() == (True, None)


# ---------------------------------------------------------------------------
# 2. Queries
# ---------------------------------------------------------------------------

class TestQuery:
    def _populated(self) -> AuditLog:
        log = AuditLog()
        log.append(_make_record("DOC001", "MedicalRecord", "read", True, 3, T0))
        log.append(_make_record("NUR001", "VitalSigns", "create", True, 0, T0 + timedelta(minutes=1)))
        log.append(_make_record("REC001", "MedicalRecord", "read", False, 5, T0 + timedelta(minutes=2)))
        log.append(_make_record("DOC001", "MedicalRecord", "export", False, 10, T0 + timedelta(minutes=3)))
        log.append(_make_record("IT001", "SystemConfig", "update", True, None, T0 + timedelta(minutes=4)))
        return log

    def test_newest_first(self):
        page = self._populated().query()
        assert [r.actor_id for r in page.items] == ["IT001", "DOC001", "REC001", "NUR001", "DOC001"]
        assert page.total == 5

    def test_filter_by_principal(self):
        page = self._populated().query(principal_id="DOC001")
        assert [r.action for r in page.items] == ["export", "read"]

    def test_filter_by_resource_type(self):
        page = self._populated().query(resource_type="MedicalRecord")
        assert page.total == 3

    def test_denied(self):
        page = self._populated().denied()
        assert {r.actor_id for r in page.items} == {"REC001", "DOC001"}
        assert all(not r.allowed for r in page.items)

    def test_time_range_is_inclusive(self):
        page = self._populated().query(
            start=T0 + timedelta(minutes=1), end=T0 + timedelta(minutes=3)
        )
        assert page.total == 3

    def test_high_risk_is_strictly_greater(self):
        log = self._populated()
        assert [r.risk_score for r in log.high_risk().items] == [10]
        assert [r.risk_score for r in log.high_risk(threshold=2).items] == [10, 5, 3]

    def test_records_without_score_never_match_risk_floor(self):
        page = self._populated().query(min_risk=-1)
        assert "IT001" not in {r.actor_id for r in page.items}

    def test_pagination(self):
        log = AuditLog()
        for i in range(45):
            log.append(_make_record(action=f"a{i}", timestamp=T0 + timedelta(seconds=i)))
        first = log.query()
        assert first.size == 20
        assert first.pages == 3
        assert first.items[0].action == "a44"
        last = log.query(page=2)
        assert [r.action for r in last.items] == [f"a{i}" for i in range(4, -1, -1)]
        assert log.query(page=5).items == []

    def test_same_timestamp_keeps_latest_append_first(self):
        log = AuditLog()
        log.append(_make_record(action="first"))
        log.append(_make_record(action="second"))
        assert [r.action for r in log.query().items] == ["second", "first"]

    def test_invalid_page_arguments(self):
        log = AuditLog()
        with pytest.raises(ValueError):
            log.query(page=-1)
        with pytest.raises(ValueError):
            log.query(size=0)


# ---------------------------------------------------------------------------
# 3. Policy id and status mapping
# ---------------------------------------------------------------------------

class TestPolicyIds:
    @pytest.mark.parametrize("allowed,status,expected", [
        (True, 200, "ALLOW_Invoice_approve"),
        (False, 401, "DENY_UNAUTHENTICATED"),
        (False, 403, "DENY_UNAUTHORIZED"),
        (False, 404, "DENY_NOT_FOUND"),
        (False, 409, "DENY_HTTP_409"),
        (False, 500, "DENY_HTTP_500"),
    ])
    def test_derive_policy_id(self, allowed, status, expected):
        assert derive_policy_id("Invoice", "approve", allowed, status) == expected

    @pytest.mark.parametrize("exc,status", [
        (AuthenticationRequiredError("x"), 401),
        (PermissionError("x"), 403),
        (NotFoundError("x"), 404),
        (InvalidStateError("x"), 409),
        (RuntimeError("x"), 500),
    ])
    def test_status_for_exception(self, exc, status):
        assert status_for_exception(exc) == status

    def test_status_attribute_on_foreign_exception(self):
        exc = RuntimeError("teapot")
        exc.status_code = 418
        assert status_for_exception(exc) == 418


# ---------------------------------------------------------------------------
# 4. Interceptor
# ---------------------------------------------------------------------------

class TestInterceptor:
    def test_success_with_inferred_labels(self):
        log = AuditLog()

        class PrescriptionController:
            @audited(log)
            def approve(self, prescription_id):
                return {"id": prescription_id}

        assert PrescriptionController().approve("RX1") == {"id": "RX1"}
        record = log.query().items[0]
        assert record.resource_type == "PrescriptionController"
        assert record.action == "approve"
        assert record.allowed is True
        assert record.policy_id == "ALLOW_PrescriptionController_approve"
        assert record.actor_id == "anonymous"
        assert record.resource_id == "N/A"
        assert record.deny_reasons == "HTTP_200"

    def test_module_function_uses_module_name(self):
        log = AuditLog()

        @audited(log)
        def export_records():
            return None

        export_records()
        record = log.query().items[0]
        assert record.resource_type == "test_audit"
        assert record.action == "export_records"

    def test_explicit_labels_override(self):
        log = AuditLog()

        @audited(log, resource_type="Invoice", action="approve")
        def handler():
            return None

        handler()
        assert log.query().items[0].policy_id == "ALLOW_Invoice_approve"

    def test_wraps_preserves_identity(self):
        log = AuditLog()

        @audited(log)
        def list_pending():
            """Docstring."""

        assert list_pending.__name__ == "list_pending"
        assert list_pending.__doc__ == "Docstring."

    def test_explicit_result_status(self):
        log = AuditLog()

        @audited(log, resource_type="Patient", action="create")
        def created():
            return _Response(201)

        @audited(log, resource_type="Patient", action="read")
        def missing():
            return _Response(404)

        created()
        missing()
        newest, oldest = log.query().items
        assert oldest.allowed is True
        assert oldest.deny_reasons == "HTTP_201"
        assert newest.allowed is False
        assert newest.policy_id == "DENY_NOT_FOUND"

    @pytest.mark.parametrize("exc,policy_id", [
        (AuthenticationRequiredError("login first"), "DENY_UNAUTHENTICATED"),
        (PermissionError("forbidden"), "DENY_UNAUTHORIZED"),
        (NotFoundError("Suggestion not found: 9"), "DENY_NOT_FOUND"),
        (InvalidStateError("already processed"), "DENY_HTTP_409"),
        (RuntimeError("boom"), "DENY_HTTP_500"),
    ])
    def test_failure_recorded_and_reraised(self, exc, policy_id):
        log = AuditLog()

        @audited(log, resource_type="Invoice", action="approve")
        def handler():
            raise exc

        with pytest.raises(type(exc)) as raised:
            handler()
        assert raised.value is exc
        record = log.query().items[0]
        assert record.allowed is False
        assert record.policy_id == policy_id
        assert record.deny_reasons == str(exc)

    def test_principal_and_context_captured(self):
        log = AuditLog()
        context = RequestContext(
            remote_address="10.0.0.7", user_agent="pytest", path="/api/invoices/42"
        )

        @audited(
            log,
            resource_type="Invoice",
            action="read",
            principal_provider=lambda: _make_principal("CSH001"),
            context_provider=lambda: context,
        )
        def handler():
            return None

        handler()
        record = log.query().items[0]
        assert record.actor_id == "CSH001"
        assert record.resource_id == "/api/invoices/42"
        assert record.ip_address == "10.0.0.7"
        assert record.user_agent == "pytest"

    def test_write_failure_is_swallowed_on_success(self, caplog):
        log = _BrokenAuditLog()

        @audited(log, resource_type="Invoice", action="read")
        def handler():
            return "ok"

        with caplog.at_level(logging.WARNING, logger="clinigate.audit"):
            assert handler() == "ok"
        assert "audit_record_write_failed" in caplog.text

    def test_write_failure_does_not_mask_original_error(self):
        log = _BrokenAuditLog()

        @audited(log, resource_type="Invoice", action="read")
        def handler():
            raise NotFoundError("Invoice not found")

        with pytest.raises(NotFoundError):
            handler()

    def test_every_call_leaves_one_record(self):
        log = AuditLog()

        @audited(log, resource_type="Invoice", action="read")
        def handler(fail):
            if fail:
                raise PermissionError("no")
            return None

        handler(False)
        with pytest.raises(PermissionError):
            handler(True)
        handler(False)
        assert len(log) == 3
        assert log.verify_chain() == (True, None)

    def test_failing_context_provider_does_not_block_call(self, caplog):
        log = AuditLog()
        ran = []

        def no_request():
            raise RuntimeError("no request bound")

        @audited(log, resource_type="Invoice", action="read",
                 principal_provider=_make_principal, context_provider=no_request)
        def handler():
            ran.append(True)
            return "ok"

        with caplog.at_level(logging.WARNING, logger="clinigate.audit"):
            assert handler() == "ok"
        assert ran == [True]
        assert len(log) == 1
        record = log.query().items[0]
        assert record.actor_id == "DOC001"
        assert record.resource_id == "N/A"
        assert record.ip_address is None
        assert "audit_context_lookup_failed" in caplog.text

    def test_failing_principal_provider_records_anonymous(self):
        log = AuditLog()

        def broken_auth():
            raise RuntimeError("session store down")

        @audited(log, resource_type="Invoice", action="read", principal_provider=broken_auth)
        def handler():
            return "ok"

        assert handler() == "ok"
        assert len(log) == 1
        assert log.query().items[0].actor_id == "anonymous"
