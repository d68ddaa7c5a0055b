from __future__ import annotations

import unittest
from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from starlette.requests import Request

from backoffice.audit import (
    AuditAction,
    AuditActor,
    AuditEntity,
    RequestMeta,
    record_audit,
    record_correction,
)
from backoffice.db import Base
from backoffice.models import AuditLog, AuditLogImmutableError, Employee


class _FakeAuditDB:
    def __init__(self, *, fail_commit: bool = False, employee: Employee | None = None):
        self.fail_commit = fail_commit
        self.employee = employee
        self.rows: list[object] = []
        self.commits = 0
        self.rollbacks = 0

    def get(self, model, pk):  # type: ignore[no-untyped-def]
        if model is Employee and self.employee is not None and pk == self.employee.id:
            return self.employee
        return None

    def add(self, obj: object) -> None:
        self.rows.append(obj)

    def commit(self) -> None:
        if self.fail_commit:
            raise RuntimeError("disk full")
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1


def _request(headers: dict[str, str], client: tuple[str, int] | None = ("10.0.0.9", 50000)) -> Request:
    return Request(
        {
            "type": "http",
            "method": "POST",
            "path": "/api/v2/position-permissions",
            "headers": [(key.lower().encode("latin-1"), value.encode("latin-1")) for key, value in headers.items()],
            "client": client,
            "state": {"request_id": "req-123"},
        }
    )


class AuditCouplerTests(unittest.TestCase):
    def test_records_entry_with_actor_snapshot_and_request_meta(self) -> None:
        employee = Employee(id=7, full_name="Ayse Demir", email="ayse@example.com", is_active=True)
        db = _FakeAuditDB(employee=employee)
        meta = RequestMeta(ip="203.0.113.5", ip_location="TR", user_agent="pytest", request_id="req-1")

        entry = record_audit(
            db,  # type: ignore[arg-type]
            actor=AuditActor.lookup(db, 7),  # type: ignore[arg-type]
            action=AuditAction.UPDATE,
            entity=AuditEntity.POSITION,
            entity_id=5,
            detail={"changed_fields": ["permissions"]},
            request_meta=meta,
        )

        self.assertIsNotNone(entry)
        assert entry is not None
        self.assertEqual(db.rows, [entry])
        self.assertEqual(db.commits, 1)
        self.assertEqual(entry.actor_id, "7")
        self.assertEqual(entry.actor_name, "Ayse Demir")
        self.assertEqual(entry.actor_email, "ayse@example.com")
        self.assertEqual(entry.action, "update")
        self.assertEqual(entry.entity, "position")
        self.assertEqual(entry.entity_id, "5")
        self.assertEqual(entry.ip_location, "TR")
        self.assertEqual(entry.request_id, "req-1")
        self.assertIsNotNone(entry.at.tzinfo)

    def test_plain_text_detail_is_wrapped(self) -> None:
        db = _FakeAuditDB()

        entry = record_audit(
            db,  # type: ignore[arg-type]
            actor=AuditActor(id="7"),
            action="export",
            entity="audit_log",
            detail="monthly export",
        )

        assert entry is not None
        self.assertEqual(entry.detail, {"description": "monthly export"})

    def test_value_outside_vocabulary_is_rejected_without_raising(self) -> None:
        db = _FakeAuditDB()

        with self.assertLogs("backoffice.audit", level="ERROR") as captured:
            entry = record_audit(
                db,  # type: ignore[arg-type]
                actor=AuditActor(id="7"),
                action="teleport",
                entity=AuditEntity.EMPLOYEE,
            )

        self.assertIsNone(entry)
        self.assertEqual(db.rows, [])
        self.assertIn("audit_vocabulary_rejected", captured.output[0])

    def test_write_failure_is_reported_and_swallowed(self) -> None:
        db = _FakeAuditDB(fail_commit=True)

        with self.assertLogs("backoffice.audit", level="ERROR") as captured:
            entry = record_audit(
                db,  # type: ignore[arg-type]
                actor=AuditActor(id="7"),
                action=AuditAction.DELETE,
                entity=AuditEntity.POSITION,
                entity_id="5",
            )

        self.assertIsNone(entry)
        self.assertEqual(db.rollbacks, 1)
        self.assertIn("audit_log_write_failed", captured.output[0])

    def test_correction_appends_entry_pointing_at_original(self) -> None:
        db = _FakeAuditDB()
        original = AuditLog(
            id=41,
            at=datetime(2026, 1, 5, tzinfo=timezone.utc),
            actor_id="7",
            action="approve",
            entity="employee_leave",
            entity_id="88",
            detail={},
        )

        entry = record_correction(
            db,  # type: ignore[arg-type]
            actor=AuditActor(id="9", name="Auditor"),
            corrected=original,
            reason="approved the wrong request",
            detail={"entity_id": "89"},
        )

        assert entry is not None
        self.assertEqual(entry.action, "correction")
        self.assertEqual(entry.entity, "employee_leave")
        self.assertEqual(entry.entity_id, "88")
        self.assertEqual(entry.detail["corrects_entry_id"], 41)
        self.assertEqual(entry.detail["corrected_action"], "approve")
        self.assertEqual(entry.detail["correction"], {"entity_id": "89"})
        self.assertEqual(original.action, "approve")

    def test_actor_lookup_without_employee_keeps_id(self) -> None:
        actor = AuditActor.lookup(_FakeAuditDB(), 12)  # type: ignore[arg-type]

        self.assertEqual(actor, AuditActor(id="12"))


class RequestMetaTests(unittest.TestCase):
    def test_forwarded_for_wins_over_peer_address(self) -> None:
        request = _request(
            {
                "X-Forwarded-For": "198.51.100.7, 10.0.0.1",
                "CF-IPCountry": "TR",
                "User-Agent": "backoffice-ui/1.0",
            }
        )

        meta = RequestMeta.from_request(request)

        self.assertEqual(meta.ip, "198.51.100.7")
        self.assertEqual(meta.ip_location, "TR")
        self.assertEqual(meta.user_agent, "backoffice-ui/1.0")
        self.assertEqual(meta.request_id, "req-123")

    def test_cloudflare_then_peer_address(self) -> None:
        self.assertEqual(RequestMeta.from_request(_request({"CF-Connecting-IP": "203.0.113.9"})).ip, "203.0.113.9")
        self.assertEqual(RequestMeta.from_request(_request({})).ip, "10.0.0.9")
        self.assertIsNone(RequestMeta.from_request(_request({}, client=None)).ip)


class AuditLogImmutabilityTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite://")
        Base.metadata.create_all(self.engine)
        self.session = Session(self.engine)
        entry = record_audit(
            self.session,
            actor=AuditActor(id="7", name="Ayse Demir"),
            action=AuditAction.CREATE,
            entity=AuditEntity.POSITION,
            entity_id=5,
        )
        assert entry is not None
        self.entry = entry

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()

    def test_entries_cannot_be_updated(self) -> None:
        self.entry.action = "delete"

        with self.assertRaises(AuditLogImmutableError):
            self.session.commit()

    def test_entries_cannot_be_deleted(self) -> None:
        self.session.delete(self.entry)

        with self.assertRaises(AuditLogImmutableError):
            self.session.commit()

    def test_correction_is_a_new_row(self) -> None:
        correction = record_correction(
            self.session,
            actor=AuditActor(id="9"),
            corrected=self.entry,
            reason="wrong position",
        )

        assert correction is not None
        self.assertNotEqual(correction.id, self.entry.id)
        self.assertEqual(self.session.query(AuditLog).count(), 2)


if __name__ == "__main__":
    unittest.main()
