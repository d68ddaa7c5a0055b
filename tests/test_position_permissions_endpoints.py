from __future__ import annotations

import unittest
from collections.abc import Generator

from fastapi.testclient import TestClient

from backoffice.db import get_db
from backoffice.main import app
from backoffice.models import AuditLog, DataScope, Employee, OrgDepartment, Position, Project
from backoffice.security import get_permission_context
from backoffice.services.context_cache import get_permission_cache
from backoffice.services.permission_context import PermissionContext, PositionRef


def _override_get_db(fake_db):
    def _override() -> Generator[object, None, None]:
        yield fake_db

    return _override


def _bound_values(statement) -> list[object]:  # type: ignore[no-untyped-def]
    return list(statement.compile().params.values())


def _id_filter(statement) -> set[int] | None:  # type: ignore[no-untyped-def]
    for value in _bound_values(statement):
        if isinstance(value, (list, tuple)):
            return {int(item) for item in value}
    return None


class _ScalarRows:
    def __init__(self, rows):
        self._rows = rows

    def all(self):  # type: ignore[no-untyped-def]
        return list(self._rows)


class _FakePositionsDB:
    def __init__(self, positions: list[Position], employees: list[Employee]):
        self.positions = {position.id: position for position in positions}
        self.employees = {employee.id: employee for employee in employees}
        self.audit_rows: list[AuditLog] = []
        self.commits = 0
        self.next_id = 100

    def get(self, model, pk):  # type: ignore[no-untyped-def]
        if model is Position:
            return self.positions.get(pk)
        if model is Employee:
            return self.employees.get(pk)
        if model is Project and pk == 11:
            return Project(id=11, name="Istanbul site")
        if model is OrgDepartment and pk == 20:
            return OrgDepartment(id=20, name="Field team")
        return None

    def scalar(self, statement):  # type: ignore[no-untyped-def]
        if "FROM positions" in str(statement):
            values = _bound_values(statement)
            for position in self.positions.values():
                if position.code in values:
                    return position
        return None

    def scalars(self, statement):  # type: ignore[no-untyped-def]
        sql = str(statement)
        if "FROM employees" in sql:
            values = _bound_values(statement)
            return _ScalarRows(
                [employee.id for employee in self.employees.values() if employee.position_id in values]
            )
        if "FROM positions" in sql:
            ids = _id_filter(statement)
            rows = [
                position
                for position in self.positions.values()
                if (ids is None and position.is_active) or (ids is not None and position.id in ids)
            ]
            return _ScalarRows(sorted(rows, key=lambda item: item.id))
        return _ScalarRows([])

    def execute(self, statement):  # type: ignore[no-untyped-def]
        ids = _id_filter(statement) or set()
        counts: dict[int, int] = {}
        for employee in self.employees.values():
            if employee.is_active and employee.position_id in ids:
                counts[employee.position_id] = counts.get(employee.position_id, 0) + 1  # type: ignore[index]
        return _ScalarRows(sorted(counts.items()))

    def add(self, obj: object) -> None:
        if isinstance(obj, AuditLog):
            self.audit_rows.append(obj)
        elif isinstance(obj, Position):
            obj.id = self.next_id
            self.next_id += 1
            self.positions[obj.id] = obj

    def commit(self) -> None:
        self.commits += 1

    def refresh(self, _obj: object) -> None:
        return

    def rollback(self) -> None:
        return


def _admin_ctx(**overrides) -> PermissionContext:  # type: ignore[no-untyped-def]
    values = {
        "employee_id": 1,
        "position": PositionRef(id=1, code="hq_manager", name="Headquarters director"),
        "permissions": {
            "system": {"position": ["view", "create", "update", "delete"]},
            "hr": {"employee": ["view", "update"]},
        },
        "data_scope": "all",
        "can_manage_subordinates": True,
        "allowed_modules": ["*"],
        "project_id": None,
        "org_department_id": None,
    }
    values.update(overrides)
    return PermissionContext.build(**values)


def _engineer_ctx() -> PermissionContext:
    return PermissionContext.build(
        employee_id=7,
        position=PositionRef(id=6, code="team_engineer", name="Engineer"),
        permissions={"self": {"leave": ["view", "create"]}},
        data_scope="self",
        can_manage_subordinates=False,
        allowed_modules=["self.*"],
        project_id=None,
        org_department_id=None,
    )


def _position(position_id: int = 5, **overrides) -> Position:  # type: ignore[no-untyped-def]
    values = {
        "id": position_id,
        "code": "project_manager",
        "name": "Project manager",
        "level": 2,
        "function_role": "project",
        "data_scope": DataScope.PROJECT,
        "can_manage_subordinates": True,
        "permissions": {"finance": {"flow": ["view"]}},
        "allowed_modules": ["finance.*"],
        "description": None,
        "sort_order": 30,
        "is_active": True,
    }
    values.update(overrides)
    return Position(**values)


def _holder(employee_id: int, position_id: int | None = 5, *, is_active: bool = True) -> Employee:
    return Employee(
        id=employee_id,
        full_name=f"Employee {employee_id}",
        position_id=position_id,
        project_id=11,
        org_department_id=None,
        is_active=is_active,
    )


def _prime_cache(*employee_ids: int) -> None:
    cache = get_permission_cache()
    for employee_id in employee_ids:
        cache.get(employee_id, lambda key: PermissionContext.deny_all(key))


class PositionPermissionsEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        get_permission_cache().invalidate_all()

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        get_permission_cache().invalidate_all()

    def _client(self, fake_db: _FakePositionsDB, ctx: PermissionContext | None = None) -> TestClient:
        app.dependency_overrides[get_db] = _override_get_db(fake_db)
        resolved = ctx or _admin_ctx()
        app.dependency_overrides[get_permission_context] = lambda: resolved
        return TestClient(app)

    def test_catalog_is_available_to_position_administrators(self) -> None:
        client = self._client(_FakePositionsDB([], []))

        response = client.get("/api/v2/position-permissions/catalog")

        self.assertEqual(response.status_code, 200)
        self.assertIn("finance", response.json()["modules"])

    def test_denial_is_generic(self) -> None:
        client = self._client(_FakePositionsDB([], []), _engineer_ctx())

        response = client.get("/api/v2/position-permissions/catalog")

        self.assertEqual(response.status_code, 403)
        error = response.json()["error"]
        self.assertEqual(error["code"], "FORBIDDEN")
        self.assertEqual(error["message"], "Insufficient permissions.")
        self.assertNotIn("system", response.text)

    def test_allowed_modules_gate_applies_below_headquarters(self) -> None:
        gated = _admin_ctx(data_scope="project", allowed_modules=["hr.*"])
        opened = _admin_ctx(data_scope="project", allowed_modules=["system.position"])

        denied = self._client(_FakePositionsDB([], []), gated).get("/api/v2/position-permissions")
        allowed = self._client(_FakePositionsDB([], []), opened).get("/api/v2/position-permissions")

        self.assertEqual(denied.status_code, 403)
        self.assertEqual(allowed.status_code, 200)

    def test_list_includes_active_holder_counts(self) -> None:
        fake_db = _FakePositionsDB(
            [_position(5), _position(6, code="team_engineer", name="Engineer", sort_order=60)],
            [_holder(7), _holder(8), _holder(9, is_active=False), _holder(10, position_id=6)],
        )
        client = self._client(fake_db)

        response = client.get("/api/v2/position-permissions")

        self.assertEqual(response.status_code, 200)
        counts = {item["code"]: item["employee_count"] for item in response.json()}
        self.assertEqual(counts, {"project_manager": 2, "team_engineer": 1})

    def test_create_position_is_validated_and_audited(self) -> None:
        fake_db = _FakePositionsDB([], [])
        client = self._client(fake_db)

        response = client.post(
            "/api/v2/position-permissions",
            json={
                "code": "site_auditor",
                "name": "Site auditor",
                "level": 2,
                "data_scope": "project",
                "permissions": {"site": {"info": ["view"], "bill": ["view"]}},
                "allowed_modules": ["site.*", " site.* "],
            },
        )

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["code"], "site_auditor")
        self.assertEqual(body["allowed_modules"], ["site.*"])
        self.assertEqual(body["permissions"], {"site": {"info": ["view"], "bill": ["view"]}})
        self.assertEqual(len(fake_db.audit_rows), 1)
        entry = fake_db.audit_rows[0]
        self.assertEqual((entry.action, entry.entity, entry.entity_id), ("create", "position", str(body["id"])))

    def test_create_rejects_grants_outside_catalog(self) -> None:
        fake_db = _FakePositionsDB([], [])
        client = self._client(fake_db)

        response = client.post(
            "/api/v2/position-permissions",
            json={"code": "x", "name": "X", "permissions": {"finance": {"flow": ["launch"]}}},
        )

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "UNKNOWN_PERMISSION")
        self.assertEqual(fake_db.commits, 0)

    def test_create_rejects_unknown_allowed_module(self) -> None:
        client = self._client(_FakePositionsDB([], []))

        response = client.post(
            "/api/v2/position-permissions",
            json={"code": "x", "name": "X", "allowed_modules": ["warehouse.*"]},
        )

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "UNKNOWN_MODULE")

    def test_create_rejects_duplicate_code(self) -> None:
        client = self._client(_FakePositionsDB([_position(5)], []))

        response = client.post(
            "/api/v2/position-permissions",
            json={"code": "project_manager", "name": "Duplicate"},
        )

        self.assertEqual(response.status_code, 409)

    def test_update_invalidates_holders_and_audits_diff(self) -> None:
        fake_db = _FakePositionsDB([_position(5)], [_holder(7), _holder(8), _holder(30, position_id=None)])
        _prime_cache(7, 8, 30)
        client = self._client(fake_db)

        response = client.put(
            "/api/v2/position-permissions/5",
            json={"permissions": {"finance": {"flow": ["view", "create"]}}, "can_manage_subordinates": False},
        )

        self.assertEqual(response.status_code, 200)
        cache = get_permission_cache()
        self.assertIsNone(cache.peek(7))
        self.assertIsNone(cache.peek(8))
        self.assertIsNotNone(cache.peek(30))
        self.assertEqual(len(fake_db.audit_rows), 1)
        detail = fake_db.audit_rows[0].detail
        self.assertEqual(sorted(detail["changed_fields"]), ["can_manage_subordinates", "permissions"])
        self.assertEqual(
            detail["permissions"]["changed"],
            {"finance": {"flow": {"before": ["view"], "after": ["create", "view"]}}},
        )
        self.assertEqual(detail["invalidated_contexts"], 2)

    def test_update_without_changes_is_not_audited(self) -> None:
        fake_db = _FakePositionsDB([_position(5)], [_holder(7)])
        _prime_cache(7)
        client = self._client(fake_db)

        response = client.put("/api/v2/position-permissions/5", json={"name": "Project manager"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(fake_db.audit_rows, [])
        self.assertEqual(fake_db.commits, 0)
        self.assertIsNotNone(get_permission_cache().peek(7))

    def test_update_cannot_deactivate_held_position(self) -> None:
        fake_db = _FakePositionsDB([_position(5)], [_holder(7)])
        _prime_cache(7)
        client = self._client(fake_db)

        response = client.put("/api/v2/position-permissions/5", json={"is_active": False})

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["code"], "POSITION_IN_USE")
        self.assertTrue(fake_db.positions[5].is_active)
        self.assertEqual(fake_db.commits, 0)
        self.assertIsNotNone(get_permission_cache().peek(7))

    def test_update_deactivates_position_held_only_by_inactive_employees(self) -> None:
        fake_db = _FakePositionsDB([_position(5)], [_holder(9, is_active=False)])
        _prime_cache(9)
        client = self._client(fake_db)

        response = client.put("/api/v2/position-permissions/5", json={"is_active": False})

        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["is_active"])
        self.assertIsNone(get_permission_cache().peek(9))

    def test_update_unknown_position_is_not_found(self) -> None:
        client = self._client(_FakePositionsDB([], []))

        response = client.put("/api/v2/position-permissions/404", json={"name": "Ghost"})

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "NOT_FOUND")

    def test_delete_refused_while_position_is_held(self) -> None:
        fake_db = _FakePositionsDB([_position(5)], [_holder(7)])
        client = self._client(fake_db)

        response = client.delete("/api/v2/position-permissions/5")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["code"], "POSITION_IN_USE")
        self.assertTrue(fake_db.positions[5].is_active)

    def test_delete_soft_deletes_and_drops_inactive_holder_contexts(self) -> None:
        fake_db = _FakePositionsDB([_position(5)], [_holder(9, is_active=False)])
        _prime_cache(9)
        client = self._client(fake_db)

        response = client.delete("/api/v2/position-permissions/5")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"ok": True, "id": 5})
        self.assertFalse(fake_db.positions[5].is_active)
        self.assertIsNone(get_permission_cache().peek(9))
        self.assertEqual(fake_db.audit_rows[0].action, "delete")

    def test_bulk_grant_updates_positions_and_clears_cache(self) -> None:
        fake_db = _FakePositionsDB(
            [_position(5), _position(6, code="project_staff", permissions={"hr": {"leave": ["view"]}})],
            [],
        )
        _prime_cache(7, 8)
        client = self._client(fake_db)

        response = client.post(
            "/api/v2/position-permissions/bulk-grant",
            json={"position_ids": [5, 6], "module": "finance", "sub_module": "flow", "actions": ["view", "export"]},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["updated_position_ids"], [5, 6])
        self.assertEqual(response.json()["invalidated_contexts"], 2)
        self.assertEqual(fake_db.positions[5].permissions["finance"]["flow"], ["export", "view"])
        self.assertEqual(fake_db.positions[6].permissions["finance"]["flow"], ["export", "view"])
        self.assertEqual(fake_db.positions[6].permissions["hr"]["leave"], ["view"])
        self.assertEqual(get_permission_cache().stats()["entries"], 0)
        self.assertEqual(len(fake_db.audit_rows), 2)

    def test_bulk_revoke_removes_empty_sub_modules(self) -> None:
        fake_db = _FakePositionsDB([_position(5)], [])
        client = self._client(fake_db)

        response = client.post(
            "/api/v2/position-permissions/bulk-grant",
            json={"position_ids": [5], "module": "finance", "sub_module": "flow", "actions": ["view"], "mode": "revoke"},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(fake_db.positions[5].permissions, {})

    def test_bulk_grant_reports_missing_positions(self) -> None:
        client = self._client(_FakePositionsDB([_position(5)], []))

        response = client.post(
            "/api/v2/position-permissions/bulk-grant",
            json={"position_ids": [5, 77], "module": "finance", "sub_module": "flow", "actions": ["view"]},
        )

        self.assertEqual(response.status_code, 404)

    def test_assigning_position_invalidates_that_employee(self) -> None:
        fake_db = _FakePositionsDB([_position(5)], [_holder(9, position_id=None), _holder(10, position_id=None)])
        _prime_cache(9, 10)
        client = self._client(fake_db)

        response = client.put(
            "/api/v2/employees/9/position",
            json={"position_id": 5, "org_department_id": 20},
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual((body["position_id"], body["project_id"], body["org_department_id"]), (5, 11, 20))
        self.assertIsNone(get_permission_cache().peek(9))
        self.assertIsNotNone(get_permission_cache().peek(10))
        entry = fake_db.audit_rows[0]
        self.assertEqual((entry.action, entry.entity, entry.entity_id), ("update", "employee", "9"))
        self.assertEqual(entry.detail["before"]["position_id"], None)

    def test_assigning_inactive_position_is_rejected(self) -> None:
        fake_db = _FakePositionsDB([_position(5, is_active=False)], [_holder(9, position_id=None)])
        client = self._client(fake_db)

        response = client.put("/api/v2/employees/9/position", json={"position_id": 5})

        self.assertEqual(response.status_code, 422)
        self.assertEqual(fake_db.employees[9].position_id, None)

    def test_assignment_requires_hr_employee_update(self) -> None:
        ctx = _admin_ctx(permissions={"system": {"position": ["view", "update"]}})
        client = self._client(_FakePositionsDB([_position(5)], [_holder(9, position_id=None)]), ctx)

        response = client.put("/api/v2/employees/9/position", json={"position_id": 5})

        self.assertEqual(response.status_code, 403)


if __name__ == "__main__":
    unittest.main()
