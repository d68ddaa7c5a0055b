from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from backoffice.errors import ApiError
from backoffice.models import Employee, OrgDepartment, Position, Project
from backoffice.schemas import (
    BulkGrantRequest,
    EmployeePositionAssignRequest,
    PositionCreate,
    PositionUpdate,
)
from backoffice.services.context_cache import get_permission_cache
from backoffice.services.permission_catalog import (
    ALL_MODULES,
    PERMISSION_MODULES,
    WILDCARD_SUFFIX,
    PermissionDiff,
    diff_permissions,
    normalize_permission_map,
    permission_map_to_json,
    validate_permission_map,
)

logger = logging.getLogger("backoffice.authz")

# Changing any of these alters what a holder's resolved context contains.
CONTEXT_FIELDS = frozenset(
    {"permissions", "data_scope", "can_manage_subordinates", "allowed_modules", "is_active", "code", "name"}
)


@dataclass(slots=True)
class PositionChange:
    position: Position
    changed_fields: list[str]
    permission_diff: PermissionDiff
    invalidated_employee_ids: list[int] = field(default_factory=list)

    def audit_detail(self) -> dict[str, Any]:
        detail: dict[str, Any] = {
            "code": self.position.code,
            "changed_fields": self.changed_fields,
            "invalidated_contexts": len(self.invalidated_employee_ids),
        }
        if not self.permission_diff.is_empty:
            detail["permissions"] = self.permission_diff.to_dict()
        return detail


@dataclass(slots=True)
class EmployeeAssignment:
    employee: Employee
    before: dict[str, int | None]
    after: dict[str, int | None]

    def audit_detail(self) -> dict[str, Any]:
        return {"before": self.before, "after": self.after}


def _validated_grants(raw: Any) -> dict[str, dict[str, list[str]]]:
    normalized = normalize_permission_map(raw)
    unknown = validate_permission_map(normalized)
    if unknown:
        raise ApiError(
            status_code=422,
            code="UNKNOWN_PERMISSION",
            message=f"Unknown permission grants: {', '.join(unknown)}",
        )
    return permission_map_to_json(normalized)


def _validated_allowed_modules(entries: list[str]) -> list[str]:
    unknown: list[str] = []
    for entry in entries:
        if entry == ALL_MODULES:
            continue
        root = entry[: -len(WILDCARD_SUFFIX)] if entry.endswith(WILDCARD_SUFFIX) else entry
        if root.split(".")[0] not in PERMISSION_MODULES:
            unknown.append(entry)
    if unknown:
        raise ApiError(
            status_code=422,
            code="UNKNOWN_MODULE",
            message=f"Unknown allowed modules: {', '.join(unknown)}",
        )
    return list(entries)


def holder_ids(db: Session, position_id: int) -> list[int]:
    return [int(item) for item in db.scalars(select(Employee.id).where(Employee.position_id == position_id)).all()]


def holder_counts(db: Session, position_ids: list[int]) -> dict[int, int]:
    if not position_ids:
        return {}
    rows = db.execute(
        select(Employee.position_id, func.count(Employee.id))
        .where(Employee.position_id.in_(position_ids), Employee.is_active.is_(True))
        .group_by(Employee.position_id)
    ).all()
    return {int(row[0]): int(row[1]) for row in rows}


def _ensure_unheld(db: Session, position: Position) -> None:
    if holder_counts(db, [position.id]).get(position.id, 0):
        raise ApiError(
            status_code=409,
            code="POSITION_IN_USE",
            message="Position is still assigned to active employees.",
        )


def list_positions(db: Session, *, include_inactive: bool = False) -> list[Position]:
    stmt = select(Position).order_by(Position.sort_order.asc(), Position.level.asc(), Position.id.asc())
    if not include_inactive:
        stmt = stmt.where(Position.is_active.is_(True))
    return list(db.scalars(stmt).all())


def get_position(db: Session, position_id: int) -> Position:
    position = db.get(Position, position_id)
    if position is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Position not found")
    return position


def create_position(db: Session, payload: PositionCreate) -> Position:
    code = payload.code.strip()
    existing = db.scalar(select(Position).where(Position.code == code))
    if existing is not None:
        raise ApiError(status_code=409, code="POSITION_CODE_EXISTS", message="Position code already exists.")

    position = Position(
        code=code,
        name=payload.name.strip(),
        level=int(payload.level),
        function_role=payload.function_role,
        data_scope=payload.data_scope,
        can_manage_subordinates=payload.can_manage_subordinates,
        permissions=_validated_grants(payload.permissions),
        allowed_modules=_validated_allowed_modules(payload.allowed_modules),
        description=payload.description,
        sort_order=payload.sort_order,
        is_active=True,
    )
    db.add(position)
    db.commit()
    db.refresh(position)
    return position


def update_position(db: Session, position: Position, payload: PositionUpdate) -> PositionChange:
    updates = payload.model_dump(exclude_unset=True)
    before_permissions = position.permissions

    if "permissions" in updates:
        updates["permissions"] = _validated_grants(updates["permissions"] or {})
    if "allowed_modules" in updates:
        raw_modules = updates["allowed_modules"] or []
        cleaned = list(dict.fromkeys(item.strip() for item in raw_modules if item.strip()))
        updates["allowed_modules"] = _validated_allowed_modules(cleaned)
    if "level" in updates and updates["level"] is not None:
        updates["level"] = int(updates["level"])
    if "name" in updates and updates["name"] is not None:
        updates["name"] = updates["name"].strip()
    if updates.get("is_active") is False and position.is_active:
        _ensure_unheld(db, position)

    changed_fields: list[str] = []
    for key, value in updates.items():
        if value is None and key not in {"function_role", "description"}:
            continue
        if getattr(position, key) != value:
            setattr(position, key, value)
            changed_fields.append(key)

    permission_diff = diff_permissions(before_permissions, position.permissions)
    if not changed_fields:
        return PositionChange(position=position, changed_fields=[], permission_diff=permission_diff)

    db.commit()
    db.refresh(position)

    invalidated: list[int] = []
    if CONTEXT_FIELDS.intersection(changed_fields):
        invalidated = holder_ids(db, position.id)
        get_permission_cache().invalidate_many(invalidated)

    logger.info(
        "position_updated",
        extra={
            "position_id": position.id,
            "changed_fields": changed_fields,
            "invalidated_contexts": len(invalidated),
        },
    )
    return PositionChange(
        position=position,
        changed_fields=changed_fields,
        permission_diff=permission_diff,
        invalidated_employee_ids=invalidated,
    )


def delete_position(db: Session, position: Position) -> list[int]:
    """Deactivate a position nobody actively holds; returns the holders whose contexts were dropped."""
    _ensure_unheld(db, position)

    if position.is_active:
        position.is_active = False
        db.commit()
        db.refresh(position)

    invalidated = holder_ids(db, position.id)
    get_permission_cache().invalidate_many(invalidated)
    return invalidated


def assign_employee_position(
    db: Session,
    employee_id: int,
    payload: EmployeePositionAssignRequest,
) -> EmployeeAssignment:
    employee = db.get(Employee, employee_id)
    if employee is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Employee not found")

    provided = payload.model_fields_set
    if "position_id" in provided and payload.position_id is not None:
        position = db.get(Position, payload.position_id)
        if position is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Position not found")
        if not position.is_active:
            raise ApiError(status_code=422, code="POSITION_INACTIVE", message="Position is not active.")
    if "project_id" in provided and payload.project_id is not None:
        if db.get(Project, payload.project_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
    if "org_department_id" in provided and payload.org_department_id is not None:
        if db.get(OrgDepartment, payload.org_department_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Org department not found")

    before = {
        "position_id": employee.position_id,
        "project_id": employee.project_id,
        "org_department_id": employee.org_department_id,
    }
    for key in ("position_id", "project_id", "org_department_id"):
        if key in provided:
            setattr(employee, key, getattr(payload, key))

    db.commit()
    db.refresh(employee)
    get_permission_cache().invalidate(employee.id)

    after = {
        "position_id": employee.position_id,
        "project_id": employee.project_id,
        "org_department_id": employee.org_department_id,
    }
    return EmployeeAssignment(employee=employee, before=before, after=after)


def _validated_bulk_grant(payload: BulkGrantRequest) -> tuple[str, str, list[str]]:
    module = payload.module.strip()
    sub_module = payload.sub_module.strip()
    actions = sorted({action.strip() for action in payload.actions if action.strip()})
    unknown = validate_permission_map({module: {sub_module: frozenset(actions)}})
    if unknown or not actions:
        raise ApiError(
            status_code=422,
            code="UNKNOWN_PERMISSION",
            message=f"Unknown permission grants: {', '.join(unknown) or module}",
        )
    return module, sub_module, actions


def bulk_grant(db: Session, payload: BulkGrantRequest) -> tuple[list[PositionChange], int]:
    module, sub_module, actions = _validated_bulk_grant(payload)
    requested_ids = sorted(set(payload.position_ids))
    positions = list(db.scalars(select(Position).where(Position.id.in_(requested_ids))).all())
    missing = sorted(set(requested_ids) - {position.id for position in positions})
    if missing:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Positions not found: {', '.join(str(item) for item in missing)}",
        )

    changes: list[PositionChange] = []
    for position in positions:
        before = permission_map_to_json(normalize_permission_map(position.permissions))
        # JSON columns only notice reassignment, so build a fresh document.
        after = {name: dict(grants) for name, grants in before.items()}
        current = set(after.get(module, {}).get(sub_module, []))
        if payload.mode == "grant":
            current |= set(actions)
        else:
            current -= set(actions)

        module_grants = after.setdefault(module, {})
        if current:
            module_grants[sub_module] = sorted(current)
        else:
            module_grants.pop(sub_module, None)
        if not module_grants:
            after.pop(module, None)

        permission_diff = diff_permissions(before, after)
        if permission_diff.is_empty:
            continue
        position.permissions = after
        changes.append(
            PositionChange(position=position, changed_fields=["permissions"], permission_diff=permission_diff)
        )

    if not changes:
        return [], 0

    db.commit()
    invalidated = get_permission_cache().invalidate_all()
    logger.info(
        "position_bulk_grant",
        extra={
            "mode": payload.mode,
            "permission_module": module,
            "sub_module": sub_module,
            "actions": actions,
            "position_ids": [change.position.id for change in changes],
            "invalidated_contexts": invalidated,
        },
    )
    return changes, invalidated
