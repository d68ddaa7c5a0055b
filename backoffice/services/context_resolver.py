from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from backoffice.models import Employee, OrgDepartment
from backoffice.services.enforcement import OrgTree
from backoffice.services.permission_context import PermissionContext, PositionRef

logger = logging.getLogger("backoffice.authz")


def _deny_all(employee_id: int, reason: str, employee: Employee | None = None) -> PermissionContext:
    logger.warning(
        "permission_context_deny_all",
        extra={"employee_id": employee_id, "reason": reason},
    )
    return PermissionContext.deny_all(
        employee_id,
        project_id=employee.project_id if employee is not None else None,
        org_department_id=employee.org_department_id if employee is not None else None,
    )


def resolve_permission_context(db: Session, employee_id: int) -> PermissionContext:
    """Snapshot an employee's position grants and org placement.

    Missing or inactive employees and positions resolve to the deny-all
    context instead of raising; storage errors propagate.
    """
    employee = db.get(Employee, employee_id)
    if employee is None:
        return _deny_all(employee_id, "EMPLOYEE_NOT_FOUND")
    if not employee.is_active:
        return _deny_all(employee_id, "EMPLOYEE_INACTIVE", employee)

    position = employee.position
    if position is None:
        return _deny_all(employee_id, "POSITION_NOT_ASSIGNED", employee)
    if not position.is_active:
        return _deny_all(employee_id, "POSITION_INACTIVE", employee)

    return PermissionContext.build(
        employee_id=employee.id,
        position=PositionRef(id=position.id, code=position.code, name=position.name),
        permissions=position.permissions,
        data_scope=position.data_scope,
        can_manage_subordinates=position.can_manage_subordinates,
        allowed_modules=position.allowed_modules,
        project_id=employee.project_id,
        org_department_id=employee.org_department_id,
    )


def load_org_tree(db: Session) -> OrgTree:
    rows = db.execute(
        select(OrgDepartment.id, OrgDepartment.parent_id).where(OrgDepartment.is_active.is_(True))
    ).all()
    return OrgTree((int(row[0]), row[1]) for row in rows)
