from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from backoffice.audit import AuditAction, AuditActor, AuditEntity, RequestMeta, record_audit
from backoffice.db import get_db
from backoffice.models import Position
from backoffice.schemas import (
    BulkGrantRequest,
    BulkGrantResponse,
    EmployeePositionAssignRequest,
    EmployeePositionRead,
    PositionCreate,
    PositionRead,
    PositionUpdate,
    SoftDeleteResponse,
)
from backoffice.security import require_permission
from backoffice.services.permission_catalog import catalog_payload, normalize_permission_map, permission_map_to_json
from backoffice.services.permission_context import PermissionContext
from backoffice.services.positions import (
    assign_employee_position,
    bulk_grant,
    create_position,
    delete_position,
    get_position,
    holder_counts,
    list_positions,
    update_position,
)

router = APIRouter(tags=["position-permissions"])


def _position_read(position: Position, employee_count: int = 0) -> PositionRead:
    read = PositionRead.model_validate(position)
    read.employee_count = employee_count
    return read


@router.get(
    "/api/v2/position-permissions/catalog",
    dependencies=[Depends(require_permission("system", "position", "view"))],
)
def get_permission_catalog() -> dict[str, Any]:
    return catalog_payload()


@router.get(
    "/api/v2/position-permissions",
    response_model=list[PositionRead],
    dependencies=[Depends(require_permission("system", "position", "view"))],
)
def list_position_permissions(
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> list[PositionRead]:
    positions = list_positions(db, include_inactive=include_inactive)
    counts = holder_counts(db, [position.id for position in positions])
    return [_position_read(position, counts.get(position.id, 0)) for position in positions]


@router.post(
    "/api/v2/position-permissions",
    response_model=PositionRead,
    status_code=201,
)
def create_position_permissions(
    payload: PositionCreate,
    request: Request,
    ctx: PermissionContext = Depends(require_permission("system", "position", "create")),
    db: Session = Depends(get_db),
) -> PositionRead:
    position = create_position(db, payload)
    record_audit(
        db,
        actor=AuditActor.lookup(db, ctx.employee_id),
        action=AuditAction.CREATE,
        entity=AuditEntity.POSITION,
        entity_id=position.id,
        detail={
            "code": position.code,
            "data_scope": position.data_scope.value,
            "can_manage_subordinates": position.can_manage_subordinates,
            "permissions": permission_map_to_json(normalize_permission_map(position.permissions)),
            "allowed_modules": list(position.allowed_modules or []),
        },
        request_meta=RequestMeta.from_request(request),
    )
    return _position_read(position)


@router.get(
    "/api/v2/position-permissions/{position_id}",
    response_model=PositionRead,
    dependencies=[Depends(require_permission("system", "position", "view"))],
)
def get_position_permissions(
    position_id: int,
    db: Session = Depends(get_db),
) -> PositionRead:
    position = get_position(db, position_id)
    counts = holder_counts(db, [position.id])
    return _position_read(position, counts.get(position.id, 0))


@router.put("/api/v2/position-permissions/{position_id}", response_model=PositionRead)
def update_position_permissions(
    position_id: int,
    payload: PositionUpdate,
    request: Request,
    ctx: PermissionContext = Depends(require_permission("system", "position", "update")),
    db: Session = Depends(get_db),
) -> PositionRead:
    position = get_position(db, position_id)
    change = update_position(db, position, payload)
    if change.changed_fields:
        record_audit(
            db,
            actor=AuditActor.lookup(db, ctx.employee_id),
            action=AuditAction.UPDATE,
            entity=AuditEntity.POSITION,
            entity_id=position.id,
            detail=change.audit_detail(),
            request_meta=RequestMeta.from_request(request),
        )
    counts = holder_counts(db, [position.id])
    return _position_read(change.position, counts.get(position.id, 0))


@router.delete("/api/v2/position-permissions/{position_id}", response_model=SoftDeleteResponse)
def delete_position_permissions(
    position_id: int,
    request: Request,
    ctx: PermissionContext = Depends(require_permission("system", "position", "delete")),
    db: Session = Depends(get_db),
) -> SoftDeleteResponse:
    position = get_position(db, position_id)
    invalidated = delete_position(db, position)
    record_audit(
        db,
        actor=AuditActor.lookup(db, ctx.employee_id),
        action=AuditAction.DELETE,
        entity=AuditEntity.POSITION,
        entity_id=position.id,
        detail={"code": position.code, "soft_delete": True, "invalidated_contexts": len(invalidated)},
        request_meta=RequestMeta.from_request(request),
    )
    return SoftDeleteResponse(ok=True, id=position.id)


@router.post("/api/v2/position-permissions/bulk-grant", response_model=BulkGrantResponse)
def bulk_grant_position_permissions(
    payload: BulkGrantRequest,
    request: Request,
    ctx: PermissionContext = Depends(require_permission("system", "position", "update")),
    db: Session = Depends(get_db),
) -> BulkGrantResponse:
    changes, invalidated = bulk_grant(db, payload)
    if changes:
        actor = AuditActor.lookup(db, ctx.employee_id)
        request_meta = RequestMeta.from_request(request)
        for change in changes:
            detail = change.audit_detail()
            detail["bulk_mode"] = payload.mode
            record_audit(
                db,
                actor=actor,
                action=AuditAction.UPDATE,
                entity=AuditEntity.POSITION,
                entity_id=change.position.id,
                detail=detail,
                request_meta=request_meta,
            )
    return BulkGrantResponse(
        ok=True,
        updated_position_ids=[change.position.id for change in changes],
        invalidated_contexts=invalidated,
    )


@router.put("/api/v2/employees/{employee_id}/position", response_model=EmployeePositionRead)
def assign_position_to_employee(
    employee_id: int,
    payload: EmployeePositionAssignRequest,
    request: Request,
    ctx: PermissionContext = Depends(require_permission("hr", "employee", "update")),
    db: Session = Depends(get_db),
) -> EmployeePositionRead:
    assignment = assign_employee_position(db, employee_id, payload)
    if assignment.before != assignment.after:
        record_audit(
            db,
            actor=AuditActor.lookup(db, ctx.employee_id),
            action=AuditAction.UPDATE,
            entity=AuditEntity.EMPLOYEE,
            entity_id=employee_id,
            detail=assignment.audit_detail(),
            request_meta=RequestMeta.from_request(request),
        )
    return EmployeePositionRead.model_validate(assignment.employee)
