from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.orm import Session

from backoffice.audit import AuditAction, AuditActor, AuditEntity, RequestMeta, record_audit
from backoffice.db import get_db
from backoffice.schemas import AuditLogListResponse, AuditLogOptions, AuditLogRead
from backoffice.security import require_permission
from backoffice.services.audit_logs import (
    AuditLogFilters,
    audit_log_options,
    build_audit_logs_xlsx_bytes,
    list_audit_logs,
)
from backoffice.services.permission_context import PermissionContext
from backoffice.settings import get_settings

router = APIRouter(tags=["audit"])
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _audit_filters(
    action: str | None = Query(default=None),
    entity: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    actor_id: str | None = Query(default=None),
    keyword: str | None = Query(default=None, max_length=128),
    start_at: datetime | None = Query(default=None),
    end_at: datetime | None = Query(default=None),
) -> AuditLogFilters:
    return AuditLogFilters(
        action=action,
        entity=entity,
        entity_id=entity_id,
        actor_id=actor_id,
        keyword=keyword,
        start_at=start_at,
        end_at=end_at,
    )


@router.get(
    "/api/v2/audit-logs",
    response_model=AuditLogListResponse,
    dependencies=[Depends(require_permission("system", "audit", "view"))],
)
def get_audit_logs(
    filters: AuditLogFilters = Depends(_audit_filters),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
) -> AuditLogListResponse:
    rows, total = list_audit_logs(db, filters, limit=limit, offset=offset)
    return AuditLogListResponse(
        items=[AuditLogRead.model_validate(row) for row in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/api/v2/audit-logs/options",
    response_model=AuditLogOptions,
    dependencies=[Depends(require_permission("system", "audit", "view"))],
)
def get_audit_log_options(db: Session = Depends(get_db)) -> AuditLogOptions:
    return AuditLogOptions.model_validate(audit_log_options(db))


@router.get("/api/v2/audit-logs/export.xlsx")
def export_audit_logs_xlsx(
    request: Request,
    filters: AuditLogFilters = Depends(_audit_filters),
    ctx: PermissionContext = Depends(require_permission("system", "audit", "export")),
    db: Session = Depends(get_db),
) -> Response:
    max_rows = max(1, int(get_settings().audit_export_max_rows))
    rows, total = list_audit_logs(db, filters, limit=max_rows, offset=0)
    payload = build_audit_logs_xlsx_bytes(rows)

    record_audit(
        db,
        actor=AuditActor.lookup(db, ctx.employee_id),
        action=AuditAction.EXPORT,
        entity=AuditEntity.AUDIT_LOG,
        detail={
            "filters": filters.to_dict(),
            "exported_rows": len(rows),
            "matching_rows": total,
            "truncated": total > len(rows),
        },
        request_meta=RequestMeta.from_request(request),
    )

    return Response(
        content=payload,
        media_type=XLSX_MEDIA_TYPE,
        headers={
            "Content-Disposition": 'attachment; filename="audit-logs.xlsx"',
        },
    )
