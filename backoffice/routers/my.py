from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from backoffice.db import get_db
from backoffice.schemas import PermissionContextRead
from backoffice.security import get_permission_context, require_employee
from backoffice.services.context_cache import get_permission_cache
from backoffice.services.context_resolver import resolve_permission_context
from backoffice.services.permission_context import PermissionContext

router = APIRouter(tags=["my"])


def _context_read(request: Request, ctx: PermissionContext) -> PermissionContextRead:
    request.state.employee_id = ctx.employee_id
    return PermissionContextRead.model_validate(ctx.to_dict())


@router.get("/api/v2/my/permissions", response_model=PermissionContextRead)
def my_permissions(
    request: Request,
    ctx: PermissionContext = Depends(get_permission_context),
) -> PermissionContextRead:
    return _context_read(request, ctx)


@router.post("/api/v2/my/permissions/refresh", response_model=PermissionContextRead)
def refresh_my_permissions(
    request: Request,
    employee_id: int = Depends(require_employee),
    db: Session = Depends(get_db),
) -> PermissionContextRead:
    cache = get_permission_cache()
    cache.invalidate(employee_id)
    ctx = cache.get(employee_id, lambda key: resolve_permission_context(db, key))
    return _context_read(request, ctx)
