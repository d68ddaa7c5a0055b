from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from sqlalchemy.orm import Session

from backoffice.models import AuditLog, Employee

logger = logging.getLogger("backoffice.audit")


class AuditAction(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    APPROVE = "approve"
    REJECT = "reject"
    EXPORT = "export"
    BATCH_CREATE = "batch_create"
    BATCH_DELETE = "batch_delete"
    LOGIN = "login"
    LOGOUT = "logout"
    SYNC = "sync"
    PAID = "paid"
    RETURN = "return"
    RESEND_ACTIVATION = "resend_activation"
    RESET_TOTP = "reset_totp"
    REVERSE = "reverse"
    CORRECTION = "correction"


class AuditEntity(str, enum.Enum):
    ACCOUNT = "account"
    ACCOUNT_TRANSFER = "account_transfer"
    ALLOWANCE_PAYMENT = "allowance_payment"
    AR_AP_DOC = "ar_ap_doc"
    AUDIT_LOG = "audit_log"
    BORROWING = "borrowing"
    CASH_FLOW = "cash_flow"
    CATEGORY = "category"
    CURRENCY = "currency"
    DEPARTMENT = "department"
    EMPLOYEE = "employee"
    EMPLOYEE_ALLOWANCE = "employee_allowance"
    EMPLOYEE_LEAVE = "employee_leave"
    EMPLOYEE_SALARY = "employee_salary"
    EXPENSE_REIMBURSEMENT = "expense_reimbursement"
    FIXED_ASSET = "fixed_asset"
    HEADQUARTERS = "headquarters"
    IP_WHITELIST = "ip_whitelist"
    ORG_DEPARTMENT = "org_department"
    POSITION = "position"
    RENTAL_PAYMENT = "rental_payment"
    RENTAL_PROPERTY = "rental_property"
    REPAYMENT = "repayment"
    SALARY_PAYMENT = "salary_payment"
    SETTLEMENT = "settlement"
    SITE = "site"
    SITE_BILL = "site_bill"
    SYSTEM_CONFIG = "system_config"
    USER = "user"
    VENDOR = "vendor"


@dataclass(frozen=True, slots=True)
class AuditActor:
    id: str
    name: str | None = None
    email: str | None = None

    @classmethod
    def from_employee(cls, employee: Employee) -> AuditActor:
        return cls(id=str(employee.id), name=employee.full_name, email=employee.email)

    @classmethod
    def lookup(cls, db: Session, employee_id: int) -> AuditActor:
        try:
            employee = db.get(Employee, employee_id)
        except Exception:
            logger.warning("audit_actor_lookup_failed", exc_info=True, extra={"actor_id": employee_id})
            employee = None
        if employee is None:
            return cls(id=str(employee_id))
        return cls.from_employee(employee)


@dataclass(frozen=True, slots=True)
class RequestMeta:
    ip: str | None = None
    ip_location: str | None = None
    user_agent: str | None = None
    request_id: str | None = None

    @classmethod
    def from_request(cls, request: Request) -> RequestMeta:
        headers = request.headers
        ip: str | None = None
        forwarded_for = headers.get("x-forwarded-for")
        if forwarded_for:
            ip = forwarded_for.split(",")[0].strip() or None
        if ip is None:
            ip = headers.get("cf-connecting-ip")
        if ip is None and request.client:
            ip = request.client.host
        return cls(
            ip=ip,
            ip_location=headers.get("cf-ipcountry"),
            user_agent=headers.get("user-agent"),
            request_id=getattr(request.state, "request_id", None),
        )


def _coerce_detail(detail: dict[str, Any] | str | None) -> dict[str, Any]:
    if detail is None:
        return {}
    if isinstance(detail, dict):
        return detail
    return {"description": str(detail)}


def record_audit(
    db: Session,
    *,
    actor: AuditActor,
    action: AuditAction | str,
    entity: AuditEntity | str,
    entity_id: str | int | None = None,
    detail: dict[str, Any] | str | None = None,
    request_meta: RequestMeta | None = None,
) -> AuditLog | None:
    """Append one audit entry after the business mutation has committed.

    Best effort: the entry is committed in its own transaction and any failure
    is rolled back and logged, never raised, so the completed mutation stands.
    Returns the written entry, or ``None`` when nothing was written.
    """
    meta = request_meta or RequestMeta()
    try:
        action_value = AuditAction(action).value
        entity_value = AuditEntity(entity).value
    except ValueError:
        logger.error(
            "audit_vocabulary_rejected",
            extra={
                "request_id": meta.request_id,
                "action": str(action),
                "entity": str(entity),
                "actor_id": actor.id,
            },
        )
        return None

    entry = AuditLog(
        at=datetime.now(timezone.utc),
        actor_id=actor.id,
        actor_name=actor.name,
        actor_email=actor.email,
        action=action_value,
        entity=entity_value,
        entity_id=str(entity_id) if entity_id is not None else None,
        detail=_coerce_detail(detail),
        ip=meta.ip,
        ip_location=meta.ip_location,
        user_agent=meta.user_agent,
        request_id=meta.request_id,
    )
    try:
        db.add(entry)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "audit_log_write_failed",
            extra={
                "request_id": meta.request_id,
                "action": action_value,
                "entity": entity_value,
                "entity_id": entry.entity_id,
                "actor_id": actor.id,
            },
        )
        return None

    logger.info(
        "audit_event",
        extra={
            "request_id": meta.request_id,
            "action": action_value,
            "entity": entity_value,
            "entity_id": entry.entity_id,
            "actor_id": actor.id,
            "ip": meta.ip,
        },
    )
    return entry


def record_correction(
    db: Session,
    *,
    actor: AuditActor,
    corrected: AuditLog,
    reason: str,
    detail: dict[str, Any] | None = None,
    request_meta: RequestMeta | None = None,
) -> AuditLog | None:
    """History is never edited; a mistaken entry is answered by a new one pointing at it."""
    payload: dict[str, Any] = {
        "corrects_entry_id": corrected.id,
        "corrected_action": corrected.action,
        "reason": reason,
    }
    if detail:
        payload["correction"] = detail
    return record_audit(
        db,
        actor=actor,
        action=AuditAction.CORRECTION,
        entity=corrected.entity,
        entity_id=corrected.entity_id,
        detail=payload,
        request_meta=request_meta,
    )
