from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from io import BytesIO
from typing import Any

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet
from sqlalchemy import Select, String, cast, func, or_, select
from sqlalchemy.orm import Session

from backoffice.models import AuditLog

AUDIT_EXPORT_HEADERS = [
    "Time (UTC)",
    "Actor ID",
    "Actor name",
    "Actor email",
    "Action",
    "Entity",
    "Entity ID",
    "Detail",
    "IP",
    "IP location",
    "User agent",
    "Request ID",
]

HEADER_FILL = PatternFill(fill_type="solid", fgColor="0B4F73")
ZEBRA_FILL = PatternFill(fill_type="solid", fgColor="F7FBFE")
HEADER_FONT = Font(bold=True, color="FFFFFF")
THIN_SIDE = Side(style="thin", color="D5E2EC")
THIN_BORDER = Border(left=THIN_SIDE, right=THIN_SIDE, top=THIN_SIDE, bottom=THIN_SIDE)


@dataclass(frozen=True, slots=True)
class AuditLogFilters:
    action: str | None = None
    entity: str | None = None
    entity_id: str | None = None
    actor_id: str | None = None
    keyword: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "keyword": self.keyword,
            "start_at": self.start_at.isoformat() if self.start_at else None,
            "end_at": self.end_at.isoformat() if self.end_at else None,
        }


def _apply_filters(stmt: Select, filters: AuditLogFilters) -> Select:
    if filters.action:
        stmt = stmt.where(AuditLog.action == filters.action)
    if filters.entity:
        stmt = stmt.where(AuditLog.entity == filters.entity)
    if filters.entity_id:
        stmt = stmt.where(AuditLog.entity_id == filters.entity_id)
    if filters.actor_id:
        stmt = stmt.where(AuditLog.actor_id == filters.actor_id)
    if filters.start_at is not None:
        stmt = stmt.where(AuditLog.at >= filters.start_at)
    if filters.end_at is not None:
        stmt = stmt.where(AuditLog.at <= filters.end_at)
    keyword = (filters.keyword or "").strip()
    if keyword:
        escaped = keyword.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        stmt = stmt.where(
            or_(
                AuditLog.actor_name.ilike(pattern, escape="\\"),
                AuditLog.actor_email.ilike(pattern, escape="\\"),
                AuditLog.entity_id.ilike(pattern, escape="\\"),
                cast(AuditLog.detail, String).ilike(pattern, escape="\\"),
            )
        )
    return stmt


def list_audit_logs(
    db: Session,
    filters: AuditLogFilters,
    *,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[AuditLog], int]:
    total_stmt = _apply_filters(select(func.count(AuditLog.id)), filters)
    total = int(db.scalar(total_stmt) or 0)

    stmt = (
        _apply_filters(select(AuditLog), filters)
        .order_by(AuditLog.at.desc(), AuditLog.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(db.scalars(stmt).all()), total


def audit_log_options(db: Session) -> dict[str, Any]:
    actions = db.scalars(select(AuditLog.action).distinct().order_by(AuditLog.action.asc())).all()
    entities = db.scalars(select(AuditLog.entity).distinct().order_by(AuditLog.entity.asc())).all()
    actor_rows = db.execute(
        select(AuditLog.actor_id, func.max(AuditLog.actor_name))
        .group_by(AuditLog.actor_id)
        .order_by(AuditLog.actor_id.asc())
    ).all()
    return {
        "actions": [str(item) for item in actions],
        "entities": [str(item) for item in entities],
        "actors": [{"id": str(row[0]), "name": row[1]} for row in actor_rows],
    }


def _to_excel_datetime(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _style_header(ws: Worksheet, row: int = 1) -> None:
    for cell in ws[row]:
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.alignment = Alignment(horizontal="center", vertical="center", wrap_text=True)
        cell.border = THIN_BORDER


def _auto_width(ws: Worksheet) -> None:
    for column_cells in ws.iter_cols(min_row=1, max_row=ws.max_row, min_col=1, max_col=ws.max_column):
        max_len = 0
        col_letter = get_column_letter(column_cells[0].column)
        for cell in column_cells:
            value = "" if cell.value is None else str(cell.value)
            max_len = max(max_len, len(value))
        ws.column_dimensions[col_letter].width = min(max_len + 2, 60)


def build_audit_logs_xlsx_bytes(rows: list[AuditLog]) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Audit log"
    ws.append(AUDIT_EXPORT_HEADERS)
    _style_header(ws)

    for index, row in enumerate(rows, start=2):
        ws.append(
            [
                _to_excel_datetime(row.at),
                row.actor_id,
                row.actor_name,
                row.actor_email,
                row.action,
                row.entity,
                row.entity_id,
                json.dumps(row.detail or {}, ensure_ascii=False, sort_keys=True, default=str),
                row.ip,
                row.ip_location,
                row.user_agent,
                row.request_id,
            ]
        )
        ws.cell(row=index, column=1).number_format = "yyyy-mm-dd hh:mm:ss"
        if index % 2 == 0:
            for cell in ws[index]:
                cell.fill = ZEBRA_FILL

    last_row = max(ws.max_row, 1)
    ws.auto_filter.ref = f"A1:{get_column_letter(len(AUDIT_EXPORT_HEADERS))}{last_row}"
    ws.freeze_panes = "A2"
    _auto_width(ws)

    stream = BytesIO()
    wb.save(stream)
    return stream.getvalue()
