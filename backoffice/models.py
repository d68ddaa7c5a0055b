from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    event,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backoffice.db import Base

# JSONB on PostgreSQL, plain JSON elsewhere.
JsonDocument = JSON().with_variant(JSONB(astext_type=Text()), "postgresql")


class DataScope(str, enum.Enum):
    ALL = "all"
    PROJECT = "project"
    GROUP = "group"
    SELF = "self"


class PositionLevel(int, enum.Enum):
    HEADQUARTERS = 1
    PROJECT = 2
    GROUP = 3


class AuditLogImmutableError(RuntimeError):
    pass


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_headquarters: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))

    org_departments: Mapped[list[OrgDepartment]] = relationship(back_populates="project")
    employees: Mapped[list[Employee]] = relationship(back_populates="project")


class OrgDepartment(Base):
    __tablename__ = "org_departments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    project_id: Mapped[int | None] = mapped_column(
        ForeignKey("projects.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    parent_id: Mapped[int | None] = mapped_column(
        ForeignKey("org_departments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))

    project: Mapped[Project | None] = relationship(back_populates="org_departments")
    employees: Mapped[list[Employee]] = relationship(back_populates="org_department")


class Position(Base):
    __tablename__ = "positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=PositionLevel.GROUP.value)
    function_role: Mapped[str | None] = mapped_column(String(64), nullable=True)
    data_scope: Mapped[DataScope] = mapped_column(
        Enum(
            DataScope,
            name="position_data_scope",
            values_callable=lambda members: [member.value for member in members],
        ),
        nullable=False,
        default=DataScope.SELF,
        server_default=text("'self'"),
    )
    can_manage_subordinates: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    permissions: Mapped[dict[str, Any]] = mapped_column(
        JsonDocument,
        nullable=False,
        default=dict,
        server_default=text("'{}'"),
    )
    allowed_modules: Mapped[list[str]] = mapped_column(
        JsonDocument,
        nullable=False,
        default=list,
        server_default=text("'[]'"),
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    employees: Mapped[list[Employee]] = relationship(back_populates="position")


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    position_id: Mapped[int | None] = mapped_column(
        ForeignKey("positions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    project_id: Mapped[int | None] = mapped_column(
        ForeignKey("projects.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    org_department_id: Mapped[int | None] = mapped_column(
        ForeignKey("org_departments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))

    position: Mapped[Position | None] = relationship(back_populates="employees")
    project: Mapped[Project | None] = relationship(back_populates="employees")
    org_department: Mapped[OrgDepartment | None] = relationship(back_populates="employees")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    actor_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    actor_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    entity: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    detail: Mapped[dict[str, Any]] = mapped_column(
        JsonDocument,
        nullable=False,
        default=dict,
        server_default=text("'{}'"),
    )
    ip: Mapped[str | None] = mapped_column(String(128), nullable=True)
    ip_location: Mapped[str | None] = mapped_column(String(128), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(128), nullable=True)


@event.listens_for(AuditLog, "before_update")
@event.listens_for(AuditLog, "before_delete")
def reject_audit_log_mutation(_mapper, _connection, target: AuditLog) -> None:  # type: ignore[no-untyped-def]
    raise AuditLogImmutableError(f"Audit log entry {target.id} is append-only")
