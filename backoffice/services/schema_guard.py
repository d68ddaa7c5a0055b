from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.engine.reflection import Inspector
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.types import JSON, Boolean, TypeEngine

from backoffice.models import DataScope

APPEND_ONLY_TRIGGER = "audit_logs_append_only"
DATA_SCOPE_ENUM = "position_data_scope"


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    alembic_version: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
            "alembic_version": self.alembic_version,
        }


@dataclass(frozen=True, slots=True)
class RequiredColumn:
    name: str
    # Reflected type must be an instance of this family; None accepts any type.
    family: type[TypeEngine] | None = None


def _columns(*names: str | RequiredColumn) -> tuple[RequiredColumn, ...]:
    return tuple(item if isinstance(item, RequiredColumn) else RequiredColumn(item) for item in names)


# Permission maps, module lists and audit detail are read as JSON documents by the resolver.
REQUIRED_TABLES: dict[str, tuple[RequiredColumn, ...]] = {
    "positions": _columns(
        "id",
        "code",
        "data_scope",
        RequiredColumn("can_manage_subordinates", Boolean),
        RequiredColumn("permissions", JSON),
        RequiredColumn("allowed_modules", JSON),
        RequiredColumn("is_active", Boolean),
    ),
    "employees": _columns(
        "id",
        "position_id",
        "project_id",
        "org_department_id",
        RequiredColumn("is_active", Boolean),
    ),
    "org_departments": _columns("id", "parent_id", RequiredColumn("is_active", Boolean)),
    "audit_logs": _columns(
        "id",
        "at",
        "actor_id",
        "action",
        "entity",
        RequiredColumn("detail", JSON),
        "ip_location",
    ),
    "alembic_version": _columns("version_num"),
}


@dataclass(slots=True)
class _Findings:
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _check_tables(inspector: Inspector, findings: _Findings) -> set[str]:
    present = set(inspector.get_table_names())
    for table_name, required in REQUIRED_TABLES.items():
        if table_name not in present:
            findings.issues.append(f"MISSING_TABLE:{table_name}")
            continue

        reflected = {str(column["name"]): column["type"] for column in inspector.get_columns(table_name)}
        missing = sorted(column.name for column in required if column.name not in reflected)
        if missing:
            findings.issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing)}")

        for column in required:
            column_type = reflected.get(column.name)
            if column.family is None or column_type is None:
                continue
            if not isinstance(column_type, column.family):
                findings.issues.append(
                    f"COLUMN_TYPE_MISMATCH:{table_name}.{column.name}:{column_type.__class__.__name__}"
                )
    return present


def _check_data_scope_enum(inspector: Inspector, findings: _Findings) -> None:
    if inspector.dialect.name != "postgresql":
        # Only PostgreSQL stores the scope as a named enum type.
        findings.warnings.append("ENUM_INSPECTION_UNSUPPORTED")
        return

    labels: set[str] | None = None
    for enum_item in inspector.get_enums():  # type: ignore[attr-defined]
        if enum_item.get("name") == DATA_SCOPE_ENUM:
            labels = {str(label) for label in enum_item.get("labels") or []}
            break
    if labels is None:
        findings.issues.append(f"MISSING_ENUM:{DATA_SCOPE_ENUM}")
        return

    missing = sorted(scope.value for scope in DataScope if scope.value not in labels)
    if missing:
        findings.issues.append(f"MISSING_ENUM_VALUES:{DATA_SCOPE_ENUM}:{','.join(missing)}")


def _check_append_only_trigger(connection: Connection, findings: _Findings) -> None:
    if connection.dialect.name != "postgresql":
        findings.warnings.append("AUDIT_TRIGGER_CHECK_SKIPPED")
        return
    found = connection.execute(
        text("SELECT 1 FROM pg_trigger WHERE tgname = :name AND NOT tgisinternal"),
        {"name": APPEND_ONLY_TRIGGER},
    ).scalar()
    if found is None:
        findings.issues.append(f"MISSING_TRIGGER:{APPEND_ONLY_TRIGGER}")


def _read_alembic_version(connection: Connection, findings: _Findings) -> str | None:
    row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
    version = str(row).strip() if row is not None else ""
    if not version:
        findings.issues.append("ALEMBIC_VERSION_EMPTY")
        return None
    return version


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    findings = _Findings()
    checked_at_utc = datetime.now(timezone.utc)
    version: str | None = None

    try:
        with engine.connect() as connection:
            inspector = inspect(connection)
            present = _check_tables(inspector, findings)
            _check_data_scope_enum(inspector, findings)
            if "audit_logs" in present:
                _check_append_only_trigger(connection, findings)
            if "alembic_version" in present:
                version = _read_alembic_version(connection, findings)
    except SQLAlchemyError as exc:
        findings.issues.append(f"SCHEMA_INSPECTION_FAILED:{exc.__class__.__name__}")

    return SchemaGuardResult(
        ok=not findings.issues,
        checked_at_utc=checked_at_utc,
        issues=findings.issues,
        warnings=findings.warnings,
        alembic_version=version,
    )
