#!/usr/bin/env python
from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, text

from backoffice.settings import get_settings

ROOT_DIR = Path(__file__).resolve().parents[1]


def expected_head() -> str | None:
    config = Config(str(ROOT_DIR / "alembic.ini"))
    config.set_main_option("script_location", str(ROOT_DIR / "backoffice" / "migrations"))
    return ScriptDirectory.from_config(config).get_current_head()


def run() -> dict:
    engine = create_engine(get_settings().database_url)
    report: dict = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "database_url": engine.url.render_as_string(hide_password=True),
        "checks": [],
    }

    def add(name: str, status: str, details: dict) -> None:
        report["checks"].append(
            {
                "name": name,
                "status": status,
                "details": details,
            }
        )

    head = expected_head()
    with engine.connect() as conn:
        tables = set(
            conn.execute(
                text(
                    """
                    select table_name
                    from information_schema.tables
                    where table_schema='public'
                    """
                )
            ).scalars()
        )

        current_versions: list[str] = []
        if "alembic_version" in tables:
            current_versions = [
                row[0]
                for row in conn.execute(text("select version_num from alembic_version")).fetchall()
            ]
        add("alembic_version", "ok" if current_versions else "fail", {"current": current_versions})
        add(
            "migration_up_to_date",
            "ok" if head in current_versions else "warn",
            {"expected_head": head, "current": current_versions},
        )

        required = ["projects", "org_departments", "positions", "employees", "audit_logs"]
        missing = [table for table in required if table not in tables]
        add("missing_tables", "fail" if missing else "ok", {"missing": missing})
        if missing:
            return report

        # These employees resolve to the deny-all context.
        without_position = conn.execute(
            text(
                """
                select e.id
                from employees e
                left join positions p on p.id = e.position_id
                where e.is_active = true
                  and (p.id is null or p.is_active = false)
                limit 20
                """
            )
        ).fetchall()
        add(
            "active_employees_without_active_position",
            "warn" if without_position else "ok",
            {"sample_ids": [row[0] for row in without_position]},
        )

        empty_grants = conn.execute(
            text(
                """
                select code
                from positions
                where is_active = true
                  and permissions = '{}'::jsonb
                """
            )
        ).fetchall()
        add(
            "active_positions_with_empty_grants",
            "warn" if empty_grants else "ok",
            {"codes": [row[0] for row in empty_grants]},
        )

        unscoped = conn.execute(
            text(
                """
                select e.id
                from employees e
                join positions p on p.id = e.position_id
                where e.is_active = true
                  and ((p.data_scope = 'project' and e.project_id is null)
                    or (p.data_scope = 'group' and e.org_department_id is null))
                limit 20
                """
            )
        ).fetchall()
        add(
            "scoped_employees_missing_placement",
            "warn" if unscoped else "ok",
            {"sample_ids": [row[0] for row in unscoped]},
        )

    return report


if __name__ == "__main__":
    print(json.dumps(run(), ensure_ascii=False, indent=2))
