#!/usr/bin/env python
from __future__ import annotations

import json
from typing import Any

from sqlalchemy import select

from backoffice.db import SessionLocal
from backoffice.models import DataScope, Position, PositionLevel
from backoffice.services.permission_catalog import (
    PERMISSION_MODULES,
    normalize_permission_map,
    permission_map_to_json,
    validate_permission_map,
)

SELF_SERVICE: dict[str, list[str]] = {
    "leave": ["view", "create"],
    "reimbursement": ["view", "create"],
    "salary": ["view"],
    "asset": ["view"],
    "task": ["view", "update"],
    "timelog": ["view", "create", "update"],
}


def _full_grants() -> dict[str, dict[str, list[str]]]:
    return {
        module: {name: list(sub.actions) for name, sub in definition.sub_modules.items()}
        for module, definition in PERMISSION_MODULES.items()
    }


def _view_only(*modules: str) -> dict[str, dict[str, list[str]]]:
    grants: dict[str, dict[str, list[str]]] = {}
    for module in modules:
        definition = PERMISSION_MODULES[module]
        grants[module] = {name: ["view"] for name, sub in definition.sub_modules.items() if "view" in sub.actions}
    return grants


DEFAULT_POSITIONS: list[dict[str, Any]] = [
    {
        "code": "hq_manager",
        "name": "Headquarters director",
        "level": PositionLevel.HEADQUARTERS,
        "function_role": "admin",
        "data_scope": DataScope.ALL,
        "can_manage_subordinates": True,
        "permissions": _full_grants(),
        "allowed_modules": ["*"],
        "sort_order": 10,
    },
    {
        "code": "hq_staff",
        "name": "Headquarters staff",
        "level": PositionLevel.HEADQUARTERS,
        "function_role": "finance",
        "data_scope": DataScope.ALL,
        "can_manage_subordinates": False,
        "permissions": {
            **_view_only("finance", "hr", "asset", "report"),
            "finance": {
                "flow": ["view", "create", "update", "export"],
                "transfer": ["view", "create"],
                "ar": ["view", "create", "update"],
                "ap": ["view", "create", "update"],
            },
            "self": SELF_SERVICE,
        },
        "allowed_modules": ["finance.*", "hr.*", "asset.*", "report.*", "self.*"],
        "sort_order": 20,
    },
    {
        "code": "project_manager",
        "name": "Project manager",
        "level": PositionLevel.PROJECT,
        "function_role": "project",
        "data_scope": DataScope.PROJECT,
        "can_manage_subordinates": True,
        "permissions": {
            "hr": {
                "employee": ["view", "update"],
                "leave": ["view", "approve", "reject"],
                "reimbursement": ["view", "approve", "reject"],
            },
            "site": {"info": ["view", "update"], "bill": ["view", "create", "update"]},
            "pm": {
                "project": ["view", "update"],
                "task": ["view", "create", "update", "assign"],
                "milestone": ["view", "create", "update"],
                "report": ["view", "export"],
            },
            "report": {"view": ["view"]},
            "self": SELF_SERVICE,
        },
        "allowed_modules": ["hr.*", "site.*", "pm.*", "report.view", "self.*"],
        "sort_order": 30,
    },
    {
        "code": "project_staff",
        "name": "Project staff",
        "level": PositionLevel.PROJECT,
        "function_role": "project",
        "data_scope": DataScope.PROJECT,
        "can_manage_subordinates": False,
        "permissions": {
            "site": {"info": ["view"], "bill": ["view", "create"]},
            "pm": {"project": ["view"], "task": ["view", "update"], "timelog": ["view", "create"]},
            "self": SELF_SERVICE,
        },
        "allowed_modules": ["site.*", "pm.*", "self.*"],
        "sort_order": 40,
    },
    {
        "code": "team_leader",
        "name": "Group leader",
        "level": PositionLevel.GROUP,
        "function_role": "group",
        "data_scope": DataScope.GROUP,
        "can_manage_subordinates": True,
        "permissions": {
            "hr": {"employee": ["view"], "leave": ["view", "approve", "reject"]},
            "pm": {"task": ["view", "create", "update", "assign"], "timelog": ["view"]},
            "self": SELF_SERVICE,
        },
        "allowed_modules": ["hr.employee", "hr.leave", "pm.*", "self.*"],
        "sort_order": 50,
    },
    {
        "code": "team_engineer",
        "name": "Engineer",
        "level": PositionLevel.GROUP,
        "function_role": "engineer",
        "data_scope": DataScope.SELF,
        "can_manage_subordinates": False,
        "permissions": {"self": SELF_SERVICE},
        "allowed_modules": ["self.*"],
        "sort_order": 60,
    },
]


def run() -> dict[str, Any]:
    created: list[str] = []
    updated: list[str] = []
    with SessionLocal() as db:
        for item in DEFAULT_POSITIONS:
            grants = normalize_permission_map(item["permissions"])
            unknown = validate_permission_map(grants)
            if unknown:
                raise RuntimeError(f"{item['code']}: unknown grants {unknown}")

            values = {
                "name": item["name"],
                "level": int(item["level"]),
                "function_role": item["function_role"],
                "data_scope": item["data_scope"],
                "can_manage_subordinates": item["can_manage_subordinates"],
                "permissions": permission_map_to_json(grants),
                "allowed_modules": list(item["allowed_modules"]),
                "sort_order": item["sort_order"],
                "is_active": True,
            }
            position = db.scalar(select(Position).where(Position.code == item["code"]))
            if position is None:
                db.add(Position(code=item["code"], **values))
                created.append(item["code"])
                continue
            for key, value in values.items():
                setattr(position, key, value)
            updated.append(item["code"])
        db.commit()

    return {"created": created, "updated": updated}


if __name__ == "__main__":
    print(json.dumps(run(), ensure_ascii=False, indent=2))
