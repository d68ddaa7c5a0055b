from __future__ import annotations

import enum
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from backoffice.models import DataScope

logger = logging.getLogger("backoffice.authz")

ActionSet = frozenset[str]
PermissionMap = Mapping[str, Mapping[str, ActionSet]]

ALL_MODULES = "*"
WILDCARD_SUFFIX = ".*"


class PermissionAction(str, enum.Enum):
    VIEW = "view"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    APPROVE = "approve"
    REJECT = "reject"
    EXPORT = "export"
    REVERSE = "reverse"
    PAY = "pay"
    ALLOCATE = "allocate"
    VIEW_SENSITIVE = "view_sensitive"
    ASSIGN = "assign"
    REVIEW = "review"
    MANAGE = "manage"


class PermissionModule(str, enum.Enum):
    FINANCE = "finance"
    HR = "hr"
    ASSET = "asset"
    SITE = "site"
    REPORT = "report"
    SYSTEM = "system"
    PM = "pm"
    SELF = "self"


@dataclass(frozen=True, slots=True)
class SubModuleDefinition:
    label: str
    actions: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class ModuleDefinition:
    label: str
    sub_modules: Mapping[str, SubModuleDefinition] = field(default_factory=dict)


def _sub(label: str, *actions: PermissionAction) -> SubModuleDefinition:
    return SubModuleDefinition(label=label, actions=tuple(action.value for action in actions))


A = PermissionAction

PERMISSION_MODULES: Mapping[str, ModuleDefinition] = MappingProxyType(
    {
        PermissionModule.FINANCE.value: ModuleDefinition(
            label="Finance",
            sub_modules={
                "flow": _sub("Cash flows", A.VIEW, A.CREATE, A.UPDATE, A.DELETE, A.EXPORT, A.REVERSE),
                "transfer": _sub("Account transfers", A.VIEW, A.CREATE),
                "ar": _sub("Receivables", A.VIEW, A.CREATE, A.UPDATE, A.DELETE),
                "ap": _sub("Payables", A.VIEW, A.CREATE, A.UPDATE, A.DELETE),
                "salary": _sub("Salary payments", A.VIEW, A.CREATE, A.UPDATE, A.PAY),
                "allowance": _sub("Allowance payments", A.VIEW, A.CREATE, A.PAY),
                "site_bill": _sub("Site bills", A.VIEW, A.CREATE, A.UPDATE),
                "borrowing": _sub("Borrowings", A.VIEW, A.CREATE, A.APPROVE, A.REJECT),
            },
        ),
        PermissionModule.HR.value: ModuleDefinition(
            label="Human resources",
            sub_modules={
                "employee": _sub("Employees", A.VIEW, A.CREATE, A.UPDATE, A.DELETE, A.VIEW_SENSITIVE),
                "salary": _sub("Salaries", A.VIEW, A.CREATE),
                "leave": _sub("Leave requests", A.VIEW, A.CREATE, A.UPDATE, A.DELETE, A.APPROVE, A.REJECT),
                "reimbursement": _sub(
                    "Expense reimbursements", A.VIEW, A.CREATE, A.UPDATE, A.DELETE, A.APPROVE, A.REJECT
                ),
            },
        ),
        PermissionModule.ASSET.value: ModuleDefinition(
            label="Assets",
            sub_modules={
                "fixed": _sub("Fixed assets", A.VIEW, A.CREATE, A.UPDATE, A.DELETE, A.ALLOCATE),
                "rental": _sub("Rentals", A.VIEW, A.CREATE, A.UPDATE, A.DELETE),
            },
        ),
        PermissionModule.SITE.value: ModuleDefinition(
            label="Sites",
            sub_modules={
                "info": _sub("Site records", A.VIEW, A.CREATE, A.UPDATE, A.DELETE),
                "bill": _sub("Site bills", A.VIEW, A.CREATE, A.UPDATE, A.DELETE),
            },
        ),
        PermissionModule.REPORT.value: ModuleDefinition(
            label="Reports",
            sub_modules={
                "view": _sub("Overview", A.VIEW),
                "finance": _sub("Finance reports", A.VIEW, A.EXPORT),
                "salary": _sub("Salary reports", A.VIEW, A.EXPORT),
                "hr": _sub("HR reports", A.VIEW, A.EXPORT),
                "asset": _sub("Asset reports", A.VIEW, A.EXPORT),
                "export": _sub("Export center", A.EXPORT),
            },
        ),
        PermissionModule.SYSTEM.value: ModuleDefinition(
            label="System",
            sub_modules={
                "user": _sub("Users", A.VIEW, A.CREATE, A.UPDATE, A.DELETE),
                "position": _sub("Positions", A.VIEW, A.CREATE, A.UPDATE, A.DELETE),
                "department": _sub("Departments", A.VIEW, A.CREATE, A.UPDATE, A.DELETE),
                "account": _sub("Accounts", A.VIEW, A.CREATE, A.UPDATE, A.DELETE),
                "category": _sub("Categories", A.VIEW, A.CREATE, A.UPDATE, A.DELETE),
                "currency": _sub("Currencies", A.VIEW, A.CREATE, A.UPDATE, A.DELETE),
                "headquarters": _sub("Headquarters", A.VIEW, A.CREATE, A.UPDATE, A.DELETE),
                "vendor": _sub("Vendors", A.VIEW, A.CREATE, A.UPDATE, A.DELETE),
                "audit": _sub("Audit logs", A.VIEW, A.EXPORT),
                "config": _sub("System configuration", A.VIEW, A.UPDATE),
                "site_config": _sub("Site configuration (legacy)", A.MANAGE),
            },
        ),
        PermissionModule.PM.value: ModuleDefinition(
            label="Project management",
            sub_modules={
                "project": _sub("Projects", A.VIEW, A.CREATE, A.UPDATE, A.DELETE),
                "requirement": _sub("Requirements", A.VIEW, A.CREATE, A.UPDATE, A.DELETE, A.REVIEW, A.ASSIGN),
                "task": _sub("Tasks", A.VIEW, A.CREATE, A.UPDATE, A.DELETE, A.ASSIGN),
                "timelog": _sub("Time logs", A.VIEW, A.CREATE, A.UPDATE, A.DELETE),
                "milestone": _sub("Milestones", A.VIEW, A.CREATE, A.UPDATE, A.DELETE),
                "report": _sub("Progress reports", A.VIEW, A.EXPORT),
            },
        ),
        PermissionModule.SELF.value: ModuleDefinition(
            label="My workspace",
            sub_modules={
                "leave": _sub("My leave", A.VIEW, A.CREATE),
                "reimbursement": _sub("My reimbursements", A.VIEW, A.CREATE),
                "salary": _sub("My salary", A.VIEW),
                "asset": _sub("My assets", A.VIEW),
                "task": _sub("My tasks", A.VIEW, A.UPDATE),
                "timelog": _sub("My time logs", A.VIEW, A.CREATE, A.UPDATE),
            },
        ),
    }
)

DATA_SCOPE_LABELS: Mapping[DataScope, str] = MappingProxyType(
    {
        DataScope.ALL: "Headquarters (all records)",
        DataScope.PROJECT: "Project (own project records)",
        DataScope.GROUP: "Group (own group records)",
        DataScope.SELF: "Personal (own records only)",
    }
)


@dataclass(frozen=True, slots=True)
class PermissionDiff:
    added: dict[str, dict[str, list[str]]]
    removed: dict[str, dict[str, list[str]]]
    changed: dict[str, dict[str, dict[str, list[str]]]]

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.changed)

    def to_dict(self) -> dict[str, Any]:
        return {"added": self.added, "removed": self.removed, "changed": self.changed}


def coerce_data_scope(raw: Any) -> DataScope:
    if isinstance(raw, DataScope):
        return raw
    try:
        return DataScope(str(raw).strip().lower())
    except ValueError:
        logger.warning("permission_data_scope_invalid", extra={"raw_data_scope": str(raw)})
        return DataScope.SELF


def _coerce_action_set(module: str, sub_module: str, raw: Any) -> ActionSet | None:
    if isinstance(raw, (str, bytes)) or not isinstance(raw, Iterable) or isinstance(raw, Mapping):
        logger.warning(
            "permission_shape_malformed",
            extra={"permission_module": module, "sub_module": sub_module, "value_type": type(raw).__name__},
        )
        return None
    actions = frozenset(str(item).strip() for item in raw if isinstance(item, str) and item.strip())
    return actions


def normalize_permission_map(raw: Any) -> PermissionMap:
    """Turn the stored JSON grant document into a read-only typed map.

    Anything that is not ``{module: {sub_module: [action, ...]}}`` is dropped and
    reported; a dropped level is a denial for every lookup below it.
    """
    if raw is None:
        return MappingProxyType({})
    if not isinstance(raw, Mapping):
        logger.warning("permission_shape_malformed", extra={"value_type": type(raw).__name__})
        return MappingProxyType({})

    normalized: dict[str, Mapping[str, ActionSet]] = {}
    for module, sub_modules in raw.items():
        module_name = str(module).strip()
        if not module_name:
            continue
        if not isinstance(sub_modules, Mapping):
            logger.warning(
                "permission_shape_malformed",
                extra={"permission_module": module_name, "value_type": type(sub_modules).__name__},
            )
            continue
        module_grants: dict[str, ActionSet] = {}
        for sub_module, actions in sub_modules.items():
            sub_module_name = str(sub_module).strip()
            if not sub_module_name:
                continue
            action_set = _coerce_action_set(module_name, sub_module_name, actions)
            if action_set is None:
                continue
            module_grants[sub_module_name] = action_set
        normalized[module_name] = MappingProxyType(module_grants)
    return MappingProxyType(normalized)


def normalize_allowed_modules(raw: Any) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str) or not isinstance(raw, Iterable):
        logger.warning("allowed_modules_malformed", extra={"value_type": type(raw).__name__})
        return ()
    seen: list[str] = []
    for item in raw:
        if not isinstance(item, str):
            continue
        value = item.strip()
        if value and value not in seen:
            seen.append(value)
    return tuple(seen)


def permission_map_to_json(permissions: PermissionMap) -> dict[str, dict[str, list[str]]]:
    return {
        module: {sub_module: sorted(actions) for sub_module, actions in sub_modules.items()}
        for module, sub_modules in permissions.items()
    }


def validate_permission_map(permissions: PermissionMap) -> list[str]:
    """Return ``module.sub_module.action`` keys that the catalog does not define."""
    unknown: list[str] = []
    for module, sub_modules in permissions.items():
        module_definition = PERMISSION_MODULES.get(module)
        if module_definition is None:
            unknown.append(module)
            continue
        for sub_module, actions in sub_modules.items():
            sub_definition = module_definition.sub_modules.get(sub_module)
            if sub_definition is None:
                unknown.append(f"{module}.{sub_module}")
                continue
            for action in sorted(actions):
                if action not in sub_definition.actions:
                    unknown.append(f"{module}.{sub_module}.{action}")
    return unknown


def diff_permissions(before: Any, after: Any) -> PermissionDiff:
    before_map = permission_map_to_json(normalize_permission_map(before))
    after_map = permission_map_to_json(normalize_permission_map(after))

    added: dict[str, dict[str, list[str]]] = {}
    removed: dict[str, dict[str, list[str]]] = {}
    changed: dict[str, dict[str, dict[str, list[str]]]] = {}

    for module in sorted(set(before_map) | set(after_map)):
        if module not in before_map:
            added[module] = after_map[module]
            continue
        if module not in after_map:
            removed[module] = before_map[module]
            continue
        before_module = before_map[module]
        after_module = after_map[module]
        for sub_module in sorted(set(before_module) | set(after_module)):
            old_actions = before_module.get(sub_module)
            new_actions = after_module.get(sub_module)
            if old_actions == new_actions:
                continue
            if old_actions is None:
                added.setdefault(module, {})[sub_module] = new_actions or []
            elif new_actions is None:
                removed.setdefault(module, {})[sub_module] = old_actions
            else:
                changed.setdefault(module, {})[sub_module] = {"before": old_actions, "after": new_actions}

    return PermissionDiff(added=added, removed=removed, changed=changed)


def catalog_payload() -> dict[str, Any]:
    return {
        "modules": {
            module: {
                "label": definition.label,
                "sub_modules": {
                    name: {"label": sub.label, "actions": list(sub.actions)}
                    for name, sub in definition.sub_modules.items()
                },
            }
            for module, definition in PERMISSION_MODULES.items()
        },
        "data_scopes": {scope.value: label for scope, label in DATA_SCOPE_LABELS.items()},
        "actions": [action.value for action in PermissionAction],
    }
