from __future__ import annotations

import logging
from collections import defaultdict, deque
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Literal

from sqlalchemy import ColumnElement, false, true

from backoffice.models import DataScope
from backoffice.services.permission_context import ModulePattern, PermissionContext

logger = logging.getLogger("backoffice.authz")

ScopeKind = Literal["unrestricted", "project", "org_departments", "owner", "nothing"]
CheckLogic = Literal["AND", "OR"]


@dataclass(frozen=True, slots=True)
class PermissionRequirement:
    module: str
    sub_module: str | None = None
    action: str | None = None


@dataclass(frozen=True, slots=True)
class RecordOwner:
    employee_id: int | None
    project_id: int | None = None
    org_department_id: int | None = None


class OrgTree:
    """Parent/child links between org departments, walked without trusting them to be acyclic."""

    def __init__(self, parent_links: Iterable[tuple[int, int | None]] = ()) -> None:
        self._children: dict[int, set[int]] = defaultdict(set)
        for department_id, parent_id in parent_links:
            if parent_id is not None and parent_id != department_id:
                self._children[parent_id].add(department_id)

    def descendants(self, root_id: int) -> frozenset[int]:
        found: set[int] = set()
        queue: deque[int] = deque([root_id])
        while queue:
            current = queue.popleft()
            for child in self._children.get(current, ()):
                if child == root_id or child in found:
                    continue
                found.add(child)
                queue.append(child)
        return frozenset(found)


@dataclass(frozen=True, slots=True)
class ScopeFilter:
    kind: ScopeKind
    employee_id: int
    project_id: int | None = None
    org_department_ids: frozenset[int] = frozenset()

    def to_clause(
        self,
        *,
        owner_column: Any,
        project_column: Any | None = None,
        org_department_column: Any | None = None,
    ) -> ColumnElement[bool]:
        """Render the restriction against the caller's table columns.

        A table without the project or org-department column falls back to the
        owner restriction.
        """
        if self.kind == "unrestricted":
            return true()
        if self.kind == "nothing":
            return false()
        if self.kind == "project" and project_column is not None:
            return project_column == self.project_id
        if self.kind == "org_departments" and org_department_column is not None:
            if len(self.org_department_ids) == 1:
                (only_id,) = tuple(self.org_department_ids)
                return org_department_column == only_id
            return org_department_column.in_(sorted(self.org_department_ids))
        return owner_column == self.employee_id

    def matches(self, owner: RecordOwner) -> bool:
        if self.kind == "unrestricted":
            return True
        if self.kind == "nothing":
            return False
        if self.kind == "project":
            return owner.project_id is not None and owner.project_id == self.project_id
        if self.kind == "org_departments":
            return owner.org_department_id is not None and owner.org_department_id in self.org_department_ids
        return owner.employee_id is not None and owner.employee_id == self.employee_id


def _report_malformed(ctx: Any, **fields: Any) -> None:
    logger.warning(
        "permission_shape_malformed",
        extra={"employee_id": getattr(ctx, "employee_id", None), **fields},
    )


def _as_action_set(ctx: Any, module: str, sub_module: str, raw: Any) -> frozenset[str] | None:
    if isinstance(raw, (set, frozenset, list, tuple)):
        return frozenset(item for item in raw if isinstance(item, str))
    _report_malformed(ctx, permission_module=module, sub_module=sub_module, value_type=type(raw).__name__)
    return None


def has_permission(
    ctx: PermissionContext | None,
    module: str,
    sub_module: str | None = None,
    action: str | None = None,
) -> bool:
    permissions = getattr(ctx, "permissions", None)
    if not isinstance(permissions, Mapping):
        if permissions is not None:
            _report_malformed(ctx, value_type=type(permissions).__name__)
        return False

    module_grants = permissions.get(module)
    if module_grants is None:
        return False
    if not isinstance(module_grants, Mapping):
        _report_malformed(ctx, permission_module=module, value_type=type(module_grants).__name__)
        return False
    if not sub_module:
        return True

    raw_actions = module_grants.get(sub_module)
    if raw_actions is None:
        return False
    actions = _as_action_set(ctx, module, sub_module, raw_actions)
    if not actions:
        return False
    if not action:
        return True
    return action in actions


def module_path(module: str, sub_module: str | None = None) -> str:
    return f"{module}.{sub_module}" if sub_module else module


@lru_cache(maxsize=1024)
def _module_pattern(entry: str) -> ModulePattern:
    return ModulePattern.parse(entry)


def is_module_allowed(ctx: PermissionContext | None, module: str) -> bool:
    if ctx is None:
        return False
    if getattr(ctx, "data_scope", None) == DataScope.ALL:
        return True

    allowed_modules = getattr(ctx, "allowed_modules", None)
    if isinstance(allowed_modules, str) or not isinstance(allowed_modules, Iterable):
        if allowed_modules is not None:
            _report_malformed(ctx, field="allowed_modules", value_type=type(allowed_modules).__name__)
        return False

    path = tuple(str(module or "").strip().split(".")) if module else ()
    if not path or not path[0]:
        return False

    for entry in allowed_modules:
        if not isinstance(entry, str):
            _report_malformed(ctx, field="allowed_modules", value_type=type(entry).__name__)
            continue
        if not entry.strip():
            continue
        if _module_pattern(entry).matches(path):
            return True
    return False


def is_granted(
    ctx: PermissionContext | None,
    module: str,
    sub_module: str | None = None,
    action: str | None = None,
) -> bool:
    """Module gate and action grant together; what an endpoint guard needs.

    The gate is checked on the dotted ``module.sub_module`` path so that an
    allowed entry such as ``hr.employee`` opens only that sub-module.
    """
    return is_module_allowed(ctx, module_path(module, sub_module)) and has_permission(
        ctx, module, sub_module, action
    )


def _as_requirement(item: PermissionRequirement | Sequence[str | None]) -> PermissionRequirement:
    if isinstance(item, PermissionRequirement):
        return item
    values = list(item) + [None, None]
    return PermissionRequirement(module=str(values[0]), sub_module=values[1], action=values[2])


def check_permissions(
    ctx: PermissionContext | None,
    requirements: Iterable[PermissionRequirement | Sequence[str | None]],
    logic: CheckLogic = "AND",
) -> bool:
    items = [_as_requirement(item) for item in requirements]
    if not items:
        return True
    results = (is_granted(ctx, req.module, req.sub_module, req.action) for req in items)
    if logic == "OR":
        return any(results)
    return all(results)


def check_permissions_detailed(
    ctx: PermissionContext | None,
    requirements: Iterable[PermissionRequirement | Sequence[str | None]],
) -> list[tuple[PermissionRequirement, bool]]:
    items = [_as_requirement(item) for item in requirements]
    return [(req, is_granted(ctx, req.module, req.sub_module, req.action)) for req in items]


def module_permissions(ctx: PermissionContext | None, module: str) -> Mapping[str, frozenset[str]] | None:
    permissions = getattr(ctx, "permissions", None)
    if not isinstance(permissions, Mapping):
        return None
    grants = permissions.get(module)
    if not isinstance(grants, Mapping):
        return None
    if is_module_allowed(ctx, module):
        return grants
    # Only some sub-modules may be reachable, e.g. ``hr.employee`` without ``hr.*``.
    reachable = {
        sub_module: actions
        for sub_module, actions in grants.items()
        if is_module_allowed(ctx, module_path(module, sub_module))
    }
    return reachable or None


def effective_permissions(ctx: PermissionContext | None) -> dict[str, Mapping[str, frozenset[str]]]:
    permissions = getattr(ctx, "permissions", None)
    if not isinstance(permissions, Mapping):
        return {}
    result: dict[str, Mapping[str, frozenset[str]]] = {}
    for module in permissions:
        grants = module_permissions(ctx, module)
        if grants is not None:
            result[module] = grants
    return result


def scope_to_filter(ctx: PermissionContext, org_tree: OrgTree | None = None) -> ScopeFilter:
    data_scope = getattr(ctx, "data_scope", DataScope.SELF)
    if data_scope == DataScope.ALL:
        return ScopeFilter(kind="unrestricted", employee_id=ctx.employee_id)

    if data_scope == DataScope.PROJECT:
        if ctx.project_id is None:
            return ScopeFilter(kind="nothing", employee_id=ctx.employee_id)
        return ScopeFilter(kind="project", employee_id=ctx.employee_id, project_id=ctx.project_id)

    if data_scope == DataScope.GROUP:
        if ctx.org_department_id is None:
            return ScopeFilter(kind="nothing", employee_id=ctx.employee_id)
        department_ids = {ctx.org_department_id}
        if ctx.can_manage_subordinates and org_tree is not None:
            department_ids |= org_tree.descendants(ctx.org_department_id)
        return ScopeFilter(
            kind="org_departments",
            employee_id=ctx.employee_id,
            org_department_ids=frozenset(department_ids),
        )

    # Subordinate management never widens the self scope.
    return ScopeFilter(kind="owner", employee_id=ctx.employee_id)


def can_access_employee(
    ctx: PermissionContext,
    target: RecordOwner,
    org_tree: OrgTree | None = None,
) -> bool:
    if target.employee_id is not None and target.employee_id == ctx.employee_id:
        return True
    return scope_to_filter(ctx, org_tree).matches(target)


def can_approve(
    ctx: PermissionContext,
    applicant: RecordOwner,
    org_tree: OrgTree | None = None,
) -> bool:
    if not ctx.can_manage_subordinates:
        return False
    if applicant.employee_id is None or applicant.employee_id == ctx.employee_id:
        return False
    return scope_to_filter(ctx, org_tree).matches(applicant)
