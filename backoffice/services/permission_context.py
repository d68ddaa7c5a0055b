from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from backoffice.models import DataScope
from backoffice.services.permission_catalog import (
    ALL_MODULES,
    WILDCARD_SUFFIX,
    PermissionMap,
    coerce_data_scope,
    normalize_allowed_modules,
    normalize_permission_map,
    permission_map_to_json,
)


@dataclass(frozen=True, slots=True)
class PositionRef:
    id: int
    code: str
    name: str


@dataclass(frozen=True, slots=True)
class ModulePattern:
    """A parsed ``allowedModules`` entry.

    ``segments`` is the dotted prefix the module path must start with; ``None``
    means the entry was the lone ``*`` and matches every module.
    """

    source: str
    segments: tuple[str, ...] | None

    @classmethod
    def parse(cls, entry: str) -> ModulePattern:
        value = entry.strip()
        if value == ALL_MODULES:
            return cls(source=value, segments=None)
        if value.endswith(WILDCARD_SUFFIX):
            value = value[: -len(WILDCARD_SUFFIX)]
        return cls(source=entry, segments=tuple(value.split(".")))

    def matches(self, module_path: tuple[str, ...]) -> bool:
        if self.segments is None:
            return True
        width = len(self.segments)
        return len(module_path) >= width and module_path[:width] == self.segments


@dataclass(frozen=True, slots=True)
class PermissionContext:
    employee_id: int
    position: PositionRef | None
    permissions: PermissionMap
    data_scope: DataScope
    can_manage_subordinates: bool
    allowed_modules: tuple[str, ...]
    project_id: int | None
    org_department_id: int | None

    @classmethod
    def build(
        cls,
        *,
        employee_id: int,
        position: PositionRef | None,
        permissions: Any,
        data_scope: Any,
        can_manage_subordinates: bool,
        allowed_modules: Any,
        project_id: int | None,
        org_department_id: int | None,
    ) -> PermissionContext:
        return cls(
            employee_id=employee_id,
            position=position,
            permissions=normalize_permission_map(permissions),
            data_scope=coerce_data_scope(data_scope),
            can_manage_subordinates=bool(can_manage_subordinates),
            allowed_modules=normalize_allowed_modules(allowed_modules),
            project_id=project_id,
            org_department_id=org_department_id,
        )

    @classmethod
    def deny_all(
        cls,
        employee_id: int,
        *,
        project_id: int | None = None,
        org_department_id: int | None = None,
    ) -> PermissionContext:
        return cls(
            employee_id=employee_id,
            position=None,
            permissions=MappingProxyType({}),
            data_scope=DataScope.SELF,
            can_manage_subordinates=False,
            allowed_modules=(),
            project_id=project_id,
            org_department_id=org_department_id,
        )

    @property
    def is_deny_all(self) -> bool:
        return self.position is None

    def to_dict(self) -> dict[str, Any]:
        position = None
        if self.position is not None:
            position = {"id": self.position.id, "code": self.position.code, "name": self.position.name}
        return {
            "employee_id": self.employee_id,
            "position": position,
            "permissions": permission_map_to_json(self.permissions),
            "data_scope": self.data_scope.value,
            "can_manage_subordinates": self.can_manage_subordinates,
            "allowed_modules": list(self.allowed_modules),
            "project_id": self.project_id,
            "org_department_id": self.org_department_id,
        }
