from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from backoffice.models import DataScope, PositionLevel

PermissionGrants = dict[str, dict[str, list[str]]]


class PositionRefRead(BaseModel):
    id: int
    code: str
    name: str


class PermissionContextRead(BaseModel):
    employee_id: int
    position: PositionRefRead | None = None
    permissions: PermissionGrants = Field(default_factory=dict)
    data_scope: DataScope
    can_manage_subordinates: bool
    allowed_modules: list[str] = Field(default_factory=list)
    project_id: int | None = None
    org_department_id: int | None = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PositionBase(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    level: PositionLevel = PositionLevel.GROUP
    function_role: str | None = Field(default=None, max_length=64)
    data_scope: DataScope = DataScope.SELF
    can_manage_subordinates: bool = False
    permissions: PermissionGrants = Field(default_factory=dict)
    allowed_modules: list[str] = Field(default_factory=list)
    description: str | None = None
    sort_order: int = 0

    @field_validator("allowed_modules")
    @classmethod
    def strip_allowed_modules(cls, value: list[str]) -> list[str]:
        cleaned: list[str] = []
        for item in value:
            entry = item.strip()
            if entry and entry not in cleaned:
                cleaned.append(entry)
        return cleaned


class PositionCreate(PositionBase):
    code: str = Field(min_length=1, max_length=64)


class PositionUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    level: PositionLevel | None = None
    function_role: str | None = Field(default=None, max_length=64)
    data_scope: DataScope | None = None
    can_manage_subordinates: bool | None = None
    permissions: PermissionGrants | None = None
    allowed_modules: list[str] | None = None
    description: str | None = None
    sort_order: int | None = None
    is_active: bool | None = None


class PositionRead(BaseModel):
    id: int
    code: str
    name: str
    level: int
    function_role: str | None = None
    data_scope: DataScope
    can_manage_subordinates: bool
    permissions: dict[str, Any] = Field(default_factory=dict)
    allowed_modules: list[str] = Field(default_factory=list)
    description: str | None = None
    sort_order: int
    is_active: bool
    employee_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class BulkGrantRequest(BaseModel):
    position_ids: list[int] = Field(min_length=1)
    module: str = Field(min_length=1, max_length=64)
    sub_module: str = Field(min_length=1, max_length=64)
    actions: list[str] = Field(min_length=1)
    mode: Literal["grant", "revoke"] = "grant"


class BulkGrantResponse(BaseModel):
    ok: bool
    updated_position_ids: list[int]
    invalidated_contexts: int


class EmployeePositionAssignRequest(BaseModel):
    position_id: int | None = Field(default=None, ge=1)
    project_id: int | None = Field(default=None, ge=1)
    org_department_id: int | None = Field(default=None, ge=1)


class EmployeePositionRead(BaseModel):
    id: int
    full_name: str
    position_id: int | None
    project_id: int | None
    org_department_id: int | None
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class SoftDeleteResponse(BaseModel):
    ok: bool
    id: int


class AuditLogRead(BaseModel):
    id: int
    at: datetime
    actor_id: str
    actor_name: str | None = None
    actor_email: str | None = None
    action: str
    entity: str
    entity_id: str | None = None
    detail: dict[str, Any] = Field(default_factory=dict)
    ip: str | None = None
    ip_location: str | None = None
    user_agent: str | None = None
    request_id: str | None = None

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    items: list[AuditLogRead]
    total: int
    limit: int
    offset: int


class AuditActorOption(BaseModel):
    id: str
    name: str | None = None


class AuditLogOptions(BaseModel):
    actions: list[str]
    entities: list[str]
    actors: list[AuditActorOption]
