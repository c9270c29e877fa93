"""Source-shaped contracts, one per legacy table.

Optional columns default to None: a column the extractor could not find is
simply absent, and the transformer supplies the documented default.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Annotated, Dict, Optional, Type

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from ..services.normalizers import normalize_date, normalize_timestamp


def _parse_timestamp(value):
    try:
        return normalize_timestamp(value)
    except ValueError:
        return value  # let pydantic report the original value


def _parse_date(value):
    try:
        return normalize_date(value)
    except ValueError:
        return value


LegacyDateTime = Annotated[Optional[datetime], BeforeValidator(_parse_timestamp)]
LegacyDate = Annotated[Optional[date], BeforeValidator(_parse_date)]
LegacyId = Annotated[int, Field(gt=0)]
OptionalId = Optional[Annotated[int, Field(gt=0)]]


class LegacyContract(BaseModel):
    """Base for source contracts."""
    model_config = ConfigDict(
        extra="allow",
        coerce_numbers_to_str=True,
        str_strip_whitespace=True,
    )

    id: LegacyId


class _Audited(LegacyContract):
    created_at: LegacyDateTime = None
    updated_at: LegacyDateTime = None


class LegacyCourse(_Audited):
    name: Annotated[str, Field(min_length=1, max_length=255)]
    description: Optional[str] = None
    category: Optional[str] = None
    is_active: Optional[bool] = None


class LegacyOrderState(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: int
    key: Annotated[str, Field(min_length=1)]
    name: Annotated[str, Field(min_length=1)]
    sequence_order: int = 0
    is_initial: bool = False
    is_final: bool = False


class LegacyUser(_Audited):
    username: Annotated[str, Field(min_length=1, max_length=150)]
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    is_superuser: Optional[bool] = None
    is_staff: Optional[bool] = None
    is_active: Optional[bool] = None
    last_login: LegacyDateTime = None


class LegacyOffice(_Audited):
    name: Optional[str] = None
    address: Optional[str] = None
    apt: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    email_notifications: Optional[bool] = None
    doctor_id: OptionalId = None
    is_active: Optional[bool] = None


class LegacyPatient(_Audited):
    user_id: LegacyId
    birthdate: LegacyDate = None
    sex: Optional[str] = None
    doctor_id: OptionalId = None
    office_id: OptionalId = None
    status: Optional[int] = None

    @field_validator("birthdate")
    @classmethod
    def birthdate_not_in_future(cls, value: Optional[date]) -> Optional[date]:
        if value is not None and value > datetime.now(timezone.utc).date():
            raise ValueError("birthdate is in the future")
        return value


class LegacyInstruction(_Audited):
    patient_id: LegacyId
    course_id: LegacyId
    doctor_id: OptionalId = None
    office_id: OptionalId = None
    status: Optional[int] = None
    description: Optional[str] = None
    priority: Optional[str] = None
    price: Optional[Annotated[Decimal, Field(ge=0)]] = None
    currency: Optional[Annotated[str, Field(min_length=3, max_length=3)]] = None
    due_date: LegacyDateTime = None
    completed_at: LegacyDateTime = None


class LegacyProject(_Audited):
    uid: Optional[str] = None
    name: Optional[str] = None
    project_type: Optional[int] = None
    status: Optional[int] = None
    creator_id: OptionalId = None
    office_id: OptionalId = None
    patient_id: OptionalId = None
    file_size: Optional[Annotated[int, Field(ge=0)]] = None
    storage_path: Optional[str] = None
    is_public: Optional[bool] = None


class LegacyTemplate(_Audited):
    task_name: Annotated[str, Field(min_length=1, max_length=255)]
    course_id: OptionalId = None
    task_order: Optional[int] = None
    function_type: Optional[str] = None
    action_name: Optional[str] = None
    text_prompt: Optional[str] = None
    estimated_duration: Optional[Annotated[int, Field(ge=0)]] = None
    is_predefined: Optional[bool] = None
    is_active: Optional[bool] = None


class LegacyMessage(_Audited):
    content_type_id: LegacyId
    object_id: LegacyId
    author_id: LegacyId
    recipient_id: OptionalId = None
    parent_id: OptionalId = None
    subject: Optional[str] = None
    text: Optional[str] = None
    is_read: Optional[bool] = None
    requires_response: Optional[bool] = None


class LegacyState(LegacyContract):
    instruction_id: OptionalId = None
    content_type_id: OptionalId = None
    object_id: OptionalId = None
    status: int
    on: Optional[bool] = None
    changed_at: Annotated[datetime, BeforeValidator(_parse_timestamp)]
    actor_id: OptionalId = None

    @model_validator(mode="after")
    def has_order_reference(self) -> "LegacyState":
        if self.instruction_id is None and (self.content_type_id is None or self.object_id is None):
            raise ValueError("state needs instruction_id or a content_type_id/object_id pair")
        return self


LEGACY_CONTRACTS: Dict[str, Type[BaseModel]] = {
    "order_types": LegacyCourse,
    "order_states": LegacyOrderState,
    "profiles": LegacyUser,
    "offices": LegacyOffice,
    "patients": LegacyPatient,
    "orders": LegacyInstruction,
    "projects": LegacyProject,
    "workflow_templates": LegacyTemplate,
    "messages": LegacyMessage,
    "states": LegacyState,
}
