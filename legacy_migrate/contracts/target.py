"""Target-shaped contracts, checked right before a row is loaded."""

from datetime import date
from decimal import Decimal
from typing import Annotated, Any, Dict, Literal, Optional, Tuple, Type
from uuid import UUID

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, JsonValue, model_validator

EMAIL_PATTERN = r"^[a-z0-9._%+-]+@[a-z0-9.-]+\.[a-z]{2,}$"

BacklinkId = Annotated[int, Field(gt=0)]
ExtraData = Dict[str, JsonValue]
Email = Optional[Annotated[str, Field(pattern=EMAIL_PATTERN, max_length=254)]]

ProfileType = Literal["master", "technician", "client", "patient"]
ProjectType = Literal[
    "scan", "model", "impression", "xray", "photo", "treatment_plan",
    "aligner_design", "simulation", "document", "other",
]
ProjectStatus = Literal["draft", "in_progress", "review", "approved", "archived", "deleted"]
Priority = Literal["low", "normal", "high", "urgent"]
ReferenceKindName = Literal["patient", "office", "order", "project", "message", "unknown"]


class TargetContract(BaseModel):
    """Base for target contracts; unknown columns are rejected."""
    model_config = ConfigDict(extra="forbid")


class _Timestamps(TargetContract):
    extra_data: ExtraData = Field(default_factory=dict)
    created_at: AwareDatetime
    updated_at: AwareDatetime


class OrderTypeRow(_Timestamps):
    legacy_course_id: BacklinkId
    name: Annotated[str, Field(min_length=1, max_length=255)]
    key: Annotated[str, Field(pattern=r"^[a-z0-9_]{1,50}$")]
    description: str = ""
    category: str = "general"
    is_active: bool = True


class OrderStateRow(_Timestamps):
    legacy_status_code: BacklinkId
    key: Annotated[str, Field(pattern=r"^[a-z_]{1,50}$")]
    name: Annotated[str, Field(min_length=1, max_length=100)]
    sequence_order: Annotated[int, Field(ge=0)]
    is_initial: bool
    is_final: bool


class ProfileRow(_Timestamps):
    legacy_user_id: BacklinkId
    profile_type: ProfileType
    username: Annotated[str, Field(min_length=1, max_length=150)]
    first_name: Annotated[str, Field(max_length=150)] = ""
    last_name: Annotated[str, Field(max_length=150)] = ""
    email: Email = None
    country: Annotated[str, Field(pattern=r"^[A-Z]{2}$")] = "US"
    is_active: bool = True
    last_login: Optional[AwareDatetime] = None


class PatientProfileUpdate(TargetContract):
    legacy_user_id: BacklinkId
    legacy_patient_id: BacklinkId
    profile_type: Literal["patient"]
    date_of_birth: Optional[date] = None
    gender: Optional[Literal["male", "female", "other"]] = None
    patient_status: Optional[int] = None
    updated_at: AwareDatetime


class OfficeRow(_Timestamps):
    legacy_office_id: BacklinkId
    name: Annotated[str, Field(max_length=255)]
    address: str = ""
    city: str = ""
    state: str = ""
    zip_code: Annotated[str, Field(max_length=20)] = ""
    country: Annotated[str, Field(pattern=r"^[A-Z]{2}$")] = "US"
    phone: Annotated[str, Field(max_length=50)] = ""
    email: Email = None
    email_notifications: bool = False
    is_active: bool = True
    doctor_id: Optional[UUID] = None


class OrderRow(_Timestamps):
    legacy_instruction_id: BacklinkId
    order_number: Annotated[str, Field(pattern=r"^ORD-\d+$")]
    description: str = ""
    priority: Priority = "normal"
    total_amount: Annotated[Decimal, Field(ge=0)] = Decimal("0")
    currency: Annotated[str, Field(pattern=r"^[A-Z]{3}$")] = "USD"
    due_date: Optional[AwareDatetime] = None
    completed_at: Optional[AwareDatetime] = None
    patient_id: Optional[UUID] = None
    doctor_id: Optional[UUID] = None
    office_id: Optional[UUID] = None
    order_type_id: Optional[UUID] = None
    current_state_id: Optional[UUID] = None


class OrderCurrentStateUpdate(TargetContract):
    legacy_instruction_id: BacklinkId
    current_state_id: Optional[UUID] = None
    updated_at: AwareDatetime


class ProjectRow(_Timestamps):
    legacy_project_id: BacklinkId
    legacy_uid: Optional[str] = None
    project_number: Annotated[str, Field(pattern=r"^PRJ-\d{6}-\d{6}$")]
    name: Annotated[str, Field(min_length=1, max_length=255)]
    project_type: ProjectType
    status: ProjectStatus
    mime_type: str
    file_size: Annotated[int, Field(ge=0)] = 0
    storage_bucket: str = "projects"
    storage_path: str = ""
    is_public: bool = False
    creator_id: Optional[UUID] = None
    office_id: Optional[UUID] = None
    patient_id: Optional[UUID] = None


class WorkflowTemplateRow(_Timestamps):
    legacy_template_id: BacklinkId
    name: Annotated[str, Field(min_length=1, max_length=255)]
    order_type_id: Optional[UUID] = None
    task_order: Annotated[int, Field(ge=0)] = 0
    function_type: str = "manual"
    action_name: str = ""
    text_prompt: str = ""
    estimated_duration_minutes: Optional[Annotated[int, Field(ge=0)]] = None
    is_predefined: bool = False
    is_active: bool = True


MESSAGE_SUBJECT_COLUMNS: Tuple[str, ...] = (
    "order_id", "project_id", "patient_id", "office_id",
)


class MessageRow(_Timestamps):
    legacy_record_id: BacklinkId
    reference_kind: ReferenceKindName
    subject: str = ""
    body: str = ""
    message_type: str = "general"
    is_read: bool = False
    requires_response: bool = False
    order_id: Optional[UUID] = None
    project_id: Optional[UUID] = None
    patient_id: Optional[UUID] = None
    office_id: Optional[UUID] = None
    parent_message_id: Optional[UUID] = None
    sender_id: Optional[UUID] = None
    recipient_id: Optional[UUID] = None

    @model_validator(mode="after")
    def at_most_one_subject(self) -> "MessageRow":
        present = [c for c in MESSAGE_SUBJECT_COLUMNS if getattr(self, c) is not None]
        if len(present) > 1:
            raise ValueError(f"message points at more than one object: {present}")
        return self


class InstructionStateRow(TargetContract):
    legacy_state_id: BacklinkId
    legacy_instruction_id: Optional[int] = None
    order_id: Optional[UUID] = None
    status_code: int
    is_active: bool = True
    changed_by_id: Optional[UUID] = None
    changed_at: AwareDatetime
    extra_data: ExtraData = Field(default_factory=dict)


class StateHistoryRow(TargetContract):
    legacy_state_id: BacklinkId
    order_id: Optional[UUID] = None
    from_state_id: Optional[UUID] = None
    to_state_id: Optional[UUID] = None
    changed_by_id: Optional[UUID] = None
    entered_at: AwareDatetime
    exited_at: Optional[AwareDatetime] = None
    duration_minutes: Optional[Annotated[int, Field(ge=0)]] = None
    extra_data: ExtraData = Field(default_factory=dict)
    created_at: AwareDatetime

    @model_validator(mode="after")
    def exit_after_entry(self) -> "StateHistoryRow":
        if self.exited_at is not None and self.exited_at < self.entered_at:
            raise ValueError("exited_at is before entered_at")
        return self


# (entity type, target table) -> contract
TARGET_CONTRACTS: Dict[Tuple[str, str], Type[BaseModel]] = {
    ("order_types", "order_types"): OrderTypeRow,
    ("order_states", "order_states"): OrderStateRow,
    ("profiles", "profiles"): ProfileRow,
    ("patients", "profiles"): PatientProfileUpdate,
    ("offices", "offices"): OfficeRow,
    ("orders", "orders"): OrderRow,
    ("projects", "projects"): ProjectRow,
    ("workflow_templates", "workflow_templates"): WorkflowTemplateRow,
    ("messages", "messages"): MessageRow,
    ("states", "instruction_states"): InstructionStateRow,
    ("states", "order_state_history"): StateHistoryRow,
    ("states", "orders"): OrderCurrentStateUpdate,
}


def contract_fields(contract: Type[BaseModel]) -> Dict[str, Any]:
    """Field name -> annotation, for reports."""
    return {name: str(info.annotation) for name, info in contract.model_fields.items()}
