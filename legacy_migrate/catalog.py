"""
Entity catalog for the dispatch schema.

Each entity type lists its canonical source columns as field-resolution
strategies (canonical name, then aliases seen in older schema versions, then a
documented default), the target tables it writes, and the entity types it
depends on. New source-schema variants are handled by adding aliases here.
"""

from typing import Dict, List, Optional

from .models.schema import (
    EntitySpec,
    FieldStrategy as F,
    ForeignKeySpec as FK,
    MigrationPhase,
    ParitySpec,
    TargetSpec,
    PHASE_ORDER,
)

CONTENT_TYPE_TABLE = "django_content_type"
RUN_LOG_TABLE = "migration_run_log"

# Reference data that has no source table. Legacy status codes 2 and 3 both
# meant "in progress", so only the canonical codes get a row.
DEFAULT_ORDER_STATES: List[Dict] = [
    {"code": 1, "key": "submitted", "name": "Submitted", "sequence_order": 1,
     "is_initial": True, "is_final": False},
    {"code": 2, "key": "in_progress", "name": "In Progress", "sequence_order": 2,
     "is_initial": False, "is_final": False},
    {"code": 4, "key": "completed", "name": "Completed", "sequence_order": 3,
     "is_initial": False, "is_final": True},
    {"code": 5, "key": "cancelled", "name": "Cancelled", "sequence_order": 4,
     "is_initial": False, "is_final": True},
]

STATUS_CODE_ALIASES: Dict[int, int] = {1: 1, 2: 2, 3: 2, 4: 4, 5: 5}
INITIAL_STATUS_CODE = 1


def canonical_status_code(code: Optional[int]) -> int:
    """Map a legacy status code onto the code of a default order state."""
    try:
        return STATUS_CODE_ALIASES.get(int(code), INITIAL_STATUS_CODE)
    except (TypeError, ValueError):
        return INITIAL_STATUS_CODE


def _audit_fields() -> List[F]:
    return [
        F("created_at", aliases=("created", "date_created", "submitted_at"), default_now=True),
        F("updated_at", aliases=("updated", "modified", "modified_at"), default_now=True),
    ]


def build_catalog() -> List[EntitySpec]:
    """Build the ordered list of entity specs for one run."""
    return [
        EntitySpec(
            name="order_types",
            phase=MigrationPhase.REFERENCE,
            source_table="dispatch_course",
            fields=[
                F("id", required=True),
                F("name", aliases=("title",), required=True),
                F("description", aliases=("details",), default=""),
                F("category", aliases=("type", "kind"), default="general"),
                F("is_active", aliases=("active", "enabled"), default=True),
            ] + _audit_fields(),
            targets=[TargetSpec("order_types", ("legacy_course_id",))],
            parity=ParitySpec("order_types", "legacy_course_id"),
            description="Courses become order types",
        ),
        EntitySpec(
            name="order_states",
            phase=MigrationPhase.REFERENCE,
            source_table=None,
            primary_key="code",
            fields=[
                F("code", required=True),
                F("key", required=True),
                F("name", required=True),
                F("sequence_order", default=0),
                F("is_initial", default=False),
                F("is_final", default=False),
            ],
            targets=[TargetSpec("order_states", ("legacy_status_code",))],
            description="Default order workflow states",
        ),
        EntitySpec(
            name="profiles",
            phase=MigrationPhase.PARTIES,
            source_table="auth_user",
            fields=[
                F("id", required=True),
                F("username", aliases=("login",), required=True),
                F("first_name", aliases=("firstname",), default=""),
                F("last_name", aliases=("lastname",), default=""),
                F("email", aliases=("email_address",), default=""),
                F("is_superuser", default=False),
                F("is_staff", default=False),
                F("is_active", aliases=("active",), default=True),
                F("last_login"),
                F("created_at", aliases=("date_joined", "created"), default_now=True),
                F("updated_at", aliases=("modified", "last_modified"), default_now=True),
            ],
            targets=[TargetSpec("profiles", ("legacy_user_id",))],
            parity=ParitySpec("profiles", "legacy_user_id"),
            description="Users become profiles",
        ),
        EntitySpec(
            name="offices",
            phase=MigrationPhase.PARTIES,
            source_table="dispatch_office",
            depends_on=["profiles"],
            fields=[
                F("id", required=True),
                F("name", aliases=("title", "office_name"), default=""),
                F("address", aliases=("address1", "street"), default=""),
                F("apt", aliases=("suite", "address2"), default=""),
                F("city", default=""),
                F("state", aliases=("region",), default=""),
                F("zip_code", aliases=("zip", "postal_code"), default=""),
                F("country", default="US"),
                F("phone", aliases=("phone_number",), default=""),
                F("email", default=""),
                F("email_notifications", aliases=("emails",), default=False),
                F("doctor_id", aliases=("user_id", "owner_id")),
                F("is_active", aliases=("active",), default=True),
            ] + _audit_fields(),
            targets=[TargetSpec(
                "offices", ("legacy_office_id",),
                foreign_keys=(FK("doctor_id", "profiles"),),
            )],
            parity=ParitySpec("offices", "legacy_office_id"),
            description="Doctor offices",
        ),
        EntitySpec(
            name="patients",
            phase=MigrationPhase.PARTIES,
            source_table="dispatch_patient",
            depends_on=["profiles"],
            fields=[
                F("id", required=True),
                F("user_id", required=True),
                F("birthdate", aliases=("birth_date", "date_of_birth")),
                F("sex", aliases=("gender",), default=""),
                F("doctor_id"),
                F("office_id", aliases=("practice_id",)),
                F("status", default=0),
            ] + _audit_fields(),
            targets=[TargetSpec("profiles", ("legacy_patient_id", "legacy_user_id"))],
            parity=ParitySpec("profiles", "legacy_patient_id"),
            description="Patients enrich the profile of their user",
        ),
        EntitySpec(
            name="orders",
            phase=MigrationPhase.CORE,
            source_table="dispatch_instruction",
            depends_on=["profiles", "patients", "offices", "order_types", "order_states"],
            fields=[
                F("id", required=True),
                F("patient_id", aliases=("case_id",), required=True),
                F("course_id", aliases=("order_type_id", "type_id"), required=True),
                F("doctor_id", aliases=("user_id", "creator_id")),
                F("office_id", aliases=("practice_id",)),
                F("status", aliases=("state",), default=INITIAL_STATUS_CODE),
                F("description", aliases=("notes", "text"), default=""),
                F("priority", default="normal"),
                F("price", aliases=("amount", "total"), default=0),
                F("currency", default="USD"),
                F("due_date", aliases=("deadline",)),
                F("completed_at", aliases=("finished_at",)),
            ] + _audit_fields(),
            targets=[TargetSpec(
                "orders", ("legacy_instruction_id",),
                foreign_keys=(
                    FK("patient_id", "profiles"),
                    FK("doctor_id", "profiles"),
                    FK("office_id", "offices"),
                    FK("order_type_id", "order_types"),
                    FK("current_state_id", "order_states"),
                ),
            )],
            parity=ParitySpec("orders", "legacy_instruction_id"),
            description="Instructions become orders",
        ),
        EntitySpec(
            name="projects",
            phase=MigrationPhase.CORE,
            source_table="dispatch_project",
            depends_on=["profiles", "patients", "offices"],
            fields=[
                F("id", required=True),
                F("uid", aliases=("uuid",)),
                F("name", aliases=("title",)),
                F("project_type", aliases=("type",), default=0),
                F("status", default=0),
                F("creator_id", aliases=("user_id",)),
                F("office_id", aliases=("practice_id",)),
                F("patient_id", aliases=("case_id",)),
                F("file_size", aliases=("size",), default=0),
                F("storage_path", aliases=("path", "file"), default=""),
                F("is_public", aliases=("public",), default=False),
            ] + _audit_fields(),
            targets=[TargetSpec(
                "projects", ("legacy_project_id",),
                foreign_keys=(
                    FK("creator_id", "profiles"),
                    FK("office_id", "offices"),
                    FK("patient_id", "profiles"),
                ),
            )],
            parity=ParitySpec("projects", "legacy_project_id"),
            description="Uploaded project files",
        ),
        EntitySpec(
            name="workflow_templates",
            phase=MigrationPhase.CORE,
            source_table="dispatch_template",
            depends_on=["order_types"],
            fields=[
                F("id", required=True),
                F("task_name", aliases=("name", "title"), required=True),
                F("course_id", aliases=("order_type_id",)),
                F("task_order", aliases=("order", "sequence"), default=0),
                F("function_type", aliases=("type",), default="manual"),
                F("action_name", aliases=("action",), default=""),
                F("text_prompt", aliases=("prompt", "description"), default=""),
                F("estimated_duration", aliases=("duration",)),
                F("is_predefined", aliases=("predefined",), default=False),
                F("is_active", aliases=("active",), default=True),
            ] + _audit_fields(),
            targets=[TargetSpec(
                "workflow_templates", ("legacy_template_id",),
                foreign_keys=(FK("order_type_id", "order_types"),),
            )],
            parity=ParitySpec("workflow_templates", "legacy_template_id"),
            description="Task templates per order type",
        ),
        EntitySpec(
            name="messages",
            phase=MigrationPhase.DEPENDENT,
            source_table="dispatch_record",
            depends_on=["profiles", "patients", "offices", "orders", "projects"],
            generic_reference=("content_type_id", "object_id"),
            fields=[
                F("id", required=True),
                F("content_type_id", required=True),
                F("object_id", required=True),
                F("author_id", aliases=("sender_id", "user_id"), required=True),
                F("recipient_id", aliases=("target_id",)),
                F("parent_id", aliases=("reply_to_id",)),
                F("subject", aliases=("title",), default=""),
                F("text", aliases=("body", "content", "message"), default=""),
                F("is_read", aliases=("read", "seen"), default=False),
                F("requires_response", default=False),
            ] + _audit_fields(),
            targets=[TargetSpec(
                "messages", ("legacy_record_id",),
                foreign_keys=(
                    FK("order_id", "orders"),
                    FK("project_id", "projects"),
                    FK("patient_id", "profiles"),
                    FK("office_id", "offices"),
                    FK("parent_message_id", "messages"),
                    FK("sender_id", "profiles"),
                    FK("recipient_id", "profiles"),
                ),
            )],
            parity=ParitySpec("messages", "legacy_record_id"),
            description="Generic records attached to any object",
        ),
        EntitySpec(
            name="states",
            phase=MigrationPhase.STATE_LOG,
            source_table="dispatch_state",
            depends_on=["orders", "order_states", "profiles"],
            generic_reference=("content_type_id", "object_id"),
            fields=[
                F("id", required=True),
                F("instruction_id", aliases=("order_id",)),
                F("content_type_id"),
                F("object_id"),
                F("status", aliases=("state", "status_code"), required=True),
                F("on", aliases=("is_active", "active"), default=True),
                F("changed_at", aliases=("created_at", "timestamp", "date"), required=True),
                F("actor_id", aliases=("user_id", "changed_by_id")),
            ],
            targets=[
                TargetSpec(
                    "instruction_states", ("legacy_state_id",),
                    foreign_keys=(
                        FK("order_id", "orders"),
                        FK("changed_by_id", "profiles"),
                    ),
                ),
                TargetSpec(
                    "order_state_history", ("legacy_state_id",),
                    foreign_keys=(
                        FK("order_id", "orders"),
                        FK("from_state_id", "order_states"),
                        FK("to_state_id", "order_states"),
                        FK("changed_by_id", "profiles"),
                    ),
                ),
            ],
            parity=ParitySpec("instruction_states", "legacy_state_id"),
            description="State-change log folded into order history",
        ),
    ]


def catalog_by_name(catalog: List[EntitySpec]) -> Dict[str, EntitySpec]:
    return {spec.name: spec for spec in catalog}


def entities_for_phase(catalog: List[EntitySpec], phase: MigrationPhase) -> List[EntitySpec]:
    return [spec for spec in catalog if spec.phase == phase]


def phases(catalog: List[EntitySpec]) -> List[MigrationPhase]:
    """Phases that have at least one entity type, in run order."""
    present = {spec.phase for spec in catalog}
    return [p for p in PHASE_ORDER if p in present]
