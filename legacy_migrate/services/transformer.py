"""Transformation engine: legacy records -> target-shaped entities."""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..catalog import canonical_status_code
from ..exceptions import TransformError
from ..models.migration import utc_now
from ..models.record import (
    LegacyRecord,
    NormalizedEntity,
    QuarantinedRecord,
    Severity,
    ValidationIssue,
)
from ..models.reference import LegacyRef, ReferenceKind, ResolvedReference
from ..models.schema import EntitySpec
from .normalizers import (
    build_extra_data,
    coerce_bool,
    coerce_decimal,
    coerce_int,
    map_gender,
    normalize_date,
    normalize_timestamp,
    sanitize_email,
    sanitize_string,
    slugify_key,
)
from .resolver import GenericReferenceResolver
from .state_log import StateEvent, StateTimeline

logger = logging.getLogger(__name__)

# Legacy-id map namespaces targets are found under
USERS = "profiles.legacy_user_id"
PATIENTS = "profiles.legacy_patient_id"
OFFICES = "offices.legacy_office_id"
ORDERS = "orders.legacy_instruction_id"
ORDER_TYPES = "order_types.legacy_course_id"
ORDER_STATES = "order_states.legacy_status_code"
MESSAGES = "messages.legacy_record_id"

PROJECT_TYPES = {
    1: "scan",
    2: "model",
    3: "impression",
    4: "xray",
    5: "photo",
    6: "treatment_plan",
    7: "aligner_design",
    8: "simulation",
    9: "document",
}

PROJECT_STATUSES = {
    0: "draft",
    1: "in_progress",
    2: "review",
    3: "approved",
    4: "archived",
    5: "deleted",
}

MIME_TYPES = {
    "scan": "model/stl",
    "model": "model/stl",
    "impression": "model/stl",
    "aligner_design": "model/stl",
    "xray": "image/jpeg",
    "photo": "image/jpeg",
    "treatment_plan": "application/pdf",
    "document": "application/pdf",
    "simulation": "video/mp4",
    "other": "application/octet-stream",
}

PRIORITIES = ("low", "normal", "high", "urgent")

# Checked in order; first match wins
MESSAGE_TYPE_KEYWORDS: List[Tuple[str, Tuple[str, ...]]] = [
    ("response", ("re:", "reply", "replied", "responding")),
    ("question", ("?", "question", "could you", "can you")),
    ("status_update", ("status", "update", "progress", "shipped")),
    ("instruction", ("please", "instruction", "make sure", "must")),
    ("notification", ("notice", "reminder", "fyi", "notification")),
]


def classify_message(subject: str, body: str) -> str:
    """Message type from keywords in the subject and body."""
    text = f"{subject} {body}".lower()
    for message_type, keywords in MESSAGE_TYPE_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return message_type
    return "general"


def project_number(legacy_id: int, created_at: datetime) -> str:
    return f"PRJ-{created_at:%Y%m}-{int(legacy_id):06d}"


def _ref(column: str, namespace: str, legacy_id: Any, required: bool = True) -> Optional[LegacyRef]:
    if legacy_id is None or legacy_id == "":
        return None
    return LegacyRef(column=column, namespace=namespace, legacy_id=legacy_id, required=required)


class TransformEngine:
    """
    Engine for transforming legacy records to target format.

    Supports:
    - One built-in transform per entity type
    - Defaults from the entity's field-resolution strategies
    - Fan-out of one record into several target rows

    Transforms are pure: they read the record, the resolved references and
    the folded state log, and never touch a database. Foreign keys are
    emitted as LegacyRef entries for the loader to resolve.
    """

    def __init__(
        self,
        resolver: Optional[GenericReferenceResolver] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the transform engine.

        Args:
            resolver: Resolver for generic (content type, object id) pairs
            clock: Source of "now" for default timestamps
        """
        self.resolver = resolver
        self.clock = clock
        self._builtin_transforms = self._register_builtin_transforms()

    def _register_builtin_transforms(self) -> Dict[str, Callable]:
        """Register all built-in transformation functions."""
        return {
            "order_types": self._transform_order_type,
            "order_states": self._transform_order_state,
            "profiles": self._transform_profile,
            "patients": self._transform_patient,
            "offices": self._transform_office,
            "orders": self._transform_order,
            "projects": self._transform_project,
            "workflow_templates": self._transform_workflow_template,
            "messages": self._transform_message,
            "states": self._transform_state,
        }

    def transform(
        self,
        record: LegacyRecord,
        spec: EntitySpec,
        references: Optional[Dict[str, ResolvedReference]] = None,
        timelines: Optional[Dict[int, StateTimeline]] = None,
    ) -> List[NormalizedEntity]:
        """
        Transform one validated record.

        Args:
            record: Validated legacy record
            spec: Entity spec of the record
            references: Resolved generic references keyed by type column
                (resolved here when omitted)
            timelines: Folded state log, required for the state entity

        Returns:
            Target-shaped entities, each carrying a legacy-id backlink

        Raises:
            TransformError: If the record cannot be mapped
        """
        if references is None:
            references = self.resolve_references(record, spec)

        transform_func = self._builtin_transforms.get(spec.name)
        if transform_func is None:
            raise TransformError(f"No transform registered for {spec.name}", entity_type=spec.name)
        return transform_func(record, spec, references, timelines)

    def transform_batch(
        self,
        records: List[LegacyRecord],
        spec: EntitySpec,
        timelines: Optional[Dict[int, StateTimeline]] = None,
    ) -> Tuple[List[NormalizedEntity], List[QuarantinedRecord]]:
        """
        Transform a batch, quarantining records whose transform fails.

        Returns:
            (entities, quarantined records)
        """
        entities: List[NormalizedEntity] = []
        quarantined: List[QuarantinedRecord] = []

        for record in records:
            try:
                entities.extend(self.transform(record, spec, timelines=timelines))
            except TransformError as e:
                logger.warning(f"{spec.name} {record.legacy_id}: {e.message}")
                quarantined.append(QuarantinedRecord(
                    entity_type=spec.name,
                    legacy_id=record.legacy_id,
                    stage="transform",
                    data=dict(record.data),
                    issues=[ValidationIssue(
                        record_legacy_id=record.legacy_id,
                        field_path=e.field_path,
                        message=e.message,
                        severity=Severity.ERROR,
                        code="transform",
                        stage="transform",
                    )],
                ))

        return entities, quarantined

    def resolve_references(self, record: LegacyRecord, spec: EntitySpec) -> Dict[str, ResolvedReference]:
        """Resolve the record's generic reference, if its entity type has one."""
        if not spec.generic_reference or self.resolver is None:
            return {}
        type_column, object_column = spec.generic_reference
        type_id = coerce_int(record.get(type_column))
        if type_id is None:
            return {}
        return {type_column: self.resolver.resolve(type_id, coerce_int(record.get(object_column)))}

    def state_event(self, record: LegacyRecord, spec: EntitySpec) -> StateEvent:
        """
        Build the state event of a state-log record.

        The order comes from the explicit instruction column, or else from a
        generic reference that resolves to an order.

        Raises:
            TransformError: If the event cannot be tied to an order
        """
        order_id = coerce_int(record.get("instruction_id"))
        if order_id is None:
            resolved = self.resolve_references(record, spec).get("content_type_id")
            if resolved is None or resolved.kind != ReferenceKind.ORDER:
                logical = resolved.logical_name if resolved else None
                raise TransformError(
                    f"State does not reference an order (content type {logical})",
                    field_path="content_type_id",
                    entity_type=spec.name,
                )
            order_id = resolved.object_id

        changed_at = normalize_timestamp(record.get("changed_at"))
        if changed_at is None:
            raise TransformError("State has no timestamp", field_path="changed_at", entity_type=spec.name)

        return StateEvent(
            legacy_id=int(record.legacy_id),
            order_legacy_id=int(order_id),
            status_code=coerce_int(record.get("status"), 0),
            changed_at=changed_at,
            actor_id=coerce_int(record.get("actor_id")),
            is_active=coerce_bool(record.get("on"), True),
        )

    # Field access

    def _value(self, record: LegacyRecord, spec: EntitySpec, name: str) -> Any:
        """Record value, or the documented default when the column is absent or null."""
        value = record.get(name)
        if value is not None:
            return value
        strategy = spec.strategy(name)
        if strategy is None:
            return None
        if strategy.default_now:
            return self.clock()
        return strategy.default

    def _timestamp(self, record: LegacyRecord, spec: EntitySpec, name: str) -> Optional[datetime]:
        try:
            return normalize_timestamp(self._value(record, spec, name))
        except ValueError as e:
            raise TransformError(str(e), field_path=name, entity_type=spec.name) from e

    def _audit(self, record: LegacyRecord, spec: EntitySpec) -> Dict[str, Any]:
        created_at = self._timestamp(record, spec, "created_at")
        updated_at = self._timestamp(record, spec, "updated_at") or created_at
        return {"created_at": created_at, "updated_at": updated_at}

    @staticmethod
    def _legacy_id(record: LegacyRecord) -> int:
        return int(record.legacy_id)

    # Reference data

    def _transform_order_type(self, record, spec, references, timelines) -> List[NormalizedEntity]:
        name = sanitize_string(self._value(record, spec, "name"), 255)
        key = slugify_key(name) or f"course_{record.legacy_id}"
        return [NormalizedEntity(
            entity_type=spec.name,
            target_table="order_types",
            legacy_id=record.legacy_id,
            backlinks={"legacy_course_id": self._legacy_id(record)},
            data={
                "name": name,
                "key": key,
                "description": sanitize_string(self._value(record, spec, "description")),
                "category": sanitize_string(self._value(record, spec, "category"), 50) or "general",
                "is_active": coerce_bool(self._value(record, spec, "is_active"), True),
                "extra_data": build_extra_data(legacy_name=record.get("name")),
                **self._audit(record, spec),
            },
        )]

    def _transform_order_state(self, record, spec, references, timelines) -> List[NormalizedEntity]:
        now = self.clock()
        return [NormalizedEntity(
            entity_type=spec.name,
            target_table="order_states",
            legacy_id=record.legacy_id,
            backlinks={"legacy_status_code": int(record.get("code"))},
            data={
                "key": record.get("key"),
                "name": record.get("name"),
                "sequence_order": coerce_int(self._value(record, spec, "sequence_order"), 0),
                "is_initial": coerce_bool(self._value(record, spec, "is_initial")),
                "is_final": coerce_bool(self._value(record, spec, "is_final")),
                "extra_data": {},
                "created_at": now,
                "updated_at": now,
            },
        )]

    # Parties

    def _transform_profile(self, record, spec, references, timelines) -> List[NormalizedEntity]:
        if coerce_bool(record.get("is_superuser")):
            profile_type = "master"
        elif coerce_bool(record.get("is_staff")):
            profile_type = "technician"
        else:
            profile_type = "client"

        warnings = []
        raw_email = sanitize_string(record.get("email"))
        email = sanitize_email(raw_email)
        if raw_email and email is None:
            warnings.append(f"Dropped malformed email {raw_email!r}")

        return [NormalizedEntity(
            entity_type=spec.name,
            target_table="profiles",
            legacy_id=record.legacy_id,
            backlinks={"legacy_user_id": self._legacy_id(record)},
            data={
                "profile_type": profile_type,
                "username": sanitize_string(record.get("username"), 150),
                "first_name": sanitize_string(self._value(record, spec, "first_name"), 150),
                "last_name": sanitize_string(self._value(record, spec, "last_name"), 150),
                "email": email,
                "country": "US",
                "is_active": coerce_bool(self._value(record, spec, "is_active"), True),
                "last_login": self._timestamp(record, spec, "last_login"),
                "extra_data": build_extra_data(
                    legacy_email=raw_email if raw_email and email is None else None,
                    is_staff=coerce_bool(record.get("is_staff")),
                    is_superuser=coerce_bool(record.get("is_superuser")),
                ),
                **self._audit(record, spec),
            },
            warnings=warnings,
        )]

    def _transform_patient(self, record, spec, references, timelines) -> List[NormalizedEntity]:
        user_id = coerce_int(record.get("user_id"))
        if user_id is None:
            raise TransformError("Patient has no user", field_path="user_id", entity_type=spec.name)

        warnings = []
        sex = record.get("sex")
        gender = map_gender(sex)
        if sex and gender is None:
            warnings.append(f"Unmapped sex value {sex!r}")

        try:
            birthdate = normalize_date(record.get("birthdate"))
        except ValueError as e:
            raise TransformError(str(e), field_path="birthdate", entity_type=spec.name) from e

        return [NormalizedEntity(
            entity_type=spec.name,
            target_table="profiles",
            legacy_id=record.legacy_id,
            backlinks={"legacy_patient_id": self._legacy_id(record), "legacy_user_id": user_id},
            match_on="legacy_user_id",
            update_only=True,
            data={
                "profile_type": "patient",
                "date_of_birth": birthdate,
                "gender": gender,
                "patient_status": coerce_int(self._value(record, spec, "status")),
                "updated_at": self._timestamp(record, spec, "updated_at"),
            },
            warnings=warnings,
        )]

    def _transform_office(self, record, spec, references, timelines) -> List[NormalizedEntity]:
        address = sanitize_string(self._value(record, spec, "address"))
        apt = sanitize_string(record.get("apt"))
        if apt:
            address = f"{address}, {apt}" if address else apt

        country = sanitize_string(self._value(record, spec, "country")).upper()
        if len(country) != 2 or not country.isalpha():
            country = "US"

        name = sanitize_string(self._value(record, spec, "name"), 255) or f"Office {record.legacy_id}"
        refs = [_ref("doctor_id", USERS, coerce_int(record.get("doctor_id")))]

        return [NormalizedEntity(
            entity_type=spec.name,
            target_table="offices",
            legacy_id=record.legacy_id,
            backlinks={"legacy_office_id": self._legacy_id(record)},
            data={
                "name": name,
                "address": address,
                "city": sanitize_string(self._value(record, spec, "city")),
                "state": sanitize_string(self._value(record, spec, "state")),
                "zip_code": sanitize_string(self._value(record, spec, "zip_code"), 20),
                "country": country,
                "phone": sanitize_string(self._value(record, spec, "phone"), 50),
                "email": sanitize_email(record.get("email")),
                "email_notifications": coerce_bool(self._value(record, spec, "email_notifications")),
                "is_active": coerce_bool(self._value(record, spec, "is_active"), True),
                "extra_data": build_extra_data(legacy_apt=apt or None),
                **self._audit(record, spec),
            },
            references=[r for r in refs if r],
        )]

    # Core

    def _transform_order(self, record, spec, references, timelines) -> List[NormalizedEntity]:
        legacy_id = self._legacy_id(record)
        status = coerce_int(self._value(record, spec, "status"))

        warnings = []
        priority = sanitize_string(self._value(record, spec, "priority")).lower() or "normal"
        if priority not in PRIORITIES:
            warnings.append(f"Unknown priority {priority!r}, using normal")
            priority = "normal"

        currency = sanitize_string(self._value(record, spec, "currency")).upper() or "USD"

        refs = [
            _ref("patient_id", PATIENTS, coerce_int(record.get("patient_id"))),
            _ref("order_type_id", ORDER_TYPES, coerce_int(record.get("course_id"))),
            _ref("doctor_id", USERS, coerce_int(record.get("doctor_id"))),
            _ref("office_id", OFFICES, coerce_int(record.get("office_id"))),
            _ref("current_state_id", ORDER_STATES, canonical_status_code(status)),
        ]

        return [NormalizedEntity(
            entity_type=spec.name,
            target_table="orders",
            legacy_id=record.legacy_id,
            backlinks={"legacy_instruction_id": legacy_id},
            data={
                "order_number": f"ORD-{legacy_id}",
                "description": sanitize_string(self._value(record, spec, "description")),
                "priority": priority,
                "total_amount": coerce_decimal(self._value(record, spec, "price")),
                "currency": currency,
                "due_date": self._timestamp(record, spec, "due_date"),
                "completed_at": self._timestamp(record, spec, "completed_at"),
                "extra_data": build_extra_data(legacy_status=status),
                **self._audit(record, spec),
            },
            references=[r for r in refs if r],
            warnings=warnings,
        )]

    def _transform_project(self, record, spec, references, timelines) -> List[NormalizedEntity]:
        legacy_id = self._legacy_id(record)
        audit = self._audit(record, spec)

        raw_type = coerce_int(self._value(record, spec, "project_type"), 0)
        project_type = PROJECT_TYPES.get(raw_type, "other")
        raw_status = coerce_int(self._value(record, spec, "status"), 0)
        status = PROJECT_STATUSES.get(raw_status, "draft")

        refs = [
            _ref("creator_id", USERS, coerce_int(record.get("creator_id"))),
            _ref("office_id", OFFICES, coerce_int(record.get("office_id"))),
            _ref("patient_id", PATIENTS, coerce_int(record.get("patient_id"))),
        ]

        return [NormalizedEntity(
            entity_type=spec.name,
            target_table="projects",
            legacy_id=record.legacy_id,
            backlinks={"legacy_project_id": legacy_id},
            data={
                "legacy_uid": sanitize_string(record.get("uid")) or None,
                "project_number": project_number(legacy_id, audit["created_at"]),
                "name": sanitize_string(self._value(record, spec, "name"), 255) or f"Project {legacy_id}",
                "project_type": project_type,
                "status": status,
                "mime_type": MIME_TYPES[project_type],
                "file_size": max(0, coerce_int(self._value(record, spec, "file_size"), 0)),
                "storage_bucket": "projects",
                "storage_path": sanitize_string(self._value(record, spec, "storage_path")),
                "is_public": coerce_bool(self._value(record, spec, "is_public")),
                "extra_data": build_extra_data(legacy_type=raw_type, legacy_status=raw_status),
                **audit,
            },
            references=[r for r in refs if r],
        )]

    def _transform_workflow_template(self, record, spec, references, timelines) -> List[NormalizedEntity]:
        duration = coerce_int(record.get("estimated_duration"))
        refs = [_ref("order_type_id", ORDER_TYPES, coerce_int(record.get("course_id")))]

        return [NormalizedEntity(
            entity_type=spec.name,
            target_table="workflow_templates",
            legacy_id=record.legacy_id,
            backlinks={"legacy_template_id": self._legacy_id(record)},
            data={
                "name": sanitize_string(record.get("task_name"), 255),
                "task_order": max(0, coerce_int(self._value(record, spec, "task_order"), 0)),
                "function_type": sanitize_string(self._value(record, spec, "function_type"), 50) or "manual",
                "action_name": sanitize_string(self._value(record, spec, "action_name")),
                "text_prompt": sanitize_string(self._value(record, spec, "text_prompt")),
                "estimated_duration_minutes": duration if duration is None or duration >= 0 else None,
                "is_predefined": coerce_bool(self._value(record, spec, "is_predefined")),
                "is_active": coerce_bool(self._value(record, spec, "is_active"), True),
                "extra_data": {},
                **self._audit(record, spec),
            },
            references=[r for r in refs if r],
        )]

    # Dependent

    def _transform_message(self, record, spec, references, timelines) -> List[NormalizedEntity]:
        resolved = references.get("content_type_id")
        if resolved is None:
            raise TransformError(
                "Message has no content type", field_path="content_type_id", entity_type=spec.name
            )

        subject = sanitize_string(self._value(record, spec, "subject"), 255)
        body = sanitize_string(self._value(record, spec, "text"))
        refs = [
            _ref("sender_id", USERS, coerce_int(record.get("author_id"))),
            _ref("recipient_id", USERS, coerce_int(record.get("recipient_id"))),
            # a parent later in the table is filled in once the table is loaded
            _ref("parent_message_id", MESSAGES, coerce_int(record.get("parent_id")), required=False),
        ]

        warnings = []
        extra = {
            "legacy_content_type_id": resolved.type_id,
            "legacy_object_id": resolved.object_id,
            "legacy_logical_name": resolved.logical_name,
        }
        if resolved.is_unknown:
            extra["needs_reconciliation"] = True
            warnings.append(f"Unknown content type {resolved.type_id}; kept for reconciliation")
        else:
            subject_ref = GenericReferenceResolver.to_legacy_ref(resolved)
            taken = {r.column for r in refs if r}
            if subject_ref and subject_ref.column not in taken:
                refs.append(subject_ref)

        return [NormalizedEntity(
            entity_type=spec.name,
            target_table="messages",
            legacy_id=record.legacy_id,
            backlinks={"legacy_record_id": self._legacy_id(record)},
            data={
                "reference_kind": resolved.kind.value,
                "subject": subject,
                "body": body,
                "message_type": classify_message(subject, body),
                "is_read": coerce_bool(self._value(record, spec, "is_read")),
                "requires_response": coerce_bool(self._value(record, spec, "requires_response")),
                "extra_data": build_extra_data(**extra),
                **self._audit(record, spec),
            },
            references=[r for r in refs if r],
            warnings=warnings,
        )]

    # State log

    def _transform_state(self, record, spec, references, timelines) -> List[NormalizedEntity]:
        event = self.state_event(record, spec)
        timeline = (timelines or {}).get(event.order_legacy_id)
        transition = timeline.transition_for(event.legacy_id) if timeline else None
        if transition is None:
            raise TransformError(
                f"State {event.legacy_id} missing from the folded log of order {event.order_legacy_id}",
                entity_type=spec.name,
            )

        order_ref = _ref("order_id", ORDERS, event.order_legacy_id)
        actor_ref = _ref("changed_by_id", USERS, event.actor_id)
        extra = build_extra_data(
            legacy_content_type_id=coerce_int(record.get("content_type_id")),
            legacy_object_id=coerce_int(record.get("object_id")),
        )

        entities = [
            NormalizedEntity(
                entity_type=spec.name,
                target_table="instruction_states",
                legacy_id=record.legacy_id,
                backlinks={"legacy_state_id": event.legacy_id},
                data={
                    "legacy_instruction_id": event.order_legacy_id,
                    "status_code": event.status_code,
                    "is_active": event.is_active,
                    "changed_at": event.changed_at,
                    "extra_data": extra,
                },
                references=[r for r in (order_ref, actor_ref) if r],
            ),
            NormalizedEntity(
                entity_type=spec.name,
                target_table="order_state_history",
                legacy_id=record.legacy_id,
                backlinks={"legacy_state_id": event.legacy_id},
                data={
                    "entered_at": transition.entered_at,
                    "exited_at": transition.exited_at,
                    "duration_minutes": transition.duration_minutes,
                    "extra_data": build_extra_data(legacy_status=event.status_code),
                    "created_at": event.changed_at,
                },
                references=[r for r in (
                    order_ref,
                    _ref("from_state_id", ORDER_STATES, transition.from_code),
                    _ref("to_state_id", ORDER_STATES, transition.to_code),
                    actor_ref,
                ) if r],
            ),
        ]

        if transition.is_current:
            entities.append(NormalizedEntity(
                entity_type=spec.name,
                target_table="orders",
                legacy_id=record.legacy_id,
                backlinks={"legacy_instruction_id": event.order_legacy_id},
                update_only=True,
                data={"updated_at": self.clock()},
                references=[_ref("current_state_id", ORDER_STATES, transition.to_code)],
            ))

        return entities
