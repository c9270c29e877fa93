# tests/conftest.py
"""
Pytest configuration and fixtures for the migration test suite.

Provides:
- A legacy source database (SQLite file) seeded with a small dispatch dataset
- An empty target database built from tests/target_schema.py
- A run configuration with retries but no backoff
"""

from typing import Any, Dict, List

import pytest
from sqlalchemy import create_engine, text

from legacy_migrate.context import LegacyIdMap
from legacy_migrate.models.migration import MigrationConfig
from legacy_migrate.services.content_types import ContentTypeRegistry
from legacy_migrate.services.schema_prober import SchemaProber
from tests.target_schema import metadata as target_metadata


# ============== Legacy source ==============

LEGACY_DDL = [
    """CREATE TABLE django_content_type (
        id INTEGER PRIMARY KEY, app_label VARCHAR(100), model VARCHAR(100))""",
    # older schema version: title/details/created instead of name/description/created_at
    """CREATE TABLE dispatch_course (
        id INTEGER PRIMARY KEY, title VARCHAR(255), details TEXT, active BOOLEAN, created DATETIME)""",
    """CREATE TABLE auth_user (
        id INTEGER PRIMARY KEY, username VARCHAR(150), first_name VARCHAR(150),
        last_name VARCHAR(150), email VARCHAR(254), is_superuser BOOLEAN, is_staff BOOLEAN,
        is_active BOOLEAN, last_login DATETIME, date_joined DATETIME)""",
    """CREATE TABLE dispatch_office (
        id INTEGER PRIMARY KEY, name VARCHAR(255), address VARCHAR(255), apt VARCHAR(50),
        city VARCHAR(100), state VARCHAR(100), zip VARCHAR(20), country VARCHAR(2),
        phone VARCHAR(50), email VARCHAR(254), emails BOOLEAN, user_id INTEGER,
        created DATETIME, modified DATETIME)""",
    """CREATE TABLE dispatch_patient (
        id INTEGER PRIMARY KEY, user_id INTEGER, birthdate DATE, sex VARCHAR(10),
        doctor_id INTEGER, office_id INTEGER, status INTEGER, created DATETIME)""",
    """CREATE TABLE dispatch_instruction (
        id INTEGER PRIMARY KEY, patient_id INTEGER, course_id INTEGER, doctor_id INTEGER,
        office_id INTEGER, status INTEGER, description TEXT, priority VARCHAR(10),
        price NUMERIC(12, 2), currency VARCHAR(3), due_date DATETIME, created DATETIME)""",
    """CREATE TABLE dispatch_project (
        id INTEGER PRIMARY KEY, uid VARCHAR(64), name VARCHAR(255), type INTEGER,
        status INTEGER, creator_id INTEGER, office_id INTEGER, patient_id INTEGER,
        size INTEGER, path VARCHAR(255), public BOOLEAN, created DATETIME)""",
    """CREATE TABLE dispatch_template (
        id INTEGER PRIMARY KEY, task_name VARCHAR(255), course_id INTEGER, task_order INTEGER,
        function_type VARCHAR(50), action_name VARCHAR(255), text_prompt TEXT,
        estimated_duration INTEGER, is_predefined BOOLEAN, is_active BOOLEAN)""",
    """CREATE TABLE dispatch_record (
        id INTEGER PRIMARY KEY, content_type_id INTEGER, object_id INTEGER, author_id INTEGER,
        recipient_id INTEGER, parent_id INTEGER, subject VARCHAR(255), text TEXT,
        is_read BOOLEAN, requires_response BOOLEAN, created DATETIME)""",
    """CREATE TABLE dispatch_state (
        id INTEGER PRIMARY KEY, instruction_id INTEGER, content_type_id INTEGER,
        object_id INTEGER, status INTEGER, is_active BOOLEAN, changed_at DATETIME,
        actor_id INTEGER)""",
]

CONTENT_TYPES = [
    {"id": 1, "app_label": "auth", "model": "user"},
    {"id": 2, "app_label": "dispatch", "model": "patient"},
    {"id": 3, "app_label": "dispatch", "model": "office"},
    {"id": 4, "app_label": "dispatch", "model": "project"},
    {"id": 5, "app_label": "dispatch", "model": "instruction"},
    {"id": 6, "app_label": "dispatch", "model": "record"},
]


def legacy_rows() -> Dict[str, List[Dict[str, Any]]]:
    """Seed data for a clean legacy database."""
    return {
        "django_content_type": list(CONTENT_TYPES),
        "dispatch_course": [
            {"id": 1, "title": "Clear Aligners", "details": "Full arch", "active": 1,
             "created": "2019-03-01 09:00:00"},
            {"id": 2, "title": "Night Guard", "details": None, "active": 0,
             "created": "2019-04-01 09:00:00"},
        ],
        "auth_user": [
            {"id": 1, "username": "admin", "first_name": "Ada", "last_name": "Admin",
             "email": "admin@example.com", "is_superuser": 1, "is_staff": 1, "is_active": 1,
             "last_login": "2021-01-01 10:00:00", "date_joined": "2018-01-01 00:00:00"},
            {"id": 2, "username": "drsmith", "first_name": "John", "last_name": "Smith",
             "email": "Smith@Clinic.com", "is_superuser": 0, "is_staff": 0, "is_active": 1,
             "last_login": None, "date_joined": "2018-02-01 00:00:00"},
            {"id": 3, "username": "tech1", "first_name": "Tina", "last_name": "Tech",
             "email": "tina@lab.com", "is_superuser": 0, "is_staff": 1, "is_active": 1,
             "last_login": None, "date_joined": "2018-03-01 00:00:00"},
            {"id": 4, "username": "patient_a", "first_name": "Pat", "last_name": "A",
             "email": "pat.a@mail.com", "is_superuser": 0, "is_staff": 0, "is_active": 1,
             "last_login": None, "date_joined": "2019-01-01 00:00:00"},
            {"id": 5, "username": "patient_b", "first_name": "Pat", "last_name": "B",
             "email": "", "is_superuser": 0, "is_staff": 0, "is_active": 1,
             "last_login": None, "date_joined": "2019-01-02 00:00:00"},
            {"id": 6, "username": "legacy_user", "first_name": "", "last_name": "",
             "email": "not-an-email", "is_superuser": 0, "is_staff": 0, "is_active": 0,
             "last_login": None, "date_joined": "2017-06-01 00:00:00"},
        ],
        "dispatch_office": [
            {"id": 100, "name": "Downtown Dental", "address": "1 Main St", "apt": "Suite 2",
             "city": "Springfield", "state": "IL", "zip": "62701", "country": "us",
             "phone": "555-0100", "email": "office@clinic.com", "emails": 1, "user_id": 2,
             "created": "2018-05-01 00:00:00", "modified": None},
        ],
        "dispatch_patient": [
            {"id": 10, "user_id": 4, "birthdate": "1990-05-01", "sex": "F", "doctor_id": 2,
             "office_id": 100, "status": 1, "created": "2019-01-05 00:00:00"},
            {"id": 11, "user_id": 5, "birthdate": "1985-11-20", "sex": "m", "doctor_id": 2,
             "office_id": 100, "status": 1, "created": "2019-01-06 00:00:00"},
        ],
        "dispatch_instruction": [
            {"id": 500, "patient_id": 10, "course_id": 1, "doctor_id": 2, "office_id": 100,
             "status": 3, "description": "Upper and lower", "priority": "high", "price": 1200.5,
             "currency": "usd", "due_date": "2020-03-01 00:00:00", "created": "2020-01-01 08:00:00"},
            {"id": 501, "patient_id": 11, "course_id": 2, "doctor_id": 2, "office_id": 100,
             "status": 1, "description": "", "priority": "rush", "price": None,
             "currency": None, "due_date": None, "created": "2020-02-01 08:00:00"},
            {"id": 502, "patient_id": 10, "course_id": 1, "doctor_id": 2, "office_id": None,
             "status": 4, "description": "Refinement", "priority": None, "price": 300,
             "currency": "USD", "due_date": None, "created": "2020-06-01 08:00:00"},
        ],
        "dispatch_project": [
            {"id": 700, "uid": "a1b2", "name": "Initial scan", "type": 1, "status": 1,
             "creator_id": 2, "office_id": 100, "patient_id": 10, "size": 2048,
             "path": "scans/a1b2.stl", "public": 0, "created": "2020-01-02 00:00:00"},
        ],
        "dispatch_template": [
            {"id": 1, "task_name": "Scan upload", "course_id": 1, "task_order": 1,
             "function_type": "upload", "action_name": "upload_scan", "text_prompt": "",
             "estimated_duration": 30, "is_predefined": 1, "is_active": 1},
            {"id": 2, "task_name": "Design", "course_id": 1, "task_order": 2,
             "function_type": None, "action_name": None, "text_prompt": None,
             "estimated_duration": None, "is_predefined": 0, "is_active": 1},
        ],
        "dispatch_record": [
            {"id": 900, "content_type_id": 5, "object_id": 500, "author_id": 2, "recipient_id": 3,
             "parent_id": None, "subject": "Scan", "text": "Please check the scan",
             "is_read": 1, "requires_response": 1, "created": "2020-01-03 00:00:00"},
            {"id": 901, "content_type_id": 5, "object_id": 500, "author_id": 3, "recipient_id": 2,
             "parent_id": 900, "subject": "Re: Scan", "text": "Looks good",
             "is_read": 0, "requires_response": 0, "created": "2020-01-04 00:00:00"},
            {"id": 902, "content_type_id": 2, "object_id": 10, "author_id": 2, "recipient_id": None,
             "parent_id": None, "subject": "Reminder", "text": "Appointment reminder",
             "is_read": 0, "requires_response": 0, "created": "2020-01-05 00:00:00"},
            {"id": 903, "content_type_id": 3, "object_id": 100, "author_id": 1, "recipient_id": 2,
             "parent_id": None, "subject": "Office hours", "text": "Status of the office",
             "is_read": 0, "requires_response": 0, "created": "2020-01-06 00:00:00"},
            {"id": 904, "content_type_id": 4, "object_id": 700, "author_id": 3, "recipient_id": None,
             "parent_id": None, "subject": "", "text": "Uploaded",
             "is_read": 0, "requires_response": 0, "created": "2020-01-07 00:00:00"},
            {"id": 905, "content_type_id": 99, "object_id": 1, "author_id": 1, "recipient_id": None,
             "parent_id": None, "subject": "Orphan", "text": "Unknown target",
             "is_read": 0, "requires_response": 0, "created": "2020-01-08 00:00:00"},
        ],
        "dispatch_state": [
            {"id": 1000, "instruction_id": 500, "content_type_id": None, "object_id": None,
             "status": 1, "is_active": 1, "changed_at": "2020-01-01 08:00:00", "actor_id": 2},
            {"id": 1001, "instruction_id": 500, "content_type_id": None, "object_id": None,
             "status": 2, "is_active": 1, "changed_at": "2020-01-02 08:00:00", "actor_id": 3},
            {"id": 1002, "instruction_id": 500, "content_type_id": None, "object_id": None,
             "status": 3, "is_active": 1, "changed_at": "2020-01-02 09:30:00", "actor_id": 3},
            {"id": 1003, "instruction_id": None, "content_type_id": 5, "object_id": 501,
             "status": 1, "is_active": 1, "changed_at": "2020-02-01 08:00:00", "actor_id": 2},
            {"id": 1004, "instruction_id": 502, "content_type_id": None, "object_id": None,
             "status": 1, "is_active": 1, "changed_at": "2020-06-01 08:00:00", "actor_id": 2},
            {"id": 1005, "instruction_id": 502, "content_type_id": None, "object_id": None,
             "status": 4, "is_active": 1, "changed_at": "2020-06-10 08:00:00", "actor_id": 3},
        ],
    }


def build_legacy_database(engine, rows: Dict[str, List[Dict[str, Any]]] = None, ddl: List[str] = None):
    """Create the legacy tables and insert rows."""
    rows = legacy_rows() if rows is None else rows
    with engine.begin() as conn:
        for statement in ddl or LEGACY_DDL:
            conn.execute(text(statement))
        for table_name, table_rows in rows.items():
            if not table_rows:
                continue
            columns = list(table_rows[0])
            placeholders = ", ".join(f":{c}" for c in columns)
            conn.execute(
                text(f"INSERT INTO {table_name} ({', '.join(columns)}) VALUES ({placeholders})"),
                table_rows,
            )
    return engine


# ============== Fixtures ==============

@pytest.fixture
def source_url(tmp_path):
    return f"sqlite:///{tmp_path / 'legacy.db'}"


@pytest.fixture
def target_url(tmp_path):
    return f"sqlite:///{tmp_path / 'target.db'}"


@pytest.fixture
def empty_source_engine(source_url):
    engine = create_engine(source_url)
    yield engine
    engine.dispose()


@pytest.fixture
def source_engine(empty_source_engine):
    return build_legacy_database(empty_source_engine)


@pytest.fixture
def target_engine(target_url):
    engine = create_engine(target_url)
    target_metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def config(source_url, target_url, tmp_path):
    return MigrationConfig(
        name="test-run",
        source_url=source_url,
        target_url=target_url,
        batch_size=3,
        max_retries=2,
        retry_backoff_ms=0,
        retry_max_backoff_ms=0,
        output_dir=str(tmp_path / "output"),
    )


@pytest.fixture
def prober(source_engine):
    return SchemaProber(source_engine)


@pytest.fixture
def registry(source_engine, prober):
    registry = ContentTypeRegistry(prober)
    with source_engine.connect() as conn:
        registry.load(conn)
    return registry


@pytest.fixture
def id_map():
    return LegacyIdMap()
