# tests/test_orchestrator.py
"""End-to-end tests: a seeded legacy database migrated into an empty target."""

import pytest
from sqlalchemy import create_engine, func, select

from legacy_migrate.catalog import build_catalog, catalog_by_name
from legacy_migrate.exceptions import ContractError
from legacy_migrate.loaders.sql_loader import SQLUpsertLoader, deterministic_id
from legacy_migrate.models.migration import MigrationRun, MigrationStatus
from legacy_migrate.models.report import CheckStatus
from legacy_migrate.models.schema import EntitySpec, MigrationPhase
from legacy_migrate.orchestrator import MigrationOrchestrator
from legacy_migrate.services.report_store import ReportStore
from tests.conftest import LEGACY_DDL, build_legacy_database, legacy_rows
from tests import target_schema as target


EXPECTED_SOURCE_COUNTS = {
    "order_types": 2,
    "order_states": 4,
    "profiles": 6,
    "offices": 1,
    "patients": 2,
    "orders": 3,
    "projects": 1,
    "workflow_templates": 2,
    "messages": 6,
    "states": 6,
}

TARGET_TABLES = [
    target.order_types, target.order_states, target.profiles, target.offices, target.orders,
    target.projects, target.workflow_templates, target.messages, target.instruction_states,
    target.order_state_history,
]


def migrate(config, source_engine, target_engine, sinks=None):
    orchestrator = MigrationOrchestrator(
        config,
        source_engine=source_engine,
        target_engine=target_engine,
        progress_sinks=sinks if sinks is not None else [],
    )
    return orchestrator, orchestrator.run_migration()


def table_counts(engine):
    with engine.connect() as conn:
        return {
            tbl.name: conn.execute(select(func.count()).select_from(tbl)).scalar_one()
            for tbl in TARGET_TABLES
        }


def total_inserted(run):
    return sum(result["inserted"] for result in run.load_results.values())


def check(report, name):
    return next(item for item in report.items if item.name == name)


class TestCleanRun:

    def test_every_entity_type_completes(self, config, source_engine, target_engine):
        _, run = migrate(config, source_engine, target_engine)

        assert run.status == MigrationStatus.COMPLETED
        assert {r.entity_type: r.status for r in run.records} == {
            name: MigrationStatus.COMPLETED for name in EXPECTED_SOURCE_COUNTS
        }
        assert run.source_counts == EXPECTED_SOURCE_COUNTS
        assert run.total_records_failed == 0
        assert run.total_records_rejected == 0

    def test_phases_run_in_order(self, config, source_engine, target_engine):
        _, run = migrate(config, source_engine, target_engine)

        phases = [r.phase for r in run.records]
        order = ["reference", "parties", "core", "dependent", "state_log"]
        assert phases == sorted(phases, key=order.index)

    def test_integrity_report_has_no_failures(self, config, source_engine, target_engine):
        _, run = migrate(config, source_engine, target_engine)
        report = run.integrity_report

        assert report.by_status(CheckStatus.FAIL) == []
        assert all(i.status == CheckStatus.PASS for i in report.by_category("orphans"))
        assert all(i.status == CheckStatus.PASS for i in report.by_category("duplicates"))
        assert all(i.status == CheckStatus.PASS for i in report.by_category("count_parity"))
        # record 905 points at content type 99
        assert [i.name for i in report.by_status(CheckStatus.WARNING)] == [
            "preflight:unknown_content_types"
        ]

    def test_target_rows(self, config, source_engine, target_engine):
        migrate(config, source_engine, target_engine)

        assert table_counts(target_engine) == {
            "order_types": 2,
            "order_states": 4,
            "profiles": 6,
            "offices": 1,
            "orders": 3,
            "projects": 1,
            "workflow_templates": 2,
            "messages": 6,
            "instruction_states": 6,
            "order_state_history": 6,
        }

    def test_patients_enrich_their_user_profile(self, config, source_engine, target_engine):
        migrate(config, source_engine, target_engine)

        with target_engine.connect() as conn:
            rows = conn.execute(
                select(target.profiles.c.legacy_user_id, target.profiles.c.profile_type,
                       target.profiles.c.legacy_patient_id, target.profiles.c.gender)
                .order_by(target.profiles.c.legacy_user_id)
            ).all()

        assert [tuple(r) for r in rows] == [
            (1, "master", None, None),
            (2, "client", None, None),
            (3, "technician", None, None),
            (4, "patient", 10, "female"),
            (5, "patient", 11, "male"),
            (6, "client", None, None),
        ]

    def test_state_log_is_folded(self, config, source_engine, target_engine):
        migrate(config, source_engine, target_engine)

        order_id = deterministic_id("orders", "legacy_instruction_id", 500)
        with target_engine.connect() as conn:
            current = conn.execute(
                select(target.orders.c.current_state_id)
                .where(target.orders.c.legacy_instruction_id == 500)
            ).scalar_one()
            durations = conn.execute(
                select(target.order_state_history.c.duration_minutes)
                .where(target.order_state_history.c.order_id == order_id)
                .order_by(target.order_state_history.c.entered_at)
            ).scalars().all()

        assert current == deterministic_id("order_states", "legacy_status_code", 2)
        assert durations == [None, 1440, 90]

    def test_generic_references(self, config, source_engine, target_engine):
        migrate(config, source_engine, target_engine)

        with target_engine.connect() as conn:
            rows = {
                r.legacy_record_id: r for r in conn.execute(select(
                    target.messages.c.legacy_record_id,
                    target.messages.c.reference_kind,
                    target.messages.c.order_id,
                    target.messages.c.patient_id,
                    target.messages.c.extra_data,
                ))
            }

        assert rows[900].reference_kind == "order"
        assert rows[900].order_id == deterministic_id("orders", "legacy_instruction_id", 500)
        assert rows[902].reference_kind == "patient"
        assert rows[902].patient_id == deterministic_id("profiles", "legacy_user_id", 4)
        assert rows[905].reference_kind == "unknown"
        assert rows[905].extra_data["needs_reconciliation"] is True

    def test_run_log_is_written(self, config, source_engine, target_engine):
        _, run = migrate(config, source_engine, target_engine)

        with target_engine.connect() as conn:
            rows = conn.execute(
                select(target.migration_run_log.c.entity_type, target.migration_run_log.c.status)
                .where(target.migration_run_log.c.run_id == run.id)
            ).all()

        assert len(rows) == len(EXPECTED_SOURCE_COUNTS)
        assert {r.status for r in rows} == {"completed"}

    def test_reports_are_saved(self, config, source_engine, target_engine):
        _, run = migrate(config, source_engine, target_engine)
        store = ReportStore(config.output_dir)

        assert store.get_run(run.id)["status"] == "completed"
        assert store.get_integrity(run.id).overall_status == CheckStatus.WARNING
        assert store.get_rejections(run.id) == []

    def test_progress_events(self, config, source_engine, target_engine):
        events = []
        migrate(config, source_engine, target_engine, sinks=[events.append])

        assert events[0].stage == "start"
        assert events[-1].stage == "complete"
        assert events[-1].percentage == 100.0
        assert len([e for e in events if e.entity_type]) == len(EXPECTED_SOURCE_COUNTS)


class TestIdempotency:

    def test_reruns_insert_nothing(self, config, source_engine, target_engine):
        _, first = migrate(config, source_engine, target_engine)
        counts = table_counts(target_engine)

        _, second = migrate(config, source_engine, target_engine)
        _, third = migrate(config, source_engine, target_engine)

        assert total_inserted(first) > 0
        assert total_inserted(second) == 0
        assert total_inserted(third) == 0
        assert table_counts(target_engine) == counts
        assert third.integrity_report.by_status(CheckStatus.FAIL) == []


class TestMessageParents:

    def parent_of(self, target_engine, legacy_id):
        with target_engine.connect() as conn:
            return conn.execute(
                select(target.messages.c.parent_message_id)
                .where(target.messages.c.legacy_record_id == legacy_id)
            ).scalar_one()

    def test_reply_parent_resolves_in_one_run(self, config, source_engine, target_engine):
        migrate(config, source_engine, target_engine)

        assert self.parent_of(target_engine, 901) == deterministic_id("messages", "legacy_record_id", 900)

    def test_parent_later_in_the_table(self, config, empty_source_engine, target_engine):
        rows = legacy_rows()
        rows["dispatch_record"].extend([
            # about message 908, which is extracted after it
            {"id": 906, "content_type_id": 6, "object_id": 908, "author_id": 2, "recipient_id": None,
             "parent_id": None, "subject": "See below", "text": "Forwarded",
             "is_read": 0, "requires_response": 0, "created": "2020-01-09 00:00:00"},
            {"id": 907, "content_type_id": 5, "object_id": 500, "author_id": 3, "recipient_id": None,
             "parent_id": 908, "subject": "Re: Later", "text": "Answer",
             "is_read": 0, "requires_response": 0, "created": "2020-01-10 00:00:00"},
            {"id": 908, "content_type_id": 5, "object_id": 500, "author_id": 2, "recipient_id": None,
             "parent_id": None, "subject": "Later", "text": "Original",
             "is_read": 0, "requires_response": 0, "created": "2020-01-08 12:00:00"},
        ])
        source_engine = build_legacy_database(empty_source_engine, rows)

        _, run = migrate(config, source_engine, target_engine)

        parent = deterministic_id("messages", "legacy_record_id", 908)
        assert self.parent_of(target_engine, 906) == parent
        assert self.parent_of(target_engine, 907) == parent
        assert run.get_record("messages").records_succeeded == 9
        assert run.get_record("messages").records_failed == 0
        assert run.load_results["messages"]["inserted"] == 9


class TestDryRun:

    def test_nothing_is_written(self, config, source_engine, target_engine):
        config.dry_run = True
        _, run = migrate(config, source_engine, target_engine)

        assert run.dry_run
        assert run.status == MigrationStatus.COMPLETED
        assert set(table_counts(target_engine).values()) == {0}
        with target_engine.connect() as conn:
            assert conn.execute(
                select(func.count()).select_from(target.migration_run_log)
            ).scalar_one() == 0

    def test_counts_and_report(self, config, source_engine, target_engine):
        config.dry_run = True
        _, run = migrate(config, source_engine, target_engine)

        assert run.get_record("profiles").records_succeeded == 6
        assert run.get_record("states").records_succeeded == 6
        assert run.integrity_report.by_category("orphans") == []
        assert run.integrity_report.by_category("count_parity") == []
        assert check(run.integrity_report, "rejections").status == CheckStatus.PASS


class TestRecordFailures:

    def test_one_bad_course_is_quarantined(self, config, empty_source_engine, target_engine):
        rows = legacy_rows()
        rows["dispatch_course"] = [
            {"id": i, "title": None if i == 7 else f"Course {i}", "details": "", "active": 1,
             "created": "2019-03-01 09:00:00"}
            for i in range(1, 11)
        ]
        source_engine = build_legacy_database(empty_source_engine, rows)

        _, run = migrate(config, source_engine, target_engine)
        record = run.get_record("order_types")

        assert record.records_processed == 10
        assert record.records_succeeded == 9
        assert record.records_rejected == 1
        assert record.status == MigrationStatus.PARTIAL
        assert [q.legacy_id for q in run.quarantined] == ["7"]
        assert check(run.integrity_report, "count_parity:order_types").status == CheckStatus.WARNING
        assert run.integrity_report.rejection_summary == {"order_types": {"name": 1}}
        assert run.status == MigrationStatus.PARTIAL

    def test_missing_order_is_an_unresolved_reference(self, config, empty_source_engine, target_engine):
        rows = legacy_rows()
        rows["dispatch_record"].append({
            "id": 906, "content_type_id": 5, "object_id": 999, "author_id": 2, "recipient_id": None,
            "parent_id": None, "subject": "Lost", "text": "Order was never migrated",
            "is_read": 0, "requires_response": 0, "created": "2020-01-09 00:00:00",
        })
        source_engine = build_legacy_database(empty_source_engine, rows)

        _, run = migrate(config, source_engine, target_engine)

        errors = run.load_results["messages"]["errors"]
        assert [(e["legacy_id"], e["error_code"]) for e in errors] == [("906", "unresolved_reference")]
        assert run.get_record("messages").records_failed == 1
        assert run.get_record("messages").records_succeeded == 6
        assert check(run.integrity_report, "count_parity:messages").status == CheckStatus.WARNING
        assert all(i.status == CheckStatus.PASS for i in run.integrity_report.by_category("orphans"))


class TestEntityFailures:

    def test_required_entity_failure_fails_the_run(self, config, empty_source_engine, target_engine):
        ddl = [s.replace("username VARCHAR(150), ", "") for s in LEGACY_DDL]
        rows = legacy_rows()
        for user in rows["auth_user"]:
            user.pop("username")
        source_engine = build_legacy_database(empty_source_engine, rows, ddl)

        _, run = migrate(config, source_engine, target_engine)

        assert run.status == MigrationStatus.FAILED
        assert run.get_record("profiles").status == MigrationStatus.FAILED
        assert run.get_record("orders") is None
        assert any(e.get("entity_type") == "profiles" for e in run.errors)

    def test_optional_entity_failure_skips_dependents(self, config, empty_source_engine, target_engine):
        ddl = [
            "CREATE TABLE dispatch_project (pk INTEGER PRIMARY KEY, name VARCHAR(255))"
            if "dispatch_project" in s else s
            for s in LEGACY_DDL
        ]
        rows = legacy_rows()
        rows["dispatch_project"] = []
        source_engine = build_legacy_database(empty_source_engine, rows, ddl)

        _, run = migrate(config, source_engine, target_engine)

        assert run.get_record("projects").status == MigrationStatus.FAILED
        assert run.get_record("messages").status == MigrationStatus.SKIPPED
        assert run.get_record("states").status == MigrationStatus.COMPLETED
        assert run.status == MigrationStatus.PARTIAL

    def test_timeout_fails_only_that_entity(self, config, source_engine, target_engine, monkeypatch):
        load_all = SQLUpsertLoader.load_all

        def timing_out(self, entity_type, entities):
            if entity_type == "workflow_templates":
                raise TimeoutError("statement timed out")
            return load_all(self, entity_type, entities)

        monkeypatch.setattr(SQLUpsertLoader, "load_all", timing_out)

        _, run = migrate(config, source_engine, target_engine)

        record = run.get_record("workflow_templates")
        assert record.status == MigrationStatus.FAILED
        assert "timed out" in record.error
        assert run.get_record("messages").status == MigrationStatus.COMPLETED
        assert any(e["error_type"] == "TimeoutError" for e in run.errors)
        assert run.status == MigrationStatus.PARTIAL

    def test_unreachable_source_fails_the_run(self, config, target_engine):
        broken = create_engine("sqlite:////nonexistent-dir/legacy.db")
        _, run = migrate(config, broken, target_engine)

        assert run.status == MigrationStatus.FAILED
        assert run.errors[0]["error_type"] == "ConnectivityError"
        assert run.records == []


class TestAudit:

    def test_audit_reruns_checks_for_stored_run(self, config, source_engine, target_engine):
        orchestrator, run = migrate(config, source_engine, target_engine)

        report = orchestrator.audit(run.id)

        assert report.run_id == run.id
        assert report.by_status(CheckStatus.FAIL) == []
        assert check(report, "count_parity:orders").status == CheckStatus.PASS


class TestScheduling:

    def _orchestrator(self, config, source_engine, target_engine, workers):
        config.parallel_workers = workers
        orchestrator = MigrationOrchestrator(
            config, source_engine=source_engine, target_engine=target_engine, progress_sinks=[]
        )
        orchestrator.run = MigrationRun()
        started = []

        def fake_migrate(phase, spec):
            started.append(spec.name)
            orchestrator._outcomes[spec.name] = MigrationStatus.COMPLETED

        orchestrator._migrate_entity = fake_migrate
        return orchestrator, started

    @pytest.mark.parametrize("workers", [1, 3])
    def test_dependencies_run_first(self, config, source_engine, target_engine, workers):
        orchestrator, started = self._orchestrator(config, source_engine, target_engine, workers)
        specs = catalog_by_name(build_catalog())
        parties = [specs["offices"], specs["patients"], specs["profiles"]]

        orchestrator._run_phase(MigrationPhase.PARTIES, parties, parties)

        assert started[0] == "profiles"
        assert set(started[1:]) == {"offices", "patients"}

    def test_dependency_cycle_is_rejected(self, config, source_engine, target_engine):
        orchestrator, _ = self._orchestrator(config, source_engine, target_engine, 1)
        specs = [
            EntitySpec(name="a", phase=MigrationPhase.CORE, source_table="a", depends_on=["b"]),
            EntitySpec(name="b", phase=MigrationPhase.CORE, source_table="b", depends_on=["a"]),
        ]

        with pytest.raises(ContractError):
            orchestrator._run_phase(MigrationPhase.CORE, specs, specs)
