# tests/test_schema_discovery.py
"""Tests for schema probing, column fallbacks and tolerant extraction."""

import pytest
from sqlalchemy import text

from legacy_migrate.catalog import DEFAULT_ORDER_STATES, build_catalog, catalog_by_name
from legacy_migrate.exceptions import SchemaDiscoveryError
from legacy_migrate.extractors.sql_extractor import SQLExtractor
from legacy_migrate.extractors.static_extractor import StaticExtractor
from legacy_migrate.services.schema_prober import SchemaProber
from legacy_migrate.services.transformer import TransformEngine


@pytest.fixture
def specs():
    return catalog_by_name(build_catalog())


class TestSchemaProber:

    def test_probe_columns(self, prober):
        columns = prober.probe_columns("dispatch_course")
        assert {"id", "title", "details", "active", "created"} == set(columns)

    def test_absent_table_is_empty_not_an_error(self, prober):
        assert prober.probe_columns("dispatch_missing") == frozenset()
        assert prober.table_exists("dispatch_missing") is False
        assert "dispatch_missing" in prober.absent_tables

    def test_resolve_column_uses_first_existing_candidate(self, prober):
        assert prober.resolve_column("dispatch_course", ("name", "title")) == "title"
        assert prober.resolve_column("dispatch_course", ("category", "type", "kind")) is None

    def test_primary_key(self, prober):
        assert prober.primary_key("auth_user") == "id"
        assert prober.primary_key("dispatch_missing") is None

    def test_columns_are_cached(self, prober, source_engine):
        prober.probe_columns("auth_user")
        with source_engine.begin() as conn:
            conn.execute(text("ALTER TABLE auth_user ADD COLUMN nickname VARCHAR(50)"))
        assert "nickname" not in prober.probe_columns("auth_user")
        assert "nickname" in SchemaProber(source_engine).probe_columns("auth_user")


class TestDegradation:

    def test_plan_maps_aliases_and_lists_missing_columns(self, specs, config, source_engine, prober):
        extractor = SQLExtractor(specs["order_types"], config, source_engine, prober)
        column_map = extractor.plan()

        assert column_map["name"] == "title"
        assert column_map["description"] == "details"
        assert column_map["is_active"] == "active"
        assert column_map["created_at"] == "created"
        assert "category" in extractor.result.missing_columns
        assert "updated_at" in extractor.result.missing_columns

    def test_records_use_canonical_names(self, specs, config, source_engine, prober):
        extractor = SQLExtractor(specs["order_types"], config, source_engine, prober)
        records = list(extractor.extract())

        assert [r.legacy_id for r in records] == ["1", "2"]
        assert records[0].data["name"] == "Clear Aligners"
        assert "category" not in records[0].data

    def test_missing_column_falls_back_to_default(self, specs, config, source_engine, prober):
        spec = specs["order_types"]
        record = list(SQLExtractor(spec, config, source_engine, prober).extract())[0]

        entity = TransformEngine().transform(record, spec)[0]

        assert entity.data["category"] == "general"
        assert entity.data["updated_at"] is not None

    def test_absent_table_extracts_nothing(self, specs, config, source_engine, prober):
        with source_engine.begin() as conn:
            conn.execute(text("DROP TABLE dispatch_template"))
        extractor = SQLExtractor(specs["workflow_templates"], config, source_engine, SchemaProber(source_engine))

        assert list(extractor.extract()) == []
        assert extractor.count() == 0
        assert extractor.result.table_absent is True

    def test_missing_required_column_raises(self, specs, config, empty_source_engine):
        with empty_source_engine.begin() as conn:
            conn.execute(text("CREATE TABLE dispatch_course (id INTEGER PRIMARY KEY, details TEXT)"))
        extractor = SQLExtractor(
            specs["order_types"], config, empty_source_engine, SchemaProber(empty_source_engine)
        )

        with pytest.raises(SchemaDiscoveryError, match="name"):
            extractor.plan()

    def test_keyset_pages(self, specs, config, source_engine, prober):
        extractor = SQLExtractor(specs["profiles"], config, source_engine, prober)
        pages = list(extractor.stream(batch_size=4))

        assert [len(p) for p in pages] == [4, 2]
        assert [r.legacy_id for r in pages[1]] == ["5", "6"]
        assert extractor.count() == 6

    def test_static_reference_data(self, specs, config):
        extractor = StaticExtractor(specs["order_states"], config, DEFAULT_ORDER_STATES)
        records = list(extractor.extract())

        assert [r.legacy_id for r in records] == ["1", "2", "4", "5"]
        assert extractor.count() == 4
