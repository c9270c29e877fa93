# tests/test_resolver.py
"""Tests for the content-type registry and generic-reference resolution."""

import pytest

from legacy_migrate.context import LegacyIdMap
from legacy_migrate.exceptions import RegistryNotLoadedError
from legacy_migrate.models.reference import ContentTypeEntry, ReferenceKind
from legacy_migrate.services.content_types import ContentTypeRegistry
from legacy_migrate.services.resolver import GenericReferenceResolver, kind_for_logical_name


ORDER_ID = "3f0c2a52-1d0e-4c41-9f0e-0c7f6b5f2f11"


@pytest.fixture
def small_registry():
    registry = ContentTypeRegistry()
    registry.load_entries([
        ContentTypeEntry(id=5, app_label="dispatch", model="instruction"),
        ContentTypeEntry(id=7, app_label="dispatch", model="project"),
    ])
    return registry


class TestContentTypeRegistry:

    def test_load_from_source(self, registry):
        assert registry.is_loaded
        assert len(registry) == 6
        assert registry.resolve_logical_name(5) == "dispatch.instruction"
        assert registry.resolve_logical_name(1) == "auth.user"

    def test_unmapped_id_is_unknown(self, registry):
        assert registry.resolve_logical_name(99) == "unknown"
        assert registry.resolve_logical_name(None) == "unknown"

    def test_use_before_load_raises(self):
        registry = ContentTypeRegistry()
        with pytest.raises(RegistryNotLoadedError):
            registry.resolve_logical_name(5)

    def test_names_are_read_only(self, small_registry):
        with pytest.raises(TypeError):
            small_registry.names[8] = "dispatch.other"

    def test_missing_table_loads_empty(self, empty_source_engine):
        from legacy_migrate.services.schema_prober import SchemaProber

        registry = ContentTypeRegistry(SchemaProber(empty_source_engine))
        with empty_source_engine.connect() as conn:
            names = registry.load(conn)

        assert dict(names) == {}
        assert registry.resolve_logical_name(5) == "unknown"


class TestGenericReferenceResolver:

    def test_resolves_loaded_order(self, small_registry):
        id_map = LegacyIdMap()
        id_map.register("orders.legacy_instruction_id", 42, ORDER_ID)

        resolved = GenericReferenceResolver(small_registry, id_map).resolve(5, 42)

        assert resolved.kind == ReferenceKind.ORDER
        assert resolved.target_id == ORDER_ID
        assert resolved.object_id == 42
        assert resolved.logical_name == "dispatch.instruction"

    def test_unloaded_object_has_no_target(self, small_registry):
        resolved = GenericReferenceResolver(small_registry, LegacyIdMap()).resolve(5, 42)

        assert resolved.kind == ReferenceKind.ORDER
        assert resolved.target_id is None

    def test_unknown_type_id(self, small_registry):
        resolved = GenericReferenceResolver(small_registry, LegacyIdMap()).resolve(99, 1)

        assert resolved.is_unknown
        assert resolved.target_id is None
        assert GenericReferenceResolver.to_legacy_ref(resolved) is None

    def test_legacy_ref_for_project(self, small_registry):
        resolved = GenericReferenceResolver(small_registry).resolve(7, 700)
        ref = GenericReferenceResolver.to_legacy_ref(resolved)

        assert ref.column == "project_id"
        assert ref.namespace == "projects.legacy_project_id"
        assert ref.legacy_id == 700
        assert ref.required is True

    def test_resolver_requires_loaded_registry(self):
        resolver = GenericReferenceResolver(ContentTypeRegistry(), LegacyIdMap())
        with pytest.raises(RegistryNotLoadedError):
            resolver.resolve(5, 42)

    @pytest.mark.parametrize("logical_name,kind", [
        ("dispatch.instruction", ReferenceKind.ORDER),
        ("orders.order", ReferenceKind.ORDER),
        ("dispatch.patient", ReferenceKind.PATIENT),
        ("dispatch.office", ReferenceKind.OFFICE),
        ("dispatch.record", ReferenceKind.MESSAGE),
        ("auth.user", ReferenceKind.UNKNOWN),
        ("unknown", ReferenceKind.UNKNOWN),
    ])
    def test_kind_for_logical_name(self, logical_name, kind):
        assert kind_for_logical_name(logical_name) == kind
