"""
Unit tests for PolymorphicRegistry.

Tests:
1. Initialization guard
2. Fan-out of a polymorphic type into per-target relationships
3. Reverse (has-many) relationships on targets
4. Re-sync of registrations when the target set changes, including failed
   saves, direct tracker changes, restores and imports
5. Reflection over registered descriptors
"""

import pytest

from apps.api.config import DEFAULT_POLYMORPHIC_TYPES
from packages.polymorphic.exceptions import (
    NotInitializedError,
    PolymorphicValidationError,
)
from packages.polymorphic.registry import PolymorphicRegistry, is_polymorphic_relationship
from packages.polymorphic.relationships import (
    DirectRelationship,
    InMemoryRelationshipRegistry,
    PolymorphicRelationship,
    RelationshipType,
    relationship_adapter,
)
from packages.polymorphic.tracker import PolymorphicTracker


@pytest.fixture
async def loggable_registry(registry: PolymorphicRegistry) -> PolymorphicRegistry:
    """Registry with loggable -> jobs, tasks."""
    await registry.add_polymorphic_target("loggable", "jobs", "Job")
    await registry.add_polymorphic_target("loggable", "tasks", "Task")
    return registry


# =============================================================================
# Initialization
# =============================================================================


class TestInitialization:
    """Tests for the initialize() guard."""

    def test_uninitialized_registry_raises(
        self,
        make_tracker,
        relationship_registry: InMemoryRelationshipRegistry,
    ) -> None:
        registry = PolymorphicRegistry(make_tracker(), relationship_registry)

        assert registry.is_initialized is False
        with pytest.raises(NotInitializedError) as exc_info:
            registry.get_valid_targets("loggable")
        assert "PolymorphicRegistry" in exc_info.value.message
        assert exc_info.value.status_code == 409

        with pytest.raises(NotInitializedError):
            registry.register_polymorphic_target_relationships(
                "activity_logs", "loggable", "loggable_id", "loggable_type"
            )

    @pytest.mark.asyncio
    async def test_initialize_initializes_tracker(
        self,
        make_tracker,
        relationship_registry: InMemoryRelationshipRegistry,
    ) -> None:
        tracker: PolymorphicTracker = make_tracker()
        registry = PolymorphicRegistry(tracker, relationship_registry)

        await registry.initialize()
        await registry.initialize()

        assert registry.is_initialized is True
        assert tracker.is_initialized is True
        assert registry.tracker is tracker
        assert registry.relationships is relationship_registry


# =============================================================================
# Fan-out Registration
# =============================================================================


class TestTargetRelationships:
    """Tests for per-target belongs-to relationships."""

    @pytest.mark.asyncio
    async def test_registers_one_relationship_per_target(
        self, loggable_registry: PolymorphicRegistry
    ) -> None:
        names = loggable_registry.register_polymorphic_target_relationships(
            "activity_logs", "loggable", "loggable_id", "loggable_type"
        )

        assert names == ["loggableJob", "loggableTask"]
        descriptor = loggable_registry.relationships.get_relationship_metadata(
            "activity_logs", "loggableJob"
        )
        assert isinstance(descriptor, DirectRelationship)
        assert descriptor.type == RelationshipType.BELONGS_TO
        assert descriptor.model == "Job"
        assert descriptor.target_table == "jobs"
        assert descriptor.foreign_key == "loggable_id"
        assert descriptor.discriminator_column == "loggable_type"
        assert descriptor.discriminator_value == "Job"
        assert descriptor.polymorphic_type == "loggable"

    @pytest.mark.asyncio
    async def test_type_without_targets_registers_nothing(self, registry: PolymorphicRegistry) -> None:
        names = registry.register_polymorphic_target_relationships(
            "notes", "notable", "notable_id", "notable_type"
        )

        assert names == []
        assert registry.relationships.get_valid_relationships("notes") == []

    @pytest.mark.asyncio
    async def test_inactive_targets_are_skipped(self, loggable_registry: PolymorphicRegistry) -> None:
        await loggable_registry.deactivate_polymorphic_target("loggable", "tasks")

        names = loggable_registry.register_polymorphic_target_relationships(
            "activity_logs", "loggable", "loggable_id", "loggable_type"
        )
        all_names = loggable_registry.register_polymorphic_target_relationships(
            "activity_logs", "loggable", "loggable_id", "loggable_type", include_inactive=True
        )

        assert names == ["loggableJob"]
        assert all_names == ["loggableJob", "loggableTask"]

    @pytest.mark.asyncio
    async def test_polymorphic_relationship_descriptor(
        self, loggable_registry: PolymorphicRegistry
    ) -> None:
        descriptor = loggable_registry.register_polymorphic_relationship(
            "activity_logs", "loggable", "loggable", "loggable_id", "loggable_type"
        )

        assert isinstance(descriptor, PolymorphicRelationship)
        assert descriptor.valid_targets == ("jobs", "tasks")
        assert loggable_registry.get_polymorphic_relationships("activity_logs") == [descriptor]


# =============================================================================
# Reverse Registration
# =============================================================================


class TestReverseRelationships:
    """Tests for has-many relationships from a target back to owners."""

    @pytest.mark.asyncio
    async def test_registers_has_many(self, loggable_registry: PolymorphicRegistry) -> None:
        name = loggable_registry.register_reverse_polymorphic_relationships(
            "jobs", "loggable", "activity_logs", "loggable_id"
        )

        assert name == "activityLogs"
        descriptor = loggable_registry.relationships.get_relationship_metadata("jobs", "activityLogs")
        assert descriptor.type == RelationshipType.HAS_MANY
        assert descriptor.model == "ActivityLog"
        assert descriptor.target_table == "activity_logs"
        assert descriptor.foreign_key == "loggable_id"
        assert descriptor.discriminator_column == "loggable_type"
        assert descriptor.discriminator_value == "Job"

    @pytest.mark.asyncio
    async def test_custom_name(self, loggable_registry: PolymorphicRegistry) -> None:
        name = loggable_registry.register_reverse_polymorphic_relationships(
            "tasks", "loggable", "activity_logs", "loggable_id", relationship_name="history"
        )

        assert name == "history"
        assert loggable_registry.relationships.get_valid_relationships("tasks") == ["history"]

    @pytest.mark.asyncio
    async def test_non_target_returns_none(self, loggable_registry: PolymorphicRegistry) -> None:
        name = loggable_registry.register_reverse_polymorphic_relationships(
            "clients", "loggable", "activity_logs", "loggable_id"
        )

        assert name is None
        assert loggable_registry.relationships.get_valid_relationships("clients") == []


# =============================================================================
# Re-sync
# =============================================================================


class TestResync:
    """Registrations follow every committed target change."""

    @pytest.mark.asyncio
    async def test_new_target_appears(self, loggable_registry: PolymorphicRegistry) -> None:
        loggable_registry.register_polymorphic_target_relationships(
            "activity_logs", "loggable", "loggable_id", "loggable_type"
        )

        await loggable_registry.add_polymorphic_target("loggable", "clients", "Client")

        assert loggable_registry.relationships.get_valid_relationships("activity_logs") == [
            "loggableJob",
            "loggableTask",
            "loggableClient",
        ]

    @pytest.mark.asyncio
    async def test_removed_target_disappears(self, loggable_registry: PolymorphicRegistry) -> None:
        loggable_registry.register_polymorphic_target_relationships(
            "activity_logs", "loggable", "loggable_id", "loggable_type"
        )
        loggable_registry.register_reverse_polymorphic_relationships(
            "tasks", "loggable", "activity_logs", "loggable_id"
        )

        assert await loggable_registry.remove_polymorphic_target("loggable", "tasks") is True

        relationships = loggable_registry.relationships
        assert relationships.get_valid_relationships("activity_logs") == ["loggableJob"]
        assert relationships.get_valid_relationships("tasks") == []
        assert loggable_registry.is_valid_target("loggable", "tasks") is False

    @pytest.mark.asyncio
    async def test_deactivated_target_disappears(self, loggable_registry: PolymorphicRegistry) -> None:
        loggable_registry.register_polymorphic_target_relationships(
            "activity_logs", "loggable", "loggable_id", "loggable_type"
        )

        await loggable_registry.deactivate_polymorphic_target("loggable", "jobs")

        assert loggable_registry.relationships.get_valid_relationships("activity_logs") == [
            "loggableTask"
        ]
        assert loggable_registry.is_valid_target("loggable", "jobs", include_inactive=True) is True

    @pytest.mark.asyncio
    async def test_model_rename_replaces_relationship(
        self, loggable_registry: PolymorphicRegistry
    ) -> None:
        loggable_registry.register_polymorphic_target_relationships(
            "activity_logs", "loggable", "loggable_id", "loggable_type"
        )

        await loggable_registry.add_polymorphic_target("loggable", "jobs", "WorkOrder")

        names = loggable_registry.relationships.get_valid_relationships("activity_logs")
        assert "loggableJob" not in names
        assert "loggableWorkOrder" in names

    @pytest.mark.asyncio
    async def test_other_types_are_untouched(self, loggable_registry: PolymorphicRegistry) -> None:
        loggable_registry.register_polymorphic_target_relationships(
            "activity_logs", "loggable", "loggable_id", "loggable_type"
        )

        await loggable_registry.add_polymorphic_target("notable", "jobs", "Job")

        assert loggable_registry.relationships.get_valid_relationships("activity_logs") == [
            "loggableJob",
            "loggableTask",
        ]

    @pytest.mark.asyncio
    async def test_direct_tracker_changes_resync(self, loggable_registry: PolymorphicRegistry) -> None:
        loggable_registry.register_polymorphic_target_relationships(
            "activity_logs", "loggable", "loggable_id", "loggable_type"
        )

        await loggable_registry.tracker.add_target("loggable", "clients", "Client")
        await loggable_registry.tracker.remove_target("loggable", "jobs")

        assert loggable_registry.relationships.get_valid_relationships("activity_logs") == [
            "loggableTask",
            "loggableClient",
        ]

    @pytest.mark.asyncio
    async def test_failed_save_keeps_relationships_in_step(
        self,
        flaky_store,
        relationship_registry: InMemoryRelationshipRegistry,
    ) -> None:
        tracker = PolymorphicTracker(
            flaky_store, config_id="flaky", default_types=DEFAULT_POLYMORPHIC_TYPES
        )
        registry = PolymorphicRegistry(tracker, relationship_registry)
        await registry.initialize()
        await registry.add_polymorphic_target("loggable", "jobs", "Job")
        registry.register_polymorphic_target_relationships(
            "activity_logs", "loggable", "loggable_id", "loggable_type"
        )
        flaky_store.fail_saves = True

        with pytest.raises(OSError):
            await registry.add_polymorphic_target("loggable", "tasks", "Task")
        with pytest.raises(OSError):
            await registry.remove_polymorphic_target("loggable", "jobs")

        assert registry.get_valid_targets("loggable") == ["jobs"]
        assert relationship_registry.get_valid_relationships("activity_logs") == ["loggableJob"]

        reloaded = PolymorphicTracker(
            flaky_store, config_id="flaky", default_types=DEFAULT_POLYMORPHIC_TYPES
        )
        await reloaded.initialize()
        assert reloaded.get_valid_targets("loggable") == ["jobs"]

    @pytest.mark.asyncio
    async def test_restore_backup_resyncs(self, loggable_registry: PolymorphicRegistry) -> None:
        loggable_registry.register_polymorphic_target_relationships(
            "activity_logs", "loggable", "loggable_id", "loggable_type"
        )
        backup_key = await loggable_registry.tracker.create_backup()
        await loggable_registry.remove_polymorphic_target("loggable", "jobs")

        restored = await loggable_registry.restore_backup(backup_key)

        assert set(restored.associations["loggable"].valid_targets) == {"jobs", "tasks"}
        assert loggable_registry.relationships.get_valid_relationships("activity_logs") == [
            "loggableTask",
            "loggableJob",
        ]

    @pytest.mark.asyncio
    async def test_import_and_replace_resync(self, loggable_registry: PolymorphicRegistry) -> None:
        loggable_registry.register_polymorphic_target_relationships(
            "activity_logs", "loggable", "loggable_id", "loggable_type"
        )
        export = loggable_registry.tracker.export_config()
        empty = loggable_registry.tracker.get_config()
        empty.associations["loggable"].valid_targets.clear()

        await loggable_registry.replace_config(empty)
        assert loggable_registry.relationships.get_valid_relationships("activity_logs") == []

        await loggable_registry.import_config(export)
        assert sorted(loggable_registry.relationships.get_valid_relationships("activity_logs")) == [
            "loggableJob",
            "loggableTask",
        ]

    @pytest.mark.asyncio
    async def test_tracker_errors_propagate(self, registry: PolymorphicRegistry) -> None:
        with pytest.raises(PolymorphicValidationError):
            await registry.add_polymorphic_target("", "jobs", "Job")


# =============================================================================
# Reflection
# =============================================================================


class TestReflection:
    """Tests for descriptor classification and scanning."""

    def test_is_polymorphic_relationship(self) -> None:
        polymorphic = PolymorphicRelationship(
            name="loggable",
            source_table="activity_logs",
            polymorphic_type="loggable",
            id_field="loggable_id",
            type_field="loggable_type",
        )
        direct = DirectRelationship(
            name="client",
            source_table="jobs",
            type=RelationshipType.BELONGS_TO,
            model="Client",
            target_table="clients",
            foreign_key="client_id",
        )

        assert is_polymorphic_relationship(polymorphic) is True
        assert is_polymorphic_relationship(direct) is False
        assert is_polymorphic_relationship(None) is False

    def test_descriptor_union_parses_by_kind(self) -> None:
        descriptor = relationship_adapter.validate_python(
            {
                "kind": "polymorphic",
                "name": "notable",
                "source_table": "notes",
                "polymorphic_type": "notable",
                "id_field": "notable_id",
                "type_field": "notable_type",
                "valid_targets": ["jobs"],
            }
        )

        assert isinstance(descriptor, PolymorphicRelationship)
        assert descriptor.valid_targets == ("jobs",)

    @pytest.mark.asyncio
    async def test_discover_polymorphic_relationships(
        self, loggable_registry: PolymorphicRegistry
    ) -> None:
        loggable_registry.register_polymorphic_relationship(
            "activity_logs", "loggable", "loggable", "loggable_id", "loggable_type"
        )
        loggable_registry.register_polymorphic_target_relationships(
            "activity_logs", "loggable", "loggable_id", "loggable_type"
        )

        found = loggable_registry.discover_polymorphic_relationships()

        assert [descriptor.name for descriptor in found] == ["loggable"]
        assert loggable_registry.is_polymorphic_relationship(found[0]) is True

    @pytest.mark.asyncio
    async def test_discover_never_raises(self, tracker: PolymorphicTracker) -> None:
        class BrokenRelationships(InMemoryRelationshipRegistry):
            def get_tables(self) -> list[str]:
                raise RuntimeError("registry offline")

        registry = PolymorphicRegistry(tracker, BrokenRelationships())
        await registry.initialize()

        assert registry.discover_polymorphic_relationships() == []
