"""
Unit tests for ChainableQuery.

Uses a recording in-memory QueryFactory so every call made against the
data layer can be asserted on.

Tests:
1. Immutability of chained queries
2. Target-type validation before any data access
3. Condition building (target type, ids, filters, ordering, paging)
4. Terminal operations (all, first, count, exists, paginate)
5. Eager loading of polymorphic targets
6. Factory helpers and metadata
"""

from collections.abc import Callable
from typing import Any

import pytest

from packages.polymorphic.exceptions import PolymorphicValidationError
from packages.polymorphic.execution import Row, RowQuery
from packages.polymorphic.query import (
    ChainableQuery,
    QueryConditions,
    create_loggable_query,
    create_notable_query,
    create_parseable_query,
    create_polymorphic_query,
    create_schedulable_query,
    create_target_query,
)
from packages.polymorphic.tracker import PolymorphicTracker

# =============================================================================
# Recording Query Factory
# =============================================================================


class RecordingQuery:
    """Immutable in-memory RowQuery that logs each run on its factory."""

    def __init__(self, table: str, factory: "RecordingFactory", ops: tuple = ()):
        self.table = table
        self.factory = factory
        self.ops = ops

    def _with(self, op: tuple) -> "RecordingQuery":
        return RecordingQuery(self.table, self.factory, self.ops + (op,))

    def where(self, column: str, value: Any, op: str = "=") -> "RecordingQuery":
        return self._with(("where", column, op, value))

    def order_by(self, column: str, direction: str = "asc") -> "RecordingQuery":
        return self._with(("order_by", column, direction))

    def limit(self, count: int) -> "RecordingQuery":
        return self._with(("limit", count))

    def offset(self, count: int) -> "RecordingQuery":
        return self._with(("offset", count))

    def related(self, name: str, refine: Callable | None = None) -> "RecordingQuery":
        return self._with(("related", name))

    async def run(self) -> list[Row]:
        self.factory.runs.append((self.table, self.ops))
        if self.factory.fail:
            raise ConnectionError("database unavailable")

        rows = [dict(row) for row in self.factory.data.get(self.table, [])]
        limit = offset = None
        for op in self.ops:
            if op[0] == "where":
                _, column, operator, value = op
                if operator == "=":
                    rows = [row for row in rows if row.get(column) == value]
                elif operator == "in":
                    rows = [row for row in rows if row.get(column) in value]
                elif operator == ">":
                    rows = [row for row in rows if row.get(column) > value]
            elif op[0] == "order_by":
                rows.sort(key=lambda row: row[op[1]], reverse=op[2] == "desc")
            elif op[0] == "limit":
                limit = op[1]
            elif op[0] == "offset":
                offset = op[1]

        start = offset or 0
        return rows[start : start + limit] if limit is not None else rows[start:]


class RecordingFactory:
    def __init__(self, data: dict[str, list[Row]] | None = None, fail: bool = False):
        self.data = data or {}
        self.fail = fail
        self.calls: list[str] = []
        self.runs: list[tuple[str, tuple]] = []

    def __call__(self, table_name: str) -> RecordingQuery:
        self.calls.append(table_name)
        return RecordingQuery(table_name, self)


def _wheres(ops: tuple) -> list[tuple]:
    return [op[1:] for op in ops if op[0] == "where"]


ACTIVITY_LOGS = [
    {"id": 1, "action": "created", "loggable_id": 10, "loggable_type": "Job"},
    {"id": 2, "action": "updated", "loggable_id": 11, "loggable_type": "Job"},
    {"id": 3, "action": "created", "loggable_id": 20, "loggable_type": "Task"},
    {"id": 4, "action": "created", "loggable_id": 30, "loggable_type": "Client"},
    {"id": 5, "action": "deleted", "loggable_id": None, "loggable_type": None},
]
JOBS = [{"id": 10, "title": "Server migration"}, {"id": 11, "title": "Printer repair"}]
TASKS = [{"id": 20, "title": "Back up data"}]


@pytest.fixture
async def loggable_tracker(tracker: PolymorphicTracker) -> PolymorphicTracker:
    """loggable -> jobs, tasks (active) and clients (inactive)."""
    await tracker.add_target("loggable", "jobs", "Job")
    await tracker.add_target("loggable", "tasks", "Task")
    await tracker.add_target("loggable", "clients", "Client")
    await tracker.deactivate_target("loggable", "clients")
    await tracker.add_target("notable", "people", "Person")
    return tracker


@pytest.fixture
def factory() -> RecordingFactory:
    return RecordingFactory(
        {"activity_logs": ACTIVITY_LOGS, "jobs": JOBS, "tasks": TASKS, "clients": []}
    )


@pytest.fixture
def loggable_query(loggable_tracker: PolymorphicTracker, factory: RecordingFactory) -> ChainableQuery:
    return create_loggable_query(loggable_tracker, factory)


# =============================================================================
# Immutability
# =============================================================================


class TestImmutability:
    """Chain methods never mutate the receiver."""

    @pytest.mark.asyncio
    async def test_branching_does_not_leak(self, loggable_query: ChainableQuery) -> None:
        jobs = loggable_query.for_target_type("Job")
        tasks = loggable_query.for_target_type("Task").where("action", "created")

        assert loggable_query.conditions.target_type is None
        assert loggable_query.conditions.filters == ()
        assert jobs.conditions.target_type == "Job"
        assert jobs.conditions.filters == ()
        assert tasks.conditions.target_type == "Task"
        assert tasks.conditions.filters == (("action", "=", "created"),)

    @pytest.mark.asyncio
    async def test_every_chain_method_returns_new_query(self, loggable_query: ChainableQuery) -> None:
        chained = [
            loggable_query.for_polymorphic_type("loggable"),
            loggable_query.for_target_type("Job"),
            loggable_query.for_target_id(10),
            loggable_query.include_polymorphic_targets(),
            loggable_query.include("user"),
            loggable_query.where("action", "created"),
            loggable_query.order_by("id"),
            loggable_query.limit(5),
            loggable_query.offset(5),
        ]

        for query in chained:
            assert query is not loggable_query
        assert loggable_query.conditions == QueryConditions(polymorphic_type="loggable")

    @pytest.mark.asyncio
    async def test_filters_accumulate_in_order(self, loggable_query: ChainableQuery) -> None:
        query = loggable_query.where("action", "created").where("id", 2, op=">")

        assert query.conditions.filters == (("action", "=", "created"), ("id", ">", 2))


# =============================================================================
# Validation
# =============================================================================


class TestValidation:
    """Invalid conditions fail before the data layer is touched."""

    @pytest.mark.asyncio
    async def test_invalid_target_type_raises_before_execution(
        self, loggable_query: ChainableQuery, factory: RecordingFactory
    ) -> None:
        with pytest.raises(PolymorphicValidationError) as exc_info:
            await loggable_query.for_target_type("Invoice").all()

        message = exc_info.value.message
        assert "Invalid target type(s) 'Invoice'" in message
        assert "'loggable'" in message
        assert "Valid targets: jobs, tasks" in message
        assert exc_info.value.status_code == 422
        assert factory.calls == []

    @pytest.mark.asyncio
    async def test_inactive_target_is_rejected(
        self, loggable_query: ChainableQuery, factory: RecordingFactory
    ) -> None:
        with pytest.raises(PolymorphicValidationError):
            await loggable_query.for_target_type("Client").count()

        assert factory.calls == []

    @pytest.mark.asyncio
    async def test_invalid_eager_target_type(
        self, loggable_query: ChainableQuery, factory: RecordingFactory
    ) -> None:
        with pytest.raises(PolymorphicValidationError):
            await loggable_query.include_polymorphic_targets(target_types=["Invoice"]).all()

        assert factory.calls == []

    @pytest.mark.asyncio
    async def test_invalid_conditions_raise_from_exists(self, loggable_query: ChainableQuery) -> None:
        with pytest.raises(PolymorphicValidationError):
            await loggable_query.for_target_type("Invoice").exists()

    @pytest.mark.asyncio
    async def test_unknown_polymorphic_type(self, loggable_query: ChainableQuery) -> None:
        with pytest.raises(PolymorphicValidationError, match="Unknown polymorphic type 'bogus'"):
            loggable_query.for_polymorphic_type("bogus").validate()

    @pytest.mark.asyncio
    async def test_target_filter_requires_type(
        self, loggable_tracker: PolymorphicTracker, factory: RecordingFactory
    ) -> None:
        unbound = ChainableQuery("activity_logs", loggable_tracker, factory)

        with pytest.raises(PolymorphicValidationError):
            unbound.for_target_type("Job").validate()
        with pytest.raises(PolymorphicValidationError):
            unbound.for_target_id(10).validate()

    @pytest.mark.asyncio
    async def test_model_and_table_names_are_accepted(self, loggable_query: ChainableQuery) -> None:
        loggable_query.for_target_type("Job").validate()
        loggable_query.for_target_type("jobs").validate()
        loggable_query.for_target_type(["Job", "tasks"]).validate()

    @pytest.mark.asyncio
    async def test_valid_target_types(self, loggable_query: ChainableQuery) -> None:
        assert loggable_query.get_valid_target_types() == ["jobs", "tasks"]

    @pytest.mark.asyncio
    async def test_build_target_conditions(self, loggable_query: ChainableQuery) -> None:
        assert loggable_query.build_target_conditions("jobs") == {"loggable_type": "Job"}

        with pytest.raises(PolymorphicValidationError):
            loggable_query.build_target_conditions("Invoice")


# =============================================================================
# Condition Building
# =============================================================================


class TestConditionBuilding:
    """What the data layer receives."""

    @pytest.mark.asyncio
    async def test_target_type_resolves_to_model_name(
        self, loggable_query: ChainableQuery, factory: RecordingFactory
    ) -> None:
        await loggable_query.for_target_type("jobs").all()

        table, ops = factory.runs[0]
        assert table == "activity_logs"
        assert _wheres(ops) == [("loggable_type", "=", "Job")]

    @pytest.mark.asyncio
    async def test_multiple_target_types_and_ids(
        self, loggable_query: ChainableQuery, factory: RecordingFactory
    ) -> None:
        await loggable_query.for_target_type(["Job", "Task"]).for_target_id([10, 20]).all()

        _, ops = factory.runs[0]
        assert _wheres(ops) == [
            ("loggable_type", "in", ["Job", "Task"]),
            ("loggable_id", "in", [10, 20]),
        ]

    @pytest.mark.asyncio
    async def test_order_limit_offset_and_includes(
        self, loggable_query: ChainableQuery, factory: RecordingFactory
    ) -> None:
        await (
            loggable_query.where("action", "created")
            .order_by("id", "desc")
            .limit(2)
            .offset(1)
            .include("user")
            .all()
        )

        _, ops = factory.runs[0]
        assert ops == (
            ("where", "action", "=", "created"),
            ("order_by", "id", "desc"),
            ("limit", 2),
            ("offset", 1),
            ("related", "user"),
        )

    @pytest.mark.asyncio
    async def test_rebinding_changes_columns(self, loggable_query: ChainableQuery) -> None:
        notable = loggable_query.for_polymorphic_type("notable")

        assert notable.polymorphic_type == "notable"
        assert notable.id_field == "notable_id"
        assert notable.type_field == "notable_type"
        assert loggable_query.id_field == "loggable_id"

    @pytest.mark.asyncio
    async def test_multiple_polymorphic_types(self, loggable_query: ChainableQuery) -> None:
        combined = loggable_query.for_polymorphic_type(["notable", "loggable"])

        assert combined.polymorphic_type == "loggable"
        assert combined.get_valid_target_types() == ["people", "jobs", "tasks"]
        combined.for_target_type("Person").validate()

        with pytest.raises(PolymorphicValidationError):
            loggable_query.for_polymorphic_type([])

    @pytest.mark.asyncio
    async def test_custom_column_names(
        self, loggable_tracker: PolymorphicTracker, factory: RecordingFactory
    ) -> None:
        query = create_polymorphic_query(
            "audit_entries",
            "loggable",
            loggable_tracker,
            factory,
            id_field="subject_id",
            type_field="subject_kind",
        )

        assert query.id_field == "subject_id"
        assert query.type_field == "subject_kind"
        assert query.for_target_type("Job").build_target_conditions("Job") == {"subject_kind": "Job"}


# =============================================================================
# Terminal Operations
# =============================================================================


class TestTerminals:
    """Tests for all, first, count, exists and paginate."""

    @pytest.mark.asyncio
    async def test_all_filters_by_target_type(self, loggable_query: ChainableQuery) -> None:
        rows = await loggable_query.for_target_type("Job").all()

        assert [row["id"] for row in rows] == [1, 2]

    @pytest.mark.asyncio
    async def test_first(self, loggable_query: ChainableQuery, factory: RecordingFactory) -> None:
        row = await loggable_query.for_target_type("Task").first()
        missing = await loggable_query.for_target_type("Task").for_target_id(999).first()

        assert row["id"] == 3
        assert missing is None
        assert ("limit", 1) in factory.runs[0][1]

    @pytest.mark.asyncio
    async def test_count_ignores_paging(
        self, loggable_query: ChainableQuery, factory: RecordingFactory
    ) -> None:
        count = await loggable_query.for_target_type("Job").limit(1).offset(1).include("user").count()

        assert count == 2
        ops = factory.runs[0][1]
        assert all(op[0] == "where" for op in ops)

    @pytest.mark.asyncio
    async def test_exists(self, loggable_query: ChainableQuery) -> None:
        assert await loggable_query.for_target_type("Job").exists() is True
        assert await loggable_query.for_target_type("Job").for_target_id(999).exists() is False

    @pytest.mark.asyncio
    async def test_exists_swallows_execution_errors(self, loggable_tracker: PolymorphicTracker) -> None:
        query = create_loggable_query(loggable_tracker, RecordingFactory(fail=True))

        assert await query.exists() is False

    @pytest.mark.asyncio
    async def test_exists_reports_factory_errors_as_false(
        self, loggable_tracker: PolymorphicTracker
    ) -> None:
        def unknown_table(table_name: str) -> RowQuery:
            raise ValueError(f"Unknown table '{table_name}'")

        query = create_loggable_query(loggable_tracker, unknown_table).for_target_type("Job")

        assert await query.exists() is False
        with pytest.raises(PolymorphicValidationError):
            await create_loggable_query(loggable_tracker, unknown_table).for_target_type(
                "Invoice"
            ).exists()

    @pytest.mark.asyncio
    async def test_all_propagates_execution_errors(self, loggable_tracker: PolymorphicTracker) -> None:
        query = create_loggable_query(loggable_tracker, RecordingFactory(fail=True))

        with pytest.raises(ConnectionError):
            await query.all()
        with pytest.raises(ConnectionError):
            await query.count()

    @pytest.mark.asyncio
    async def test_paginate(self, loggable_query: ChainableQuery) -> None:
        page = await loggable_query.order_by("id").paginate(page=3, per_page=2)

        assert page.total == 5
        assert page.total_pages == 3
        assert page.page == 3
        assert page.per_page == 2
        assert [row["id"] for row in page.data] == [5]

    @pytest.mark.asyncio
    async def test_paginate_empty(self, loggable_query: ChainableQuery) -> None:
        page = await loggable_query.for_target_type("Job").for_target_id(999).paginate()

        assert page.total == 0
        assert page.total_pages == 0
        assert page.data == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("page", "per_page"), [(0, 10), (1, 0), (-1, -1)])
    async def test_paginate_rejects_non_positive(
        self, loggable_query: ChainableQuery, page: int, per_page: int
    ) -> None:
        with pytest.raises(PolymorphicValidationError):
            await loggable_query.paginate(page=page, per_page=per_page)


# =============================================================================
# Eager Loading
# =============================================================================


class TestEagerLoading:
    """Tests for include_polymorphic_targets()."""

    @pytest.mark.asyncio
    async def test_attaches_targets_with_one_query_per_type(
        self, loggable_query: ChainableQuery, factory: RecordingFactory
    ) -> None:
        rows = await loggable_query.include_polymorphic_targets().order_by("id").all()

        by_id = {row["id"]: row for row in rows}
        assert by_id[1]["loggable"] == {"id": 10, "title": "Server migration"}
        assert by_id[2]["loggable"] == {"id": 11, "title": "Printer repair"}
        assert by_id[3]["loggable"] == {"id": 20, "title": "Back up data"}
        assert by_id[4]["loggable"] is None  # clients has no row 30
        assert by_id[5]["loggable"] is None

        follow_ups = [table for table, _ in factory.runs[1:]]
        assert sorted(follow_ups) == ["clients", "jobs", "tasks"]
        jobs_ops = next(ops for table, ops in factory.runs if table == "jobs")
        assert _wheres(jobs_ops) == [("id", "in", [10, 11])]

    @pytest.mark.asyncio
    async def test_source_rows_are_not_mutated(self, loggable_query: ChainableQuery) -> None:
        await loggable_query.include_polymorphic_targets().all()

        assert all("loggable" not in row for row in ACTIVITY_LOGS)

    @pytest.mark.asyncio
    async def test_target_types_restrict_loading(
        self, loggable_query: ChainableQuery, factory: RecordingFactory
    ) -> None:
        rows = await loggable_query.include_polymorphic_targets(target_types=["tasks"]).all()

        assert [table for table, _ in factory.runs[1:]] == ["tasks"]
        by_id = {row["id"]: row for row in rows}
        assert by_id[1]["loggable"] is None
        assert by_id[3]["loggable"]["title"] == "Back up data"

    @pytest.mark.asyncio
    async def test_target_callback_refines_follow_ups(
        self, loggable_query: ChainableQuery, factory: RecordingFactory
    ) -> None:
        seen: list[str] = []

        def refine(query: RowQuery, model_name: str) -> RowQuery:
            seen.append(model_name)
            if model_name == "Job":
                return query.where("title", "Printer repair")
            return query

        rows = await loggable_query.for_target_type("Job").include_polymorphic_targets(
            target_callback=refine
        ).all()

        assert seen == ["Job"]
        assert [row["loggable"] for row in rows] == [None, {"id": 11, "title": "Printer repair"}]

    @pytest.mark.asyncio
    async def test_unknown_model_left_unresolved(
        self, loggable_tracker: PolymorphicTracker
    ) -> None:
        factory = RecordingFactory(
            {"activity_logs": [{"id": 1, "loggable_id": 5, "loggable_type": "Invoice"}]}
        )

        rows = await create_loggable_query(loggable_tracker, factory).include_polymorphic_targets().all()

        assert rows == [{"id": 1, "loggable_id": 5, "loggable_type": "Invoice", "loggable": None}]
        assert factory.calls == ["activity_logs"]


# =============================================================================
# Factories and Metadata
# =============================================================================


class TestFactories:
    """Tests for the per-type query factories."""

    @pytest.mark.parametrize(
        ("create", "table_name", "polymorphic_type"),
        [
            (create_notable_query, "notes", "notable"),
            (create_loggable_query, "activity_logs", "loggable"),
            (create_schedulable_query, "scheduled_date_times", "schedulable"),
            (create_target_query, "job_targets", "target"),
            (create_parseable_query, "parsed_emails", "parseable"),
        ],
    )
    @pytest.mark.asyncio
    async def test_default_tables(
        self,
        create: Callable[..., ChainableQuery],
        table_name: str,
        polymorphic_type: str,
        tracker: PolymorphicTracker,
        factory: RecordingFactory,
    ) -> None:
        query = create(tracker, factory)

        assert query.table_name == table_name
        assert query.polymorphic_type == polymorphic_type
        assert query.id_field == f"{polymorphic_type}_id"

    @pytest.mark.asyncio
    async def test_table_override(self, tracker: PolymorphicTracker, factory: RecordingFactory) -> None:
        assert create_notable_query(tracker, factory, table_name="job_notes").table_name == "job_notes"

    @pytest.mark.asyncio
    async def test_polymorphic_metadata(self, loggable_query: ChainableQuery) -> None:
        query = (
            loggable_query.for_target_type("Job")
            .where("action", "created")
            .limit(5)
            .include_polymorphic_targets(target_callback=lambda q, m: q)
        )

        metadata = query.get_polymorphic_metadata()

        assert metadata["type"] == "loggable"
        assert metadata["id_field"] == "loggable_id"
        assert metadata["valid_targets"] == ["jobs", "tasks"]
        assert metadata["conditions"]["target_type"] == "Job"
        assert metadata["conditions"]["filters"] == [["action", "=", "created"]]
        assert metadata["conditions"]["limit"] == 5
        assert metadata["eager_loading"]["include_targets"] is True
        assert metadata["eager_loading"]["has_target_callback"] is True
        assert "target_callback" not in metadata["eager_loading"]

    @pytest.mark.asyncio
    async def test_repr(self, loggable_query: ChainableQuery) -> None:
        assert "activity_logs" in repr(loggable_query)
        assert "loggable" in repr(loggable_query)
