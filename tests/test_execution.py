"""
Tests for SQLAlchemyRowQuery against in-memory SQLite.

Tests:
1. Filters, operators, ordering and paging
2. Builder immutability and input checking
3. Related loading for belongs-to, has-many and has-one relationships
"""

import pytest
from sqlalchemy.orm import Session

from db import Base
from packages.polymorphic.execution import SQLAlchemyQueryFactory
from packages.polymorphic.relationships import (
    DirectRelationship,
    InMemoryRelationshipRegistry,
    RelationshipType,
)


@pytest.fixture
def query_factory(
    db_session: Session,
    relationship_registry: InMemoryRelationshipRegistry,
) -> SQLAlchemyQueryFactory:
    return SQLAlchemyQueryFactory(db_session, Base.metadata, relationship_registry)


def _loggable_job() -> DirectRelationship:
    return DirectRelationship(
        name="loggableJob",
        source_table="activity_logs",
        type=RelationshipType.BELONGS_TO,
        model="Job",
        target_table="jobs",
        foreign_key="loggable_id",
        discriminator_column="loggable_type",
        discriminator_value="Job",
        polymorphic_type="loggable",
    )


def _job_activity_logs(relationship_type: RelationshipType = RelationshipType.HAS_MANY) -> DirectRelationship:
    return DirectRelationship(
        name="activityLogs",
        source_table="jobs",
        type=relationship_type,
        model="ActivityLog",
        target_table="activity_logs",
        foreign_key="loggable_id",
        discriminator_column="loggable_type",
        discriminator_value="Job",
        polymorphic_type="loggable",
    )


# =============================================================================
# Filtering
# =============================================================================


class TestFiltering:
    """Tests for where/order_by/limit/offset."""

    @pytest.mark.asyncio
    async def test_run_returns_dict_rows(
        self, query_factory: SQLAlchemyQueryFactory, seeded_db
    ) -> None:
        rows = await query_factory("jobs").order_by("title").run()

        assert [row["title"] for row in rows] == ["Printer repair", "Server migration"]
        assert all(row["client_id"] == seeded_db.client_id for row in rows)

    @pytest.mark.asyncio
    async def test_in_operator_with_uuids(
        self, query_factory: SQLAlchemyQueryFactory, seeded_db
    ) -> None:
        rows = await query_factory("activity_logs").where("loggable_id", seeded_db.job_ids, op="in").run()

        assert len(rows) == 2
        assert {row["loggable_type"] for row in rows} == {"Job"}

    @pytest.mark.asyncio
    async def test_none_compares_as_null(
        self, query_factory: SQLAlchemyQueryFactory, seeded_db
    ) -> None:
        without_user = await query_factory("activity_logs").where("user_id", None).run()
        with_user = await query_factory("activity_logs").where("user_id", None, op="!=").run()

        assert [row["loggable_type"] for row in without_user] == ["Client"]
        assert len(with_user) == 3

    @pytest.mark.asyncio
    async def test_like_and_not_in(
        self, query_factory: SQLAlchemyQueryFactory, seeded_db
    ) -> None:
        servers = await query_factory("jobs").where("title", "Server%", op="like").run()
        not_jobs = await query_factory("activity_logs").where(
            "loggable_type", ["Job"], op="not in"
        ).run()

        assert [row["title"] for row in servers] == ["Server migration"]
        assert sorted(row["loggable_type"] for row in not_jobs) == ["Client", "Task"]

    @pytest.mark.asyncio
    async def test_limit_and_offset(
        self, query_factory: SQLAlchemyQueryFactory, seeded_db
    ) -> None:
        rows = await query_factory("jobs").order_by("title", "desc").limit(1).offset(1).run()

        assert [row["title"] for row in rows] == ["Printer repair"]


class TestBuilder:
    """Tests for immutability and input checking."""

    @pytest.mark.asyncio
    async def test_chain_methods_return_copies(
        self, query_factory: SQLAlchemyQueryFactory, seeded_db
    ) -> None:
        base = query_factory("jobs")
        filtered = base.where("title", "Server migration")

        assert len(await base.run()) == 2
        assert len(await filtered.run()) == 1

    def test_unknown_column(self, query_factory: SQLAlchemyQueryFactory) -> None:
        with pytest.raises(ValueError, match="Unknown column"):
            query_factory("jobs").where("nope", 1)
        with pytest.raises(ValueError):
            query_factory("jobs").order_by("nope")

    def test_unsupported_operator_and_direction(self, query_factory: SQLAlchemyQueryFactory) -> None:
        with pytest.raises(ValueError, match="Unsupported operator"):
            query_factory("jobs").where("title", "x", op="~")
        with pytest.raises(ValueError, match="Unsupported sort direction"):
            query_factory("jobs").order_by("title", "sideways")

    def test_unknown_table(self, query_factory: SQLAlchemyQueryFactory) -> None:
        with pytest.raises(ValueError, match="Unknown table"):
            query_factory("invoices")

    def test_build_statement(self, query_factory: SQLAlchemyQueryFactory) -> None:
        stmt = query_factory("jobs").where("title", "x").order_by("title").limit(3).build_statement()
        sql = str(stmt)

        assert "WHERE jobs.title" in sql
        assert "ORDER BY jobs.title" in sql
        assert "LIMIT" in sql


# =============================================================================
# Related Loading
# =============================================================================


class TestRelatedLoading:
    """Tests for related() over registered DirectRelationships."""

    @pytest.mark.asyncio
    async def test_belongs_to_respects_discriminator(
        self,
        query_factory: SQLAlchemyQueryFactory,
        relationship_registry: InMemoryRelationshipRegistry,
        seeded_db,
    ) -> None:
        relationship_registry.register(_loggable_job())

        rows = await query_factory("activity_logs").related("loggableJob").run()

        for row in rows:
            if row["loggable_type"] == "Job":
                assert row["loggableJob"]["id"] == row["loggable_id"]
            else:
                assert row["loggableJob"] is None
        assert sum(1 for row in rows if row["loggableJob"] is not None) == 2

    @pytest.mark.asyncio
    async def test_belongs_to_refine(
        self,
        query_factory: SQLAlchemyQueryFactory,
        relationship_registry: InMemoryRelationshipRegistry,
        seeded_db,
    ) -> None:
        relationship_registry.register(_loggable_job())

        rows = await (
            query_factory("activity_logs")
            .where("loggable_type", "Job")
            .related("loggableJob", lambda q: q.where("title", "Printer repair"))
            .run()
        )

        titles = sorted(row["loggableJob"]["title"] for row in rows if row["loggableJob"])
        assert titles == ["Printer repair"]

    @pytest.mark.asyncio
    async def test_has_many(
        self,
        query_factory: SQLAlchemyQueryFactory,
        relationship_registry: InMemoryRelationshipRegistry,
        seeded_db,
    ) -> None:
        relationship_registry.register(_job_activity_logs())

        rows = await query_factory("jobs").related("activityLogs").run()

        by_id = {row["id"]: row for row in rows}
        first, second = seeded_db.job_ids
        assert [log["action"] for log in by_id[first]["activityLogs"]] == ["created"]
        assert [log["action"] for log in by_id[second]["activityLogs"]] == ["updated"]

    @pytest.mark.asyncio
    async def test_has_one(
        self,
        query_factory: SQLAlchemyQueryFactory,
        relationship_registry: InMemoryRelationshipRegistry,
        seeded_db,
    ) -> None:
        relationship_registry.register(_job_activity_logs(RelationshipType.HAS_ONE))

        rows = await query_factory("jobs").where("id", seeded_db.job_ids[0]).related("activityLogs").run()

        assert rows[0]["activityLogs"]["action"] == "created"

    @pytest.mark.asyncio
    async def test_unregistered_relationship(
        self, query_factory: SQLAlchemyQueryFactory, seeded_db
    ) -> None:
        with pytest.raises(ValueError, match="No direct relationship"):
            await query_factory("jobs").related("activityLogs").run()
