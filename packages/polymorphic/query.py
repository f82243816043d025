"""
Chainable, immutable queries over rows carrying a polymorphic column pair.

Every chain method returns a new ChainableQuery with a copied condition
set, so branching a base query never leaks filters between branches:

    base = create_loggable_query(tracker, factory)
    jobs = base.for_target_type("Job")
    tasks = base.for_target_type("Task")   # base and jobs are unchanged

Target-type filters are checked against the tracker's active targets
before anything is sent to the query factory. Eager loading issues one
follow-up query per target type actually present in the results.
"""

import logging
import math
from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import asdict, dataclass, field, replace
from typing import Any

from packages.polymorphic.exceptions import PolymorphicValidationError
from packages.polymorphic.execution import QueryFactory, Row, RowQuery
from packages.polymorphic.schemas import Page, PolymorphicType
from packages.polymorphic.tracker import PolymorphicTracker

logger = logging.getLogger(__name__)

TargetCallback = Callable[[RowQuery, str], RowQuery]


def _as_tuple(value: Any) -> tuple[Any, ...]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(value)
    return (value,)


@dataclass(frozen=True)
class EagerLoadConfig:
    include_targets: bool = False
    target_types: tuple[str, ...] | None = None
    target_callback: TargetCallback | None = None
    primary_key: str = "id"


@dataclass(frozen=True)
class QueryConditions:
    polymorphic_type: PolymorphicType | tuple[PolymorphicType, ...] | None = None
    target_type: str | tuple[str, ...] | None = None
    target_id: Any = None
    filters: tuple[tuple[str, str, Any], ...] = ()
    order_by: tuple[tuple[str, str], ...] = ()
    limit: int | None = None
    offset: int | None = None
    includes: tuple[tuple[str, Callable[[RowQuery], RowQuery] | None], ...] = ()
    eager_loading: EagerLoadConfig = field(default_factory=EagerLoadConfig)


class ChainableQuery:
    """Immutable query builder bound to an owner table and a polymorphic type."""

    def __init__(
        self,
        table_name: str,
        tracker: PolymorphicTracker,
        query_factory: QueryFactory,
        *,
        polymorphic_type: PolymorphicType | None = None,
        id_field: str | None = None,
        type_field: str | None = None,
        conditions: QueryConditions | None = None,
    ):
        self.table_name = table_name
        self._tracker = tracker
        self._query_factory = query_factory
        self._conditions = conditions or QueryConditions(polymorphic_type=polymorphic_type)
        bound = self._conditions.polymorphic_type
        if isinstance(bound, tuple):
            bound = bound[0] if bound else None
        self._bound_type: PolymorphicType | None = polymorphic_type or bound
        self._id_field = id_field
        self._type_field = type_field

    @property
    def conditions(self) -> QueryConditions:
        return self._conditions

    @property
    def polymorphic_type(self) -> PolymorphicType | None:
        return self._bound_type

    @property
    def id_field(self) -> str | None:
        if self._id_field:
            return self._id_field
        return f"{self._bound_type}_id" if self._bound_type else None

    @property
    def type_field(self) -> str | None:
        if self._type_field:
            return self._type_field
        return f"{self._bound_type}_type" if self._bound_type else None

    def _clone(
        self,
        *,
        bound_type: PolymorphicType | None = None,
        rebind: bool = False,
        **changes: Any,
    ) -> "ChainableQuery":
        clone = ChainableQuery(
            self.table_name,
            self._tracker,
            self._query_factory,
            polymorphic_type=bound_type if rebind else self._bound_type,
            id_field=None if rebind else self._id_field,
            type_field=None if rebind else self._type_field,
            conditions=replace(self._conditions, **changes),
        )
        return clone

    # =========================================================================
    # Chain Methods
    # =========================================================================

    def for_polymorphic_type(
        self, polymorphic_type: PolymorphicType | Sequence[PolymorphicType]
    ) -> "ChainableQuery":
        """
        Bind one type (rebinding the column pair) or several types.

        With several types, target validation accepts the union of their
        targets and the columns of the currently bound type (or the first
        listed) are used.
        """
        if isinstance(polymorphic_type, str):
            return self._clone(
                bound_type=polymorphic_type,
                rebind=polymorphic_type != self._bound_type,
                polymorphic_type=polymorphic_type,
            )

        types = tuple(polymorphic_type)
        if not types:
            raise PolymorphicValidationError("for_polymorphic_type() needs at least one type")
        if self._bound_type in types:
            return self._clone(polymorphic_type=types)
        return self._clone(bound_type=types[0], rebind=True, polymorphic_type=types)

    def for_target_type(self, target_type: str | Sequence[str]) -> "ChainableQuery":
        """Filter by target model name or table name (one or several)."""
        value = target_type if isinstance(target_type, str) else tuple(target_type)
        return self._clone(target_type=value)

    def for_target_id(self, target_id: Any) -> "ChainableQuery":
        """Filter by target id (one or several)."""
        if isinstance(target_id, (list, set, frozenset)):
            target_id = tuple(target_id)
        return self._clone(target_id=target_id)

    def include_polymorphic_targets(
        self,
        *,
        target_types: Iterable[str] | None = None,
        target_callback: TargetCallback | None = None,
        primary_key: str = "id",
    ) -> "ChainableQuery":
        """
        Attach each row's target row under the polymorphic type name.

        Args:
            target_types: Only load these targets (model or table names)
            target_callback: Refines each follow-up query; called with the
                query and the target model name
            primary_key: Target tables' key column
        """
        return self._clone(
            eager_loading=EagerLoadConfig(
                include_targets=True,
                target_types=tuple(target_types) if target_types is not None else None,
                target_callback=target_callback,
                primary_key=primary_key,
            )
        )

    def include(
        self,
        relationship_name: str,
        refine: Callable[[RowQuery], RowQuery] | None = None,
    ) -> "ChainableQuery":
        """Eager load an ordinary registered relationship."""
        return self._clone(includes=self._conditions.includes + ((relationship_name, refine),))

    def where(self, column: str, value: Any, op: str = "=") -> "ChainableQuery":
        return self._clone(filters=self._conditions.filters + ((column, op, value),))

    def order_by(self, column: str, direction: str = "asc") -> "ChainableQuery":
        return self._clone(order_by=self._conditions.order_by + ((column, direction),))

    def limit(self, count: int) -> "ChainableQuery":
        return self._clone(limit=count)

    def offset(self, count: int) -> "ChainableQuery":
        return self._clone(offset=count)

    # =========================================================================
    # Validation
    # =========================================================================

    def _types(self) -> tuple[PolymorphicType, ...]:
        bound = self._conditions.polymorphic_type
        if bound is None:
            return (self._bound_type,) if self._bound_type else ()
        return _as_tuple(bound)

    def get_valid_target_types(self) -> list[str]:
        """Active target tables across the bound type(s)."""
        targets: list[str] = []
        for polymorphic_type in self._types():
            for table_name in self._tracker.get_valid_targets(polymorphic_type):
                if table_name not in targets:
                    targets.append(table_name)
        return targets

    def _resolve_model_name(self, name: str) -> str | None:
        for polymorphic_type in self._types():
            association = self._tracker.get_association_config(polymorphic_type)
            if association is None:
                continue
            for table_name, target in association.valid_targets.items():
                if target.active and name in (target.model_name, table_name):
                    return target.model_name
        return None

    def _resolve_model_names(self, names: Iterable[str], what: str) -> list[str]:
        types = self._types()
        if not types:
            raise PolymorphicValidationError(
                f"Cannot filter by {what} without a polymorphic type; "
                "call for_polymorphic_type() first"
            )

        resolved: list[str] = []
        invalid: list[str] = []
        for name in names:
            model_name = self._resolve_model_name(name)
            if model_name is None:
                invalid.append(str(name))
            elif model_name not in resolved:
                resolved.append(model_name)

        if invalid:
            valid = self.get_valid_target_types()
            raise PolymorphicValidationError(
                f"Invalid target type(s) '{', '.join(invalid)}' for polymorphic type "
                f"'{', '.join(types)}'. Valid targets: {', '.join(valid) or '(none)'}",
                errors=[
                    {"target_type": name, "polymorphic_type": list(types), "valid_targets": valid}
                    for name in invalid
                ],
            )
        return resolved

    def validate(self) -> None:
        """
        Check the condition set against the tracker.

        Raises:
            PolymorphicValidationError: Unknown polymorphic type, a target
                type that is not an active target, or a target filter
                without a bound type
        """
        for polymorphic_type in self._types():
            if self._tracker.get_association_config(polymorphic_type) is None:
                raise PolymorphicValidationError(
                    f"Unknown polymorphic type '{polymorphic_type}'",
                    errors=[{"polymorphic_type": polymorphic_type}],
                )

        if self._conditions.target_type is not None:
            self._resolve_model_names(_as_tuple(self._conditions.target_type), "target type")

        if self._conditions.target_id is not None and not self._types():
            raise PolymorphicValidationError(
                "Cannot filter by target id without a polymorphic type; "
                "call for_polymorphic_type() first"
            )

        target_types = self._conditions.eager_loading.target_types
        if target_types is not None:
            self._resolve_model_names(target_types, "eager-loaded target type")

    def build_target_conditions(self, target_type: str) -> dict[str, str]:
        """Column filter selecting rows that point at target_type."""
        model_name = self._resolve_model_names([target_type], "target type")[0]
        return {self.type_field or "": model_name}

    # =========================================================================
    # Building
    # =========================================================================

    def _build(self, *, paginated: bool = True, with_includes: bool = True) -> RowQuery:
        self.validate()
        conditions = self._conditions

        query = self._query_factory(self.table_name)

        if conditions.target_type is not None:
            model_names = self._resolve_model_names(_as_tuple(conditions.target_type), "target type")
            if isinstance(conditions.target_type, str):
                query = query.where(self.type_field, model_names[0])
            else:
                query = query.where(self.type_field, model_names, op="in")

        if conditions.target_id is not None:
            if isinstance(conditions.target_id, tuple):
                query = query.where(self.id_field, list(conditions.target_id), op="in")
            else:
                query = query.where(self.id_field, conditions.target_id)

        for column, op, value in conditions.filters:
            query = query.where(column, value, op=op)

        for column, direction in conditions.order_by:
            query = query.order_by(column, direction)

        if paginated:
            if conditions.limit is not None:
                query = query.limit(conditions.limit)
            if conditions.offset is not None:
                query = query.offset(conditions.offset)

        if with_includes:
            for name, refine in conditions.includes:
                query = query.related(name, refine)

        return query

    async def _load_polymorphic_targets(self, rows: list[Row]) -> list[Row]:
        eager = self._conditions.eager_loading
        id_field, type_field = self.id_field, self.type_field
        attach_as = self._bound_type or "target"

        allowed: set[str] | None = None
        if eager.target_types is not None:
            allowed = set(self._resolve_model_names(eager.target_types, "eager-loaded target type"))

        ids_by_model: dict[str, set[Any]] = defaultdict(set)
        for row in rows:
            model_name, target_id = row.get(type_field), row.get(id_field)
            if model_name is None or target_id is None:
                continue
            if allowed is not None and model_name not in allowed:
                continue
            ids_by_model[model_name].add(target_id)

        loaded: dict[str, dict[Any, Row]] = {}
        for model_name, ids in ids_by_model.items():
            target = self._find_target(model_name)
            if target is None:
                logger.warning(
                    f"No tracked target for {type_field}='{model_name}' on {self.table_name}; "
                    "rows left unresolved"
                )
                continue

            query = self._query_factory(target).where(
                eager.primary_key, sorted(ids, key=str), op="in"
            )
            if eager.target_callback is not None:
                query = eager.target_callback(query, model_name)
            loaded[model_name] = {
                target_row.get(eager.primary_key): target_row for target_row in await query.run()
            }

        logger.debug(
            f"Eager loaded {len(loaded)} target types for {len(rows)} {self.table_name} rows"
        )
        return [
            {**row, attach_as: loaded.get(row.get(type_field), {}).get(row.get(id_field))}
            for row in rows
        ]

    def _find_target(self, model_name: str) -> str | None:
        for polymorphic_type in self._types():
            target = self._tracker.find_target_by_model(
                polymorphic_type, model_name, include_inactive=True
            )
            if target is not None and target.table_name:
                return target.table_name
        return None

    # =========================================================================
    # Terminal Operations
    # =========================================================================

    async def all(self) -> list[Row]:
        """Run the query and return every matching row."""
        query = self._build()
        try:
            rows = await query.run()
            if self._conditions.eager_loading.include_targets:
                rows = await self._load_polymorphic_targets(rows)
        except Exception as e:
            logger.error(f"Query on {self.table_name} failed: {e}")
            raise
        return rows

    async def first(self) -> Row | None:
        rows = await self.limit(1).all()
        return rows[0] if rows else None

    async def count(self) -> int:
        """Number of matching rows, ignoring limit, offset and eager loading."""
        query = self._build(paginated=False, with_includes=False)
        try:
            return len(await query.run())
        except Exception as e:
            logger.error(f"Count on {self.table_name} failed: {e}")
            raise

    async def exists(self) -> bool:
        """
        True if any row matches.

        Execution failures are logged and reported as False. Invalid
        conditions still raise.
        """
        self.validate()
        try:
            query = self.limit(1)._build(with_includes=False)
            return bool(await query.run())
        except Exception as e:
            logger.warning(f"Exists check on {self.table_name} failed: {e}")
            return False

    async def paginate(self, page: int = 1, per_page: int = 10) -> Page:
        if page < 1 or per_page < 1:
            raise PolymorphicValidationError(
                "page and per_page must be positive integers",
                errors=[{"page": page, "per_page": per_page}],
            )

        total = await self.count()
        data = await self.offset((page - 1) * per_page).limit(per_page).all()
        return Page(
            data=data,
            page=page,
            per_page=per_page,
            total=total,
            total_pages=math.ceil(total / per_page),
        )

    # =========================================================================
    # Introspection
    # =========================================================================

    def get_polymorphic_metadata(self) -> dict[str, Any]:
        """Snapshot of the bound type, its targets and the current conditions."""
        conditions = self._conditions
        eager = conditions.eager_loading
        return {
            "type": self._bound_type,
            "types": list(self._types()),
            "id_field": self.id_field,
            "type_field": self.type_field,
            "valid_targets": self.get_valid_target_types(),
            "conditions": {
                "target_type": conditions.target_type,
                "target_id": conditions.target_id,
                "filters": [list(f) for f in conditions.filters],
                "order_by": [list(o) for o in conditions.order_by],
                "limit": conditions.limit,
                "offset": conditions.offset,
                "includes": [name for name, _ in conditions.includes],
            },
            "eager_loading": {
                key: value
                for key, value in asdict(eager).items()
                if key != "target_callback"
            }
            | {"has_target_callback": eager.target_callback is not None},
        }

    def __repr__(self) -> str:
        return (
            f"ChainableQuery(table={self.table_name!r}, type={self._bound_type!r}, "
            f"conditions={self._conditions!r})"
        )


# =============================================================================
# Factories
# =============================================================================


def create_polymorphic_query(
    table_name: str,
    polymorphic_type: PolymorphicType,
    tracker: PolymorphicTracker,
    query_factory: QueryFactory,
    *,
    id_field: str | None = None,
    type_field: str | None = None,
) -> ChainableQuery:
    return ChainableQuery(
        table_name,
        tracker,
        query_factory,
        polymorphic_type=polymorphic_type,
        id_field=id_field,
        type_field=type_field,
    )


def create_notable_query(
    tracker: PolymorphicTracker, query_factory: QueryFactory, table_name: str = "notes"
) -> ChainableQuery:
    return create_polymorphic_query(table_name, "notable", tracker, query_factory)


def create_loggable_query(
    tracker: PolymorphicTracker, query_factory: QueryFactory, table_name: str = "activity_logs"
) -> ChainableQuery:
    return create_polymorphic_query(table_name, "loggable", tracker, query_factory)


def create_schedulable_query(
    tracker: PolymorphicTracker,
    query_factory: QueryFactory,
    table_name: str = "scheduled_date_times",
) -> ChainableQuery:
    return create_polymorphic_query(table_name, "schedulable", tracker, query_factory)


def create_target_query(
    tracker: PolymorphicTracker, query_factory: QueryFactory, table_name: str = "job_targets"
) -> ChainableQuery:
    return create_polymorphic_query(table_name, "target", tracker, query_factory)


def create_parseable_query(
    tracker: PolymorphicTracker, query_factory: QueryFactory, table_name: str = "parsed_emails"
) -> ChainableQuery:
    return create_polymorphic_query(table_name, "parseable", tracker, query_factory)
