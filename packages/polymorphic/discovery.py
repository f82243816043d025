"""
Polymorphic association discovery.

Scans a live schema for {stem}_id / {stem}_type column pairs and proposes
polymorphic types with their targets. No type list is hardcoded: a stem
is accepted when it is already tracked or reads like an association name
("notable", "loggable", "attachable", ...).

Introspection failures never propagate: every public scan returns an
empty result and logs a warning instead.
"""

import logging
import time
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from packages.polymorphic.introspection import SchemaIntrospector
from packages.polymorphic.naming import generate_model_name, target_relationship_name
from packages.polymorphic.schemas import (
    ColumnInfo,
    ComplexityMetrics,
    Confidence,
    DiscoveryMetadata,
    DiscoveryResult,
    DiscoveryTarget,
    ForeignKeyInfo,
    InconsistencyKind,
    PolymorphicColumnPair,
    SchemaAnalysis,
    SchemaComplexity,
    SchemaInconsistency,
    TargetSource,
)

if TYPE_CHECKING:
    from packages.polymorphic.registry import PolymorphicRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiscoveryConfig:
    """Column naming and typing conventions used by discovery."""

    id_suffix: str = "_id"
    type_suffix: str = "_type"
    polymorphic_stem_suffixes: tuple[str, ...] = ("able", "ible")
    # Substrings of lower-cased SQL type names
    id_column_types: tuple[str, ...] = ("uuid", "int", "char(32)", "char(36)")
    type_column_types: tuple[str, ...] = ("char", "text", "string", "clob")


@dataclass
class _SchemaSnapshot:
    tables: list[str]
    columns: dict[str, list[ColumnInfo]]
    foreign_keys: list[ForeignKeyInfo]
    taken_at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class _ColumnPair:
    table: str
    stem: str
    id_column: ColumnInfo
    type_column: ColumnInfo


class PolymorphicDiscovery:
    """Propose polymorphic types and targets from a live schema."""

    def __init__(
        self,
        introspector: SchemaIntrospector,
        *,
        registry: "PolymorphicRegistry | None" = None,
        config: DiscoveryConfig | None = None,
        cache_ttl_seconds: float | None = None,
    ):
        """
        Args:
            introspector: Schema source
            registry: Optional registry; its tracker decides which stems are
                already known and apply_discoveries() writes through it
            config: Naming conventions (defaults built from settings)
            cache_ttl_seconds: Schema snapshot lifetime (defaults to settings)
        """
        if config is None or cache_ttl_seconds is None:
            from apps.api.config import get_settings

            settings = get_settings()
            if config is None:
                config = DiscoveryConfig(
                    id_suffix=settings.discovery_id_suffix,
                    type_suffix=settings.discovery_type_suffix,
                )
            if cache_ttl_seconds is None:
                cache_ttl_seconds = settings.discovery_cache_ttl_seconds

        self.introspector = introspector
        self.registry = registry
        self.config = config
        self.cache_ttl_seconds = cache_ttl_seconds
        self._snapshot: _SchemaSnapshot | None = None

    def get_discovery_config(self) -> DiscoveryConfig:
        return self.config

    # =========================================================================
    # Schema Snapshot
    # =========================================================================

    def clear_cache(self) -> None:
        """Drop the cached schema snapshot."""
        self._snapshot = None

    def _get_snapshot(self) -> _SchemaSnapshot:
        snapshot = self._snapshot
        if snapshot is not None and time.monotonic() - snapshot.taken_at < self.cache_ttl_seconds:
            return snapshot

        tables = [table for table in self.introspector.get_table_names() if table]
        columns = {
            table: self._normalize_columns(self.introspector.get_table_columns(table))
            for table in tables
        }
        foreign_keys = self._normalize_foreign_keys(self.introspector.get_foreign_keys())

        snapshot = _SchemaSnapshot(tables=tables, columns=columns, foreign_keys=foreign_keys)
        if self.cache_ttl_seconds > 0:
            self._snapshot = snapshot
        logger.debug(f"Introspected schema: {len(tables)} tables, {len(foreign_keys)} foreign keys")
        return snapshot

    @staticmethod
    def _normalize_columns(raw_columns: Iterable[Any] | None) -> list[ColumnInfo]:
        columns: list[ColumnInfo] = []
        for raw in raw_columns or []:
            if isinstance(raw, ColumnInfo):
                column = raw
            elif isinstance(raw, Mapping):
                try:
                    column = ColumnInfo(
                        name=raw.get("name") or "",
                        type=str(raw.get("type") or "").lower(),
                        nullable=bool(raw.get("nullable", True)),
                        primary=bool(raw.get("primary", False)),
                    )
                except PydanticValidationError:
                    continue
            else:
                continue
            if column.name:
                columns.append(column)
        return columns

    @staticmethod
    def _normalize_foreign_keys(raw_keys: Iterable[Any] | None) -> list[ForeignKeyInfo]:
        keys: list[ForeignKeyInfo] = []
        for raw in raw_keys or []:
            if isinstance(raw, ForeignKeyInfo):
                keys.append(raw)
            elif isinstance(raw, Mapping):
                try:
                    keys.append(ForeignKeyInfo.model_validate(raw))
                except PydanticValidationError:
                    continue
        return keys

    # =========================================================================
    # Column Conventions
    # =========================================================================

    def _is_tracked_type(self, stem: str) -> bool:
        if self.registry is None:
            return False
        tracker = self.registry.tracker
        return tracker.is_initialized and stem in tracker.get_polymorphic_types()

    def detect_polymorphic_type(self, id_column: str | None, type_column: str | None) -> str | None:
        """
        Return the shared stem of an id/type column pair, or None.

        notable_id / notable_type -> "notable". The stem must be a tracked
        type or end with one of the configured association suffixes, so
        user_id / user_type -> None unless "user" is tracked.
        """
        if not isinstance(id_column, str) or not isinstance(type_column, str):
            return None

        id_suffix = self.config.id_suffix
        type_suffix = self.config.type_suffix
        if not id_column.endswith(id_suffix) or not type_column.endswith(type_suffix):
            return None

        stem = id_column[: -len(id_suffix)]
        if not stem or stem != type_column[: -len(type_suffix)]:
            return None

        if self._is_tracked_type(stem) or stem.endswith(self.config.polymorphic_stem_suffixes):
            return stem
        return None

    def generate_model_name(self, table_name: str) -> str:
        """Suggest a model name (scheduled_date_times -> ScheduledDateTime)."""
        return generate_model_name(table_name)

    def _has_consistent_typing(self, pair: _ColumnPair) -> bool:
        id_type = pair.id_column.type.lower()
        type_type = pair.type_column.type.lower()
        return (
            pair.id_column.nullable
            and pair.type_column.nullable
            and any(marker in id_type for marker in self.config.id_column_types)
            and any(marker in type_type for marker in self.config.type_column_types)
        )

    def _scan_pairs(self, snapshot: _SchemaSnapshot) -> list[_ColumnPair]:
        pairs: list[_ColumnPair] = []
        for table in snapshot.tables:
            by_name = {column.name: column for column in snapshot.columns.get(table, [])}
            for name, column in by_name.items():
                if not name.endswith(self.config.id_suffix):
                    continue
                stem = name[: -len(self.config.id_suffix)]
                type_column = by_name.get(f"{stem}{self.config.type_suffix}")
                if type_column is None:
                    continue
                if self.detect_polymorphic_type(name, type_column.name) is None:
                    continue
                pairs.append(_ColumnPair(table, stem, column, type_column))
        return pairs

    @staticmethod
    def _referenced_tables(
        snapshot: _SchemaSnapshot,
        owner_tables: Iterable[str],
        id_field: str,
    ) -> list[str]:
        owners = set(owner_tables)
        referenced = {
            fk.referenced_table
            for fk in snapshot.foreign_keys
            if fk.table in owners and fk.column == id_field
        }
        return sorted(referenced)

    # =========================================================================
    # Discovery
    # =========================================================================

    def discover_polymorphic_types(self) -> list[DiscoveryResult]:
        """
        Propose one DiscoveryResult per polymorphic stem in the schema.

        Targets are the tables referenced by foreign keys from the owners'
        id columns when any exist, otherwise every non-owner table with a
        primary key.
        """
        try:
            snapshot = self._get_snapshot()
        except Exception as e:
            logger.warning(f"Schema introspection failed, skipping discovery: {e}")
            return []

        grouped: dict[str, list[_ColumnPair]] = defaultdict(list)
        for pair in self._scan_pairs(snapshot):
            grouped[pair.stem].append(pair)

        results: list[DiscoveryResult] = []
        for stem in sorted(grouped):
            pairs = grouped[stem]
            owner_tables = sorted({pair.table for pair in pairs})
            id_field = f"{stem}{self.config.id_suffix}"
            type_field = f"{stem}{self.config.type_suffix}"

            fk_targets = self._referenced_tables(snapshot, owner_tables, id_field)
            if fk_targets:
                target_tables, target_source = fk_targets, "foreign-key"
            else:
                target_tables = [
                    table
                    for table in snapshot.tables
                    if table not in owner_tables
                    and any(column.primary for column in snapshot.columns.get(table, []))
                ]
                target_source = "schema-scan"

            consistent = all(self._has_consistent_typing(pair) for pair in pairs)
            if consistent and fk_targets:
                confidence = Confidence.HIGH
            elif consistent or fk_targets:
                confidence = Confidence.MEDIUM
            else:
                confidence = Confidence.LOW

            targets = []
            for table in target_tables:
                model_name = generate_model_name(table)
                targets.append(
                    DiscoveryTarget(
                        table_name=table,
                        model_name=model_name,
                        source=target_source,
                        relationship_name=target_relationship_name(stem, model_name),
                    )
                )

            results.append(
                DiscoveryResult(
                    type=stem,
                    targets=targets,
                    owner_tables=owner_tables,
                    id_field=id_field,
                    type_field=type_field,
                    metadata=DiscoveryMetadata(confidence=confidence),
                )
            )

        logger.info(f"Discovered {len(results)} polymorphic types")
        return results

    def filter_valid_targets(self, polymorphic_type: str, candidate_tables: Iterable[str]) -> list[str]:
        """Keep candidates referenced by a foreign key from a {type}_id column."""
        try:
            snapshot = self._get_snapshot()
        except Exception as e:
            logger.warning(f"Schema introspection failed, no targets validated: {e}")
            return []

        id_field = f"{polymorphic_type}{self.config.id_suffix}"
        type_field = f"{polymorphic_type}{self.config.type_suffix}"
        owners = [
            table
            for table in snapshot.tables
            if {id_field, type_field} <= {column.name for column in snapshot.columns.get(table, [])}
        ]
        referenced = set(self._referenced_tables(snapshot, owners, id_field))
        return [table for table in candidate_tables if table in referenced]

    def validate_target_relationship(self, polymorphic_type: str, table_name: str) -> bool:
        """True if table_name has foreign-key evidence as a target of polymorphic_type."""
        return bool(self.filter_valid_targets(polymorphic_type, [table_name]))

    async def apply_discoveries(
        self,
        results: Iterable[DiscoveryResult],
        *,
        model_names: Mapping[str, str] | None = None,
        min_confidence: Confidence = Confidence.LOW,
    ) -> int:
        """
        Record discovered targets through the bound registry.

        Args:
            results: Output of discover_polymorphic_types()
            model_names: table -> model overrides for irregular plurals
                (e.g. {"people": "Person"})
            min_confidence: Skip results below this confidence

        Returns:
            Number of targets recorded

        Raises:
            RuntimeError: If no registry is bound
        """
        if self.registry is None:
            raise RuntimeError("apply_discoveries() requires a PolymorphicDiscovery bound to a registry")

        overrides = dict(model_names or {})
        applied = 0
        for result in results:
            if result.metadata.confidence.rank < min_confidence.rank:
                logger.info(
                    f"Skipping {result.type}: confidence {result.metadata.confidence.value} "
                    f"below {min_confidence.value}"
                )
                continue
            for target in result.targets:
                await self.registry.add_polymorphic_target(
                    result.type,
                    target.table_name,
                    overrides.get(target.table_name, target.model_name),
                    source=TargetSource.DISCOVERY,
                )
                applied += 1

        return applied

    # =========================================================================
    # Reporting
    # =========================================================================

    def analyze_schema(self) -> SchemaAnalysis:
        """Report every polymorphic column pair and schema coverage."""
        try:
            snapshot = self._get_snapshot()
        except Exception as e:
            logger.warning(f"Schema introspection failed, empty analysis: {e}")
            return SchemaAnalysis()

        pairs = self._scan_pairs(snapshot)
        relationships = [
            PolymorphicColumnPair(
                source_table=pair.table,
                polymorphic_type=pair.stem,
                id_field=pair.id_column.name,
                type_field=pair.type_column.name,
                target_tables=self._referenced_tables(snapshot, [pair.table], pair.id_column.name),
            )
            for pair in pairs
        ]

        total_tables = len(snapshot.tables)
        owner_count = len({pair.table for pair in pairs})
        coverage = round(owner_count / total_tables, 4) if total_tables else 0.0

        return SchemaAnalysis(
            total_tables=total_tables,
            polymorphic_relationships=relationships,
            polymorphic_coverage=coverage,
            inconsistencies=self._find_inconsistencies(snapshot),
        )

    def calculate_complexity_metrics(self) -> ComplexityMetrics:
        """Summarize how much of the schema's relationships are polymorphic."""
        try:
            snapshot = self._get_snapshot()
        except Exception as e:
            logger.warning(f"Schema introspection failed, empty metrics: {e}")
            return ComplexityMetrics()

        pairs = self._scan_pairs(snapshot)
        results = self.discover_polymorphic_types()

        total = len(snapshot.foreign_keys) + len(pairs)
        percentage = round(len(pairs) / total * 100, 2) if total else 0.0
        average_targets = (
            round(sum(len(result.targets) for result in results) / len(results), 2)
            if results
            else 0.0
        )

        if len(pairs) >= 10 or total >= 100:
            complexity = SchemaComplexity.HIGH
        elif len(pairs) >= 3 or total >= 20:
            complexity = SchemaComplexity.MEDIUM
        else:
            complexity = SchemaComplexity.LOW

        return ComplexityMetrics(
            total_relationships=total,
            polymorphic_relationships=len(pairs),
            polymorphic_percentage=percentage,
            average_targets_per_type=average_targets,
            schema_complexity=complexity,
        )

    def detect_schema_inconsistencies(self) -> list[SchemaInconsistency]:
        """Find half-declared or inconsistently typed polymorphic column pairs."""
        try:
            snapshot = self._get_snapshot()
        except Exception as e:
            logger.warning(f"Schema introspection failed, no inconsistencies reported: {e}")
            return []
        return self._find_inconsistencies(snapshot)

    def _looks_polymorphic(self, stem: str) -> bool:
        return bool(stem) and (
            self._is_tracked_type(stem) or stem.endswith(self.config.polymorphic_stem_suffixes)
        )

    def _find_inconsistencies(self, snapshot: _SchemaSnapshot) -> list[SchemaInconsistency]:
        id_suffix = self.config.id_suffix
        type_suffix = self.config.type_suffix
        issues: list[SchemaInconsistency] = []

        for table in snapshot.tables:
            names = {column.name for column in snapshot.columns.get(table, [])}
            for name in sorted(names):
                if name.endswith(id_suffix):
                    stem = name[: -len(id_suffix)]
                    if self._looks_polymorphic(stem) and f"{stem}{type_suffix}" not in names:
                        issues.append(
                            SchemaInconsistency(
                                table=table,
                                column=name,
                                kind=InconsistencyKind.MISSING_TYPE_COLUMN,
                                message=f"{table}.{name} has no matching {stem}{type_suffix} column",
                            )
                        )
                if name.endswith(type_suffix):
                    stem = name[: -len(type_suffix)]
                    if self._looks_polymorphic(stem) and f"{stem}{id_suffix}" not in names:
                        issues.append(
                            SchemaInconsistency(
                                table=table,
                                column=name,
                                kind=InconsistencyKind.MISSING_ID_COLUMN,
                                message=f"{table}.{name} has no matching {stem}{id_suffix} column",
                            )
                        )

        for pair in self._scan_pairs(snapshot):
            if not self._has_consistent_typing(pair):
                issues.append(
                    SchemaInconsistency(
                        table=pair.table,
                        column=pair.id_column.name,
                        kind=InconsistencyKind.INCONSISTENT_TYPING,
                        message=(
                            f"{pair.table}.{pair.id_column.name} ({pair.id_column.type}) / "
                            f"{pair.type_column.name} ({pair.type_column.type}) should be a "
                            "nullable id column and a nullable string column"
                        ),
                    )
                )

        return issues
