"""
Relationship descriptors and the generic relationship registry.

A descriptor is a tagged union discriminated by ``kind``:

- DirectRelationship: a single-target relationship the ordinary
  eager-loading machinery can follow.
- PolymorphicRelationship: one column pair pointing at several tables.

For a DirectRelationship the column holding the reference lives on the
source table for BELONGS_TO and on the target table for HAS_MANY/HAS_ONE.
An optional discriminator restricts matches to rows whose _type column
equals a given model name; it applies to the side holding the reference.
"""

import logging
from enum import Enum
from typing import Annotated, Literal, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

logger = logging.getLogger(__name__)


class RelationshipType(str, Enum):
    BELONGS_TO = "belongs_to"
    HAS_ONE = "has_one"
    HAS_MANY = "has_many"


class DirectRelationship(BaseModel):
    """Relationship to exactly one target table."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["direct"] = "direct"
    name: str
    source_table: str
    type: RelationshipType
    model: str = Field(..., description="Target model name")
    target_table: str
    foreign_key: str
    primary_key: str = "id"
    discriminator_column: str | None = None
    discriminator_value: str | None = None
    polymorphic_type: str | None = Field(
        default=None,
        description="Polymorphic type this relationship was expanded from",
    )


class PolymorphicRelationship(BaseModel):
    """Relationship whose target table is selected by a _type column."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["polymorphic"] = "polymorphic"
    name: str
    source_table: str
    type: RelationshipType = RelationshipType.BELONGS_TO
    model: str = "Polymorphic"
    polymorphic_type: str
    id_field: str
    type_field: str
    valid_targets: tuple[str, ...] = ()


RelationshipDescriptor = Annotated[
    DirectRelationship | PolymorphicRelationship,
    Field(discriminator="kind"),
]

relationship_adapter: TypeAdapter[DirectRelationship | PolymorphicRelationship] = TypeAdapter(
    RelationshipDescriptor
)


@runtime_checkable
class RelationshipRegistry(Protocol):
    """Generic relationship registry the polymorphic registry writes into."""

    def register(self, descriptor: DirectRelationship | PolymorphicRelationship) -> None: ...

    def unregister(self, table: str, name: str) -> bool: ...

    def get_valid_relationships(self, table: str) -> list[str]: ...

    def get_relationship_metadata(
        self, table: str, name: str
    ) -> DirectRelationship | PolymorphicRelationship | None: ...

    def get_tables(self) -> list[str]: ...


class InMemoryRelationshipRegistry:
    """Relationship registry backed by a dict of table -> name -> descriptor."""

    def __init__(self) -> None:
        self._relationships: dict[str, dict[str, DirectRelationship | PolymorphicRelationship]] = {}

    def register(self, descriptor: DirectRelationship | PolymorphicRelationship) -> None:
        table = self._relationships.setdefault(descriptor.source_table, {})
        if descriptor.name in table:
            logger.debug(f"Replacing relationship {descriptor.source_table}.{descriptor.name}")
        table[descriptor.name] = descriptor

    def unregister(self, table: str, name: str) -> bool:
        relationships = self._relationships.get(table)
        if relationships is None or name not in relationships:
            return False
        del relationships[name]
        if not relationships:
            del self._relationships[table]
        return True

    def get_valid_relationships(self, table: str) -> list[str]:
        return list(self._relationships.get(table, {}))

    def get_relationship_metadata(
        self, table: str, name: str
    ) -> DirectRelationship | PolymorphicRelationship | None:
        return self._relationships.get(table, {}).get(name)

    def get_tables(self) -> list[str]:
        return sorted(self._relationships)
