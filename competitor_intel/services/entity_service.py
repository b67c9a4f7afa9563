"""
Catalog access for the pipeline.

The pipeline only needs to resolve an entity by id and, for recurring
sweeps, list ids optionally filtered by category. The in-memory store can be
seeded from a JSON file holding a list of entity objects.
"""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, Optional, Union

from competitor_intel.models.schemas import Entity
from competitor_intel.utils.errors import NotFoundError
from competitor_intel.utils.logger import get_logger

logger = get_logger(__name__)


class EntityStore(ABC):
    """Abstract catalog lookup."""

    @abstractmethod
    async def get(self, entity_id: str) -> Entity:
        """Resolve an entity. Raises NotFoundError when it does not exist."""

    @abstractmethod
    async def list_ids(
        self,
        categories: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
    ) -> list[str]:
        """Entity ids, optionally restricted to any of ``categories``."""


class InMemoryEntityStore(EntityStore):
    """
    Dictionary-backed catalog.

    Example:
        >>> store = InMemoryEntityStore([Entity(id="1", name="Widget", price="10")])
        >>> (await store.get("1")).name
        'Widget'
    """

    def __init__(self, entities: Iterable[Entity] = ()):
        self._entities: dict[str, Entity] = {}
        for entity in entities:
            self.upsert(entity)

    @classmethod
    def from_json_file(cls, path: Union[str, Path]) -> "InMemoryEntityStore":
        """Load a catalog export: a JSON list of entity objects."""
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(raw, list):
            raise ValueError(f"Expected a list of entities in {path}")
        store = cls(Entity.model_validate(item) for item in raw)
        logger.info("Entities loaded", path=str(path), count=len(store))
        return store

    def upsert(self, entity: Entity) -> None:
        self._entities[entity.id] = entity

    def __len__(self) -> int:
        return len(self._entities)

    async def get(self, entity_id: str) -> Entity:
        entity = self._entities.get(str(entity_id))
        if entity is None:
            raise NotFoundError(f"Entity {entity_id} not found")
        return entity

    async def list_ids(
        self,
        categories: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
    ) -> list[str]:
        wanted = {c.lower() for c in categories or ()}
        ids = [
            entity.id
            for entity in self._entities.values()
            if not wanted or wanted & {t.lower() for t in entity.category_terms}
        ]
        return ids[:limit] if limit is not None else ids
