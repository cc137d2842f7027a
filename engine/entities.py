"""
Assist Core — Entity Store

Running memory of the last contact, appointment, task and workflow a
conversation talked about, used to resolve follow-ups like "move it to
Friday" or "who was it with?".

Per entity type the map keeps:
  - latest:  the most recently written instance
  - history: most-recent-first, deduplicated by id, capped per type
  - index:   "type:id" → entry, pruned together with history

Merging is union-by-type then append-to-history, never a wholesale
overwrite, so writes from domains that ran in parallel during the same
pass are all retained.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

logger = logging.getLogger("assist_core.entities")

DEFAULT_HISTORY_CAP = 10


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _identity(entity: Mapping[str, Any]) -> str | None:
    """Identity used for dedupe and indexing. Entities without an id have none."""
    value = entity.get("id")
    if value in (None, ""):
        return None
    return str(value)


@dataclass
class EntityMap:
    """Serializable entity state for one conversation."""
    latest: dict[str, dict[str, Any]] = field(default_factory=dict)
    history: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    index: dict[str, dict[str, Any]] = field(default_factory=dict)
    extracted: list[dict[str, Any]] = field(default_factory=list)

    def types(self) -> list[str]:
        return list(self.history.keys())

    def is_empty(self) -> bool:
        return not self.latest and not self.history

    def to_dict(self) -> dict[str, Any]:
        return {
            "latest": copy.deepcopy(self.latest),
            "history": copy.deepcopy(self.history),
            "index": copy.deepcopy(self.index),
            "extracted": copy.deepcopy(self.extracted),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> EntityMap:
        if not data:
            return cls()
        return cls(
            latest=copy.deepcopy(dict(data.get("latest", {}))),
            history={k: list(v) for k, v in copy.deepcopy(data.get("history", {})).items()},
            index=copy.deepcopy(dict(data.get("index", {}))),
            extracted=copy.deepcopy(list(data.get("extracted", []))),
        )


class EntityStore:
    """
    Merge engine for EntityMap.

    Stateless apart from the history cap; construct once and share.
    ``store`` mutates the map it is given, ``merge`` never mutates its
    inputs.
    """

    def __init__(self, max_history_per_type: int = DEFAULT_HISTORY_CAP):
        if max_history_per_type < 1:
            raise ValueError("max_history_per_type must be >= 1")
        self.max_history_per_type = max_history_per_type

    # ─── Writes ──────────────────────────────────────────────────────

    def store(self, entities: EntityMap, entity_type: str, entity: Mapping[str, Any]) -> EntityMap:
        """Write one entity as the latest of its type and record it in history."""
        entry = dict(copy.deepcopy(entity))
        entry.setdefault("created_at", _now_iso())

        entities.latest[entity_type] = entry
        history = entities.history.setdefault(entity_type, [])

        ident = _identity(entry)
        if ident is not None:
            history[:] = [e for e in history if _identity(e) != ident]
            entities.index[f"{entity_type}:{ident}"] = {
                "type": entity_type,
                "created_at": entry["created_at"],
                "data": entry,
            }
        history.insert(0, entry)

        self.cleanup(entities, entity_type)
        logger.debug("Stored %s entity %s (history=%d)", entity_type, ident, len(history))
        return entities

    def merge(
        self,
        old: EntityMap | None,
        updates: Mapping[str, Mapping[str, Any] | Iterable[Mapping[str, Any]]] | None,
    ) -> EntityMap:
        """
        Return a new map with ``updates`` applied on top of ``old``.

        ``updates`` maps entity type to one entity or a list of entities
        (applied in order, the last becomes latest).
        """
        merged = EntityMap.from_dict(old.to_dict()) if old is not None else EntityMap()
        if not updates:
            return merged

        for entity_type, value in updates.items():
            if entity_type == "extracted":
                merged.extracted = list(copy.deepcopy(value))
                continue
            items = [value] if isinstance(value, Mapping) else list(value)
            for entity in items:
                if entity:
                    self.store(merged, entity_type, entity)
        return merged

    def cleanup(self, entities: EntityMap, entity_type: str | None = None) -> EntityMap:
        """Drop history past the cap (oldest first) and prune the index."""
        types = [entity_type] if entity_type else list(entities.history.keys())
        for t in types:
            history = entities.history.get(t, [])
            if len(history) <= self.max_history_per_type:
                continue
            removed = history[self.max_history_per_type:]
            del history[self.max_history_per_type:]
            for entity in removed:
                ident = _identity(entity)
                if ident is not None:
                    entities.index.pop(f"{t}:{ident}", None)
            logger.debug("Cleaned up %d old %s entities", len(removed), t)
        return entities

    # ─── Reads ───────────────────────────────────────────────────────

    def get_latest(self, entities: EntityMap, entity_type: str) -> dict[str, Any] | None:
        return entities.latest.get(entity_type)

    def get_history(
        self,
        entities: EntityMap,
        entity_type: str,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        history = entities.history.get(entity_type, [])
        return list(history[:limit] if limit else history)

    def get_by_id(self, entities: EntityMap, entity_type: str, entity_id: Any) -> dict[str, Any] | None:
        indexed = entities.index.get(f"{entity_type}:{entity_id}")
        return indexed["data"] if indexed else None

    def search(self, entities: EntityMap, entity_type: str, query: Mapping[str, Any]) -> list[dict[str, Any]]:
        """Filter history: case-insensitive substring for strings, equality otherwise."""
        def matches(entity: Mapping[str, Any]) -> bool:
            for key, wanted in query.items():
                actual = entity.get(key)
                if isinstance(wanted, str) and isinstance(actual, str):
                    if wanted.lower() not in actual.lower():
                        return False
                elif actual != wanted:
                    return False
            return True

        return [e for e in self.get_history(entities, entity_type) if matches(e)]

    def get_types(self, entities: EntityMap) -> list[str]:
        return entities.types()

    def get_stats(self, entities: EntityMap | None) -> dict[str, Any]:
        if entities is None or entities.is_empty():
            return {"total_entities": 0, "types": [], "by_type": {}}

        by_type = {t: len(h) for t, h in entities.history.items()}
        timestamps = sorted(
            item["created_at"] for item in entities.index.values() if item.get("created_at")
        )
        return {
            "total_entities": sum(by_type.values()),
            "types": list(by_type.keys()),
            "by_type": by_type,
            "oldest_entity": timestamps[0] if timestamps else None,
            "newest_entity": timestamps[-1] if timestamps else None,
        }
