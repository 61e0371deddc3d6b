"""Persisted map from retired entry ids to the entries that replaced them"""

import json
import logging
from collections.abc import Callable
from pathlib import Path

from vault_vectors.errors import SerializationError, StorageError

logger = logging.getLogger(__name__)


class AliasTable:
    """
    Alias ids left behind by deduplication merges and vector updates

    Chains are collapsed on insert, so every alias points directly at the
    newest id. `resolve` still follows links (with a cycle guard) in case a
    ledger written elsewhere was not collapsed.
    """

    def __init__(self, path: Path, writer: Callable[[Path, dict], None]):
        self.path = path
        self._writer = writer
        self._aliases: dict[str, str] = {}

    def load(self) -> None:
        if not self.path.exists():
            self._aliases = {}
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            self._aliases = {str(k): str(v) for k, v in data.get("aliases", {}).items()}
        except (OSError, ValueError, AttributeError) as e:
            raise SerializationError(f"Failed to load alias table: {e}") from e
        logger.debug(f"Loaded {len(self._aliases)} aliases")

    def _save(self, previous: dict[str, str]) -> None:
        try:
            self._writer(self.path, {"version": 1, "aliases": self._aliases})
        except (StorageError, SerializationError):
            self._aliases = previous
            raise

    def __len__(self) -> int:
        return len(self._aliases)

    def __contains__(self, alias_id: object) -> bool:
        return alias_id in self._aliases

    def items(self) -> dict[str, str]:
        return dict(self._aliases)

    def resolve(self, entry_id: str) -> str | None:
        """Final id an alias leads to, or None if `entry_id` is not an alias"""
        if entry_id not in self._aliases:
            return None
        seen = {entry_id}
        current = self._aliases[entry_id]
        while current in self._aliases:
            if current in seen:
                logger.warning(f"Alias cycle detected at {current[:12]}")
                return None
            seen.add(current)
            current = self._aliases[current]
        return current

    def merged_into(self, target_id: str) -> list[str]:
        """Ids that resolve to `target_id`"""
        return sorted(alias for alias in self._aliases if self.resolve(alias) == target_id)

    def add_many(self, mapping: dict[str, str]) -> None:
        """Point each old id at its replacement, re-pointing existing chains"""
        mapping = {old: new for old, new in mapping.items() if old != new}
        if not mapping:
            return
        previous = dict(self._aliases)
        for old, new in mapping.items():
            target = mapping.get(new, new)
            self._aliases[old] = target
            for alias, current in list(self._aliases.items()):
                if current == old:
                    self._aliases[alias] = target
        self._save(previous)

    def add(self, old_id: str, new_id: str) -> None:
        self.add_many({old_id: new_id})

    def remove(self, alias_id: str) -> bool:
        """Forget one alias"""
        if alias_id not in self._aliases:
            return False
        previous = dict(self._aliases)
        del self._aliases[alias_id]
        self._save(previous)
        return True

    def drop_target(self, target_id: str) -> int:
        """Forget every alias leading to `target_id` (it was deleted)"""
        doomed = self.merged_into(target_id)
        if not doomed:
            return 0
        previous = dict(self._aliases)
        for alias in doomed:
            del self._aliases[alias]
        self._save(previous)
        return len(doomed)
