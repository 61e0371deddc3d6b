"""The storage state shared by the facade and its sidecars"""

import hashlib

from vault_vectors.services.aliases import AliasTable
from vault_vectors.services.cache import EntryCache
from vault_vectors.services.index import MultiIndex
from vault_vectors.services.operations import VectorOperations
from vault_vectors.services.storage import StorageEngine


class DatabaseCore:
    """
    Storage, index and the components built directly on them

    Only reachable through `DatabaseState.reading()` / `writing()`. The entry
    cache is the exception: it has its own lock and is also held by the
    facade for lock-free hits.
    """

    def __init__(
        self,
        storage: StorageEngine,
        index: MultiIndex,
        operations: VectorOperations,
        aliases: AliasTable,
        cache: EntryCache,
    ):
        self.storage = storage
        self.index = index
        self.operations = operations
        self.aliases = aliases
        self.cache = cache

    def storage_fingerprint(self) -> str:
        """Identifies the storage contents an index snapshot was taken from"""
        hasher = hashlib.sha256()
        for file_id in self.storage.list_file_ids():
            stat = self.storage.file_path(file_id).stat()
            hasher.update(f"{file_id}:{stat.st_size}:{stat.st_mtime_ns};".encode())
        hasher.update(f"tombstones:{len(self.storage.tombstones)}".encode())
        return hasher.hexdigest()

    def forget(self, entry_ids) -> None:
        """Drop deleted ids from the cache and from alias targets"""
        entry_ids = list(entry_ids)
        self.cache.remove_many(entry_ids)
        for entry_id in entry_ids:
            self.aliases.drop_target(entry_id)
