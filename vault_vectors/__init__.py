"""Flat-file embedding storage for note vaults"""

from vault_vectors.config import VectorStorageConfig
from vault_vectors.errors import (
    ChecksumMismatch,
    CompressionError,
    FeatureDisabledError,
    IntegrityError,
    NotFound,
    SerializationError,
    StorageError,
    ValidationError,
    VectorDbError,
    VersionIncompatible,
)
from vault_vectors.services.database import VectorDatabase

__all__ = [
    "VectorDatabase",
    "VectorStorageConfig",
    "VectorDbError",
    "SerializationError",
    "IntegrityError",
    "ChecksumMismatch",
    "CompressionError",
    "VersionIncompatible",
    "StorageError",
    "NotFound",
    "ValidationError",
    "FeatureDisabledError",
]
