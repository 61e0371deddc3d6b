"""Embedding entry data model"""

import hashlib
import time
import unicodedata
from uuid import uuid4

import numpy as np
from pydantic import BaseModel, Field, field_validator


def normalize_text(text: str) -> str:
    """Normalize text before fingerprinting so cosmetic differences hash equally"""
    normalized = unicodedata.normalize("NFC", text).replace("\r\n", "\n").replace("\r", "\n")
    return "\n".join(line.rstrip() for line in normalized.split("\n")).strip()


def compute_text_hash(text: str) -> str:
    """SHA-256 fingerprint of the normalized text"""
    return hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()


def create_preview(text: str, max_length: int = 100) -> str:
    """Bounded prefix of the text, ellipsized when truncated"""
    if len(text) <= max_length:
        return text
    return f"{text[: max_length - 3]}..."


def generate_entry_id(
    file_path: str, chunk_id: str, text_hash: str, created_ns: int, nonce: str | None = None
) -> str:
    """
    Derive an entry id from its provenance, creation instant and a random nonce

    The nonce keeps ids unique when the clock does not advance between calls,
    so a deleted id is never handed out again for a recreated chunk.
    """
    hasher = hashlib.sha256()
    for part in (file_path, chunk_id, text_hash, str(created_ns), nonce or uuid4().hex):
        hasher.update(part.encode("utf-8"))
        hasher.update(b":")
    return hasher.hexdigest()


class EmbeddingMetadata(BaseModel):
    """Provenance of an embedding"""

    file_path: str = Field(description="Vault-relative path of the source note")
    chunk_id: str = Field(description="Identifier of the chunk within the source note")
    created_at: float = Field(description="Unix timestamp of creation")
    updated_at: float = Field(description="Unix timestamp of last metadata change")
    text_hash: str = Field(description="SHA-256 of the normalized chunk text")
    model_name: str = Field(description="Embedding model that produced the vector")
    content_preview: str = Field(default="", description="Bounded prefix of the chunk text")
    text_length: int = Field(default=0, ge=0, description="Length of the chunk text")
    custom_metadata: dict[str, str] = Field(
        default_factory=dict, description="Open key/value annotations"
    )


class EmbeddingEntry(BaseModel):
    """The unit of storage: a vector with its provenance"""

    id: str = Field(description="Stable identity, immutable once assigned")
    vector: list[float] = Field(description="32-bit float components")
    metadata: EmbeddingMetadata
    created_at: float = Field(description="Unix timestamp of creation")
    updated_at: float = Field(description="Unix timestamp of last change")

    @field_validator("vector", mode="before")
    @classmethod
    def coerce_float32(cls, v):
        """Round every component to float32 so stored and returned vectors match bit-for-bit"""
        if isinstance(v, (np.ndarray, list, tuple)):
            with np.errstate(over="ignore"):
                try:
                    return np.asarray(v, dtype=np.float32).tolist()
                except (TypeError, ValueError):
                    return v
        return v

    @property
    def dimension(self) -> int:
        return len(self.vector)

    @classmethod
    def create(
        cls,
        vector,
        file_path: str,
        chunk_id: str,
        text: str,
        model_name: str,
        custom_metadata: dict[str, str] | None = None,
        preview_length: int = 100,
    ) -> "EmbeddingEntry":
        """Build a new entry, deriving hash, preview and id from the inputs"""
        created_ns = time.time_ns()
        now = created_ns / 1e9
        text_hash = compute_text_hash(text)
        metadata = EmbeddingMetadata(
            file_path=file_path,
            chunk_id=chunk_id,
            created_at=now,
            updated_at=now,
            text_hash=text_hash,
            model_name=model_name,
            content_preview=create_preview(text, preview_length),
            text_length=len(text),
            custom_metadata=dict(custom_metadata or {}),
        )
        return cls(
            id=generate_entry_id(file_path, chunk_id, text_hash, created_ns),
            vector=vector,
            metadata=metadata,
            created_at=now,
            updated_at=now,
        )

    def recreate(self, vector) -> "EmbeddingEntry":
        """New entry with the same provenance and a new vector and id"""
        created_ns = time.time_ns()
        now = created_ns / 1e9
        metadata = self.metadata.model_copy(
            update={
                "created_at": now,
                "updated_at": now,
                "custom_metadata": dict(self.metadata.custom_metadata),
            }
        )
        return EmbeddingEntry(
            id=generate_entry_id(
                metadata.file_path, metadata.chunk_id, metadata.text_hash, created_ns
            ),
            vector=vector,
            metadata=metadata,
            created_at=now,
            updated_at=now,
        )


class EmbeddingInput(BaseModel):
    """Caller-supplied data for a new embedding"""

    vector: list[float]
    file_path: str
    chunk_id: str
    text: str
    model_name: str
    custom_metadata: dict[str, str] = Field(default_factory=dict)
