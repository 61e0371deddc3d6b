"""Embedding generation service using local models via fastembed"""

import asyncio
import logging

from fastembed import TextEmbedding

from vault_vectors.config import VectorStorageConfig, config

logger = logging.getLogger(__name__)


class Embedder:
    """Generate embeddings using local models (fastembed)"""

    def __init__(self, storage_config: VectorStorageConfig | None = None, threads: int = 4):
        storage_config = storage_config or config
        self.model_name = storage_config.embedding_model
        self.batch_size = storage_config.embedding_batch_size
        self.threads = threads
        self._model: TextEmbedding | None = None

    @property
    def model(self) -> TextEmbedding:
        """The fastembed model, loaded (and downloaded if needed) on first use"""
        if self._model is None:
            logger.info(f"Loading embedding model {self.model_name}")
            self._model = TextEmbedding(model_name=self.model_name, threads=self.threads)
        return self._model

    async def embed_batch(
        self, texts: list[str], batch_size: int | None = None
    ) -> list[list[float]]:
        """
        Generate embeddings for multiple texts in batches

        Inference runs in a worker thread so the event loop keeps serving
        database reads.

        Args:
            texts: List of texts to embed
            batch_size: Number of texts to process per batch (default from config)

        Returns:
            list[list[float]]: List of embedding vectors
        """
        if not texts:
            return []

        batch_size = batch_size or self.batch_size
        embeddings: list[list[float]] = []

        for i in range(0, len(texts), batch_size):
            batch = texts[i : i + batch_size]
            batch_embeddings = await asyncio.to_thread(lambda b=batch: list(self.model.embed(b)))
            embeddings.extend([emb.tolist() for emb in batch_embeddings])
            logger.debug(f"Embedded {min(i + batch_size, len(texts))}/{len(texts)} texts")

        return embeddings
