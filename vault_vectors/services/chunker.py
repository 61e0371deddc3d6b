"""Note chunking service with token counting"""

import tiktoken

from vault_vectors.config import VectorStorageConfig, config
from vault_vectors.models.chunk import TextChunk


class Chunker:
    """Chunk note text by paragraphs with token limits and overlap"""

    def __init__(self, storage_config: VectorStorageConfig | None = None):
        storage_config = storage_config or config
        self.chunk_size_tokens = storage_config.chunk_size_tokens
        self.chunk_overlap_tokens = min(
            storage_config.chunk_overlap_tokens, storage_config.chunk_size_tokens // 2
        )

        try:
            self.encoder = tiktoken.encoding_for_model(storage_config.embedding_model)
        except KeyError:
            # Fallback to cl100k_base (used by gpt-3.5 and gpt-4)
            self.encoder = tiktoken.get_encoding("cl100k_base")

    def count_tokens(self, text: str) -> int:
        """Count tokens in text using tiktoken"""
        return len(self.encoder.encode(text))

    async def chunk(self, text: str, file_path: str) -> list[TextChunk]:
        """
        Chunk a note, keeping paragraphs together where they fit

        Consecutive paragraphs are aggregated up to `chunk_size_tokens`;
        a paragraph larger than that is split into overlapping token windows.

        Args:
            text: Note contents
            file_path: Vault-relative path; accepted for the chunker protocol, chunk
                ids are positional and do not depend on it

        Returns:
            list[TextChunk]: Chunks in note order with stable positional ids
        """
        paragraphs = [p.strip() for p in text.replace("\r\n", "\n").split("\n\n")]
        paragraphs = [p for p in paragraphs if p]

        pieces: list[tuple[str, int]] = []
        current: list[str] = []
        current_tokens = 0

        for para in paragraphs:
            para_tokens = self.count_tokens(para)

            if para_tokens > self.chunk_size_tokens:
                if current:
                    pieces.append(("\n\n".join(current), current_tokens))
                    current, current_tokens = [], 0
                pieces.extend(self._split_tokens(para))
                continue

            if current and current_tokens + para_tokens > self.chunk_size_tokens:
                pieces.append(("\n\n".join(current), current_tokens))
                current, current_tokens = [], 0

            current.append(para)
            current_tokens += para_tokens

        if current:
            pieces.append(("\n\n".join(current), current_tokens))

        return [
            TextChunk(
                chunk_id=f"chunk_{position:04d}",
                text=piece,
                position=position,
                token_count=token_count,
            )
            for position, (piece, token_count) in enumerate(pieces)
        ]

    def _split_tokens(self, content: str) -> list[tuple[str, int]]:
        """Split oversized content into token windows with overlap"""
        tokens = self.encoder.encode(content)
        total_tokens = len(tokens)
        pieces = []
        start_token = 0

        while start_token < total_tokens:
            end_token = min(start_token + self.chunk_size_tokens, total_tokens)
            chunk_tokens = tokens[start_token:end_token]
            pieces.append((self.encoder.decode(chunk_tokens), len(chunk_tokens)))

            if end_token == total_tokens:
                break
            # Move forward, leaving overlap
            start_token = end_token - self.chunk_overlap_tokens

        return pieces
