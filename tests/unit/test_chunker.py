"""Unit tests for the note chunker"""

from unittest.mock import patch

import pytest

from vault_vectors.config import VectorStorageConfig
from vault_vectors.services.chunker import Chunker


class WordEncoder:
    """One token per whitespace-separated word"""

    def encode(self, text):
        return text.split()

    def decode(self, tokens):
        return " ".join(tokens)


class TestChunker:
    """Test paragraph aggregation and token windows"""

    @pytest.fixture
    def chunker(self):
        storage_config = VectorStorageConfig(chunk_size_tokens=16, chunk_overlap_tokens=4)
        with patch("vault_vectors.services.chunker.tiktoken") as mock_tiktoken:
            mock_tiktoken.encoding_for_model.side_effect = KeyError("unknown model")
            mock_tiktoken.get_encoding.return_value = WordEncoder()
            yield Chunker(storage_config)

    def test_falls_back_to_cl100k(self):
        """Test the encoder fallback for non-OpenAI model names"""
        with patch("vault_vectors.services.chunker.tiktoken") as mock_tiktoken:
            mock_tiktoken.encoding_for_model.side_effect = KeyError("unknown model")
            Chunker(VectorStorageConfig())

        mock_tiktoken.get_encoding.assert_called_once_with("cl100k_base")

    @pytest.mark.asyncio
    async def test_small_paragraphs_are_aggregated(self, chunker):
        """Test that paragraphs are joined while they fit"""
        text = "one two three\n\nfour five six\n\nseven eight"

        chunks = await chunker.chunk(text, "note.md")

        assert len(chunks) == 1
        assert chunks[0].chunk_id == "chunk_0000"
        assert chunks[0].text == "one two three\n\nfour five six\n\nseven eight"
        assert chunks[0].token_count == 8

    @pytest.mark.asyncio
    async def test_paragraphs_split_at_limit(self, chunker):
        """Test that a paragraph that would overflow starts a new chunk"""
        first = " ".join(f"a{i}" for i in range(10))
        second = " ".join(f"b{i}" for i in range(10))

        chunks = await chunker.chunk(f"{first}\n\n{second}", "note.md")

        assert [c.text for c in chunks] == [first, second]
        assert [c.position for c in chunks] == [0, 1]

    @pytest.mark.asyncio
    async def test_oversized_paragraph_uses_overlapping_windows(self, chunker):
        """Test token windows with overlap for a single huge paragraph"""
        words = [f"w{i}" for i in range(30)]

        chunks = await chunker.chunk(" ".join(words), "note.md")

        assert [c.token_count for c in chunks] == [16, 16, 6]
        assert chunks[1].text.split()[0] == "w12"
        assert chunks[-1].text.split()[-1] == "w29"

    @pytest.mark.asyncio
    async def test_chunk_ids_are_positional(self, chunker):
        """Test that the same text chunks identically for any note path"""
        text = " ".join(f"w{i}" for i in range(30))

        first = await chunker.chunk(text, "a.md")
        second = await chunker.chunk(text, "folder/b.md")

        assert [c.chunk_id for c in first] == ["chunk_0000", "chunk_0001", "chunk_0002"]
        assert first == second

    @pytest.mark.asyncio
    async def test_empty_text(self, chunker):
        """Test that blank notes produce no chunks"""
        assert await chunker.chunk("\n\n   \n", "empty.md") == []

    def test_overlap_is_clamped(self):
        """Test overlap never exceeds half the chunk size"""
        with patch("vault_vectors.services.chunker.tiktoken"):
            chunker = Chunker(VectorStorageConfig(chunk_size_tokens=16, chunk_overlap_tokens=12))

        assert chunker.chunk_overlap_tokens == 8
