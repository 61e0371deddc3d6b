"""Whole-body compression codecs for batch files"""

import gzip
import zlib

import lz4.frame

from vault_vectors.config import CompressionAlgorithm
from vault_vectors.errors import CompressionError

# Typical ratios used to estimate uncompressed size when a header is unreadable
ESTIMATED_RATIOS: dict[CompressionAlgorithm, float] = {
    CompressionAlgorithm.NONE: 1.0,
    CompressionAlgorithm.GZIP: 3.0,
    CompressionAlgorithm.LZ4: 2.0,
}


def compress(data: bytes, algorithm: CompressionAlgorithm) -> bytes:
    """
    Compress bytes with the given algorithm

    Raises:
        CompressionError: If the codec fails
    """
    try:
        if algorithm == CompressionAlgorithm.NONE:
            return bytes(data)
        if algorithm == CompressionAlgorithm.GZIP:
            return gzip.compress(data, compresslevel=6, mtime=0)
        if algorithm == CompressionAlgorithm.LZ4:
            # Level 0 is the fast path; the frame carries its own content checksum
            return lz4.frame.compress(data, compression_level=0, content_checksum=True)
    except Exception as e:
        raise CompressionError(f"{algorithm.value} compression failed: {e}") from e
    raise CompressionError(f"Unsupported compression algorithm: {algorithm}")


def decompress(data: bytes, algorithm: CompressionAlgorithm) -> bytes:
    """
    Decompress bytes produced by `compress`

    Raises:
        CompressionError: If the payload is truncated or corrupt
    """
    try:
        if algorithm == CompressionAlgorithm.NONE:
            return bytes(data)
        if algorithm == CompressionAlgorithm.GZIP:
            return gzip.decompress(data)
        if algorithm == CompressionAlgorithm.LZ4:
            return lz4.frame.decompress(data)
    except (OSError, EOFError, zlib.error, RuntimeError, ValueError) as e:
        raise CompressionError(f"{algorithm.value} decompression failed: {e}") from e
    raise CompressionError(f"Unsupported compression algorithm: {algorithm}")


def estimate_uncompressed_size(on_disk_bytes: int, algorithm: CompressionAlgorithm) -> int:
    """Estimate the uncompressed size from the algorithm's typical ratio"""
    return int(on_disk_bytes * ESTIMATED_RATIOS.get(algorithm, 1.0))
