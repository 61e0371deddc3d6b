"""Utility to load the vector storage configuration from a YAML file"""

import logging
import os
from pathlib import Path

import yaml

from vault_vectors.config import CompressionAlgorithm, VectorStorageConfig

logger = logging.getLogger(__name__)


def load_storage_config(config_path: str | Path = "vector_storage.yaml") -> VectorStorageConfig:
    """
    Load vector storage configuration from YAML file

    The file holds either the fields at top level or under a `vector_storage`
    key. `VECTOR_STORAGE_DIR` and `VECTOR_COMPRESSION` override the file.

    Args:
        config_path: Path to the YAML file

    Returns:
        VectorStorageConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config is invalid
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Vector storage configuration file not found: {config_path}")

    try:
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if not data:
            raise ValueError("Vector storage configuration file is empty")
        if not isinstance(data, dict):
            raise ValueError("Vector storage configuration must be a mapping")

        data = dict(data.get("vector_storage", data))

        storage_dir_env = os.getenv("VECTOR_STORAGE_DIR")
        if storage_dir_env:
            logger.info(f"Overriding storage_dir from env: {storage_dir_env}")
            data["storage_dir"] = storage_dir_env

        compression_env = os.getenv("VECTOR_COMPRESSION")
        if compression_env:
            logger.info(f"Overriding compression_algorithm from env: {compression_env}")
            data["compression_algorithm"] = CompressionAlgorithm(compression_env.lower())

        storage_config = VectorStorageConfig(**data)

        logger.info(f"Loaded vector storage configuration from {config_path}")
        logger.info(f"  Storage directory: {storage_config.storage_dir}")
        logger.info(f"  Compression: {storage_config.effective_compression.value}")

        return storage_config

    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in vector storage configuration: {e}") from e
    except Exception as e:
        raise ValueError(f"Failed to load vector storage configuration: {e}") from e
