"""Configuration loader for the incident duplicate detection service.

Provides shared configuration dataclasses and environment variable helpers
used by the duplicate detection service, its scripts and tests.

Exports:
    - ConfigError: Exception for configuration errors
    - _get_env, _int_env, _float_env, _optional_env: Environment helpers
    - FirestoreConfig, GeminiConfig, EmbeddingConfig: Backend configurations
    - DuplicateDetectionSettings: Combined settings for a duplicate pass
    - load_firestore_config, load_gemini_config, load_embedding_config
    - load_duplicate_detection_settings: Load everything from environment
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid."""


def _get_env(key: str, default: Optional[str] = None, required: bool = False) -> str:
    value = os.getenv(key, default)
    if required and (value is None or value == ""):
        raise ConfigError(f"Missing required environment variable: {key}")
    if value is None:
        raise ConfigError(f"Environment variable {key} is not set and no default provided")
    if value == "" and default is None:
        raise ConfigError(f"Environment variable {key} is empty and no default provided")
    return value


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid int for {key}: {raw}") from exc


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid float for {key}: {raw}") from exc


def _optional_env(key: str) -> Optional[str]:
    value = os.getenv(key)
    if value is None or value == "":
        return None
    return value


@dataclass
class FirestoreConfig:
    """Firestore connection configuration for the incident record store."""

    collection_prefix: str
    project_id: Optional[str] = None
    database_id: str = "(default)"


@dataclass
class GeminiConfig:
    """Gemini model configuration for the LLM-backed similarity oracle."""

    model: str
    temperature: float
    max_output_tokens: int
    location: str


@dataclass
class EmbeddingConfig:
    """Vertex AI embedding model configuration for the embedding oracle."""

    model: str
    project: str
    location: str
    output_dimensionality: int = 768


# Default values for Gemini configuration
DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"
DEFAULT_GEMINI_TEMPERATURE = 0.0
DEFAULT_GEMINI_MAX_OUTPUT_TOKENS = 64
DEFAULT_VERTEX_AI_LOCATION = "us-central1"

DEFAULT_EMBEDDING_MODEL = "text-embedding-004"

# =============================================================================
# Duplicate Detection Configuration
# =============================================================================

ORACLE_GEMINI = "gemini"
ORACLE_EMBEDDING = "embedding"
SUPPORTED_ORACLES = (ORACLE_GEMINI, ORACLE_EMBEDDING)

DEFAULT_SIMILARITY_ORACLE = ORACLE_GEMINI
DEFAULT_DUPLICATE_SIMILARITY_THRESHOLD = 0.70
DEFAULT_WINDOW_DAYS_BEFORE = 10
DEFAULT_WINDOW_DAYS_AFTER = 10
DEFAULT_ORACLE_TIMEOUT_SEC = 30.0
DEFAULT_MAX_CONCURRENCY = 8


@dataclass
class DuplicateDetectionSettings:
    """Combined settings for a duplicate detection pass.

    Includes the record store config, both oracle backends (only the one named
    by ``similarity_oracle`` is instantiated) and the pass policy constants.
    """

    firestore: FirestoreConfig
    gemini: GeminiConfig
    embedding: EmbeddingConfig
    similarity_oracle: str
    similarity_threshold: float
    window_days_before: int
    window_days_after: int
    oracle_timeout_sec: float
    max_concurrency: int


def load_firestore_config() -> FirestoreConfig:
    """Load Firestore configuration from environment variables."""
    return FirestoreConfig(
        collection_prefix=_get_env("FIRESTORE_COLLECTION_PREFIX", default="incidentops_"),
        project_id=_optional_env("GOOGLE_CLOUD_PROJECT"),
        database_id=_get_env("FIRESTORE_DATABASE_ID", default="(default)"),
    )


def load_gemini_config() -> GeminiConfig:
    """Load Gemini configuration from environment variables.

    Returns:
        GeminiConfig with model settings for Vertex AI Gemini.
    """
    return GeminiConfig(
        model=_get_env("GEMINI_MODEL", default=DEFAULT_GEMINI_MODEL),
        temperature=_float_env("GEMINI_TEMPERATURE", default=DEFAULT_GEMINI_TEMPERATURE),
        max_output_tokens=_int_env("GEMINI_MAX_OUTPUT_TOKENS", default=DEFAULT_GEMINI_MAX_OUTPUT_TOKENS),
        location=_get_env("VERTEX_AI_LOCATION", default=DEFAULT_VERTEX_AI_LOCATION),
    )


def load_embedding_config() -> EmbeddingConfig:
    """Load embedding configuration from environment variables.

    Returns:
        EmbeddingConfig with Vertex AI embedding model settings.
    """
    return EmbeddingConfig(
        model=_get_env("EMBEDDING_MODEL", default=DEFAULT_EMBEDDING_MODEL),
        project=_get_env("VERTEX_AI_PROJECT", default=_get_env("GOOGLE_CLOUD_PROJECT", default="incidentops")),
        location=_get_env("VERTEX_AI_LOCATION", default=DEFAULT_VERTEX_AI_LOCATION),
        output_dimensionality=_int_env("EMBEDDING_DIMENSIONALITY", default=768),
    )


def load_duplicate_detection_settings() -> DuplicateDetectionSettings:
    """Load duplicate detection settings from environment variables.

    Returns:
        DuplicateDetectionSettings with store, oracle and policy settings.

    Raises:
        ConfigError: If environment variables are missing or out of range.
    """
    oracle = _get_env("SIMILARITY_ORACLE", default=DEFAULT_SIMILARITY_ORACLE).strip().lower()
    if oracle not in SUPPORTED_ORACLES:
        raise ConfigError(
            f"Invalid SIMILARITY_ORACLE: {oracle}. Must be one of: {', '.join(SUPPORTED_ORACLES)}"
        )

    threshold = _float_env("DUPLICATE_SIMILARITY_THRESHOLD", default=DEFAULT_DUPLICATE_SIMILARITY_THRESHOLD)
    if not 0.0 <= threshold <= 1.0:
        raise ConfigError(f"DUPLICATE_SIMILARITY_THRESHOLD must be within [0, 1]: {threshold}")

    days_before = _int_env("DUPLICATE_WINDOW_DAYS_BEFORE", default=DEFAULT_WINDOW_DAYS_BEFORE)
    days_after = _int_env("DUPLICATE_WINDOW_DAYS_AFTER", default=DEFAULT_WINDOW_DAYS_AFTER)
    if days_before < 0 or days_after < 0:
        raise ConfigError("Candidate window days must not be negative")

    timeout_sec = _float_env("ORACLE_TIMEOUT_SEC", default=DEFAULT_ORACLE_TIMEOUT_SEC)
    if timeout_sec <= 0:
        raise ConfigError(f"ORACLE_TIMEOUT_SEC must be positive: {timeout_sec}")

    max_concurrency = _int_env("DUPLICATE_MAX_CONCURRENCY", default=DEFAULT_MAX_CONCURRENCY)
    if max_concurrency < 1:
        raise ConfigError(f"DUPLICATE_MAX_CONCURRENCY must be at least 1: {max_concurrency}")

    return DuplicateDetectionSettings(
        firestore=load_firestore_config(),
        gemini=load_gemini_config(),
        embedding=load_embedding_config(),
        similarity_oracle=oracle,
        similarity_threshold=threshold,
        window_days_before=days_before,
        window_days_after=days_after,
        oracle_timeout_sec=timeout_sec,
        max_concurrency=max_concurrency,
    )
