"""Similarity oracle contract and error taxonomy.

The engine treats semantic similarity as an external capability: given two
text fragments, return a score in [0, 1]. Concrete backends live in
``gemini_oracle`` (LLM judgement) and ``embedding_oracle`` (vector cosine).

Response contract for text-producing backends: the body is either a bare
number ("0.82"), a JSON number, or a JSON object with a numeric
``similarity`` field. Anything else is a MalformedOracleResponseError.
"""

import json
from typing import Any, Protocol, runtime_checkable

from src.duplicate_detection.similarity import clamp_score

SIMILARITY_FIELD = "similarity"


class SimilarityOracleError(Exception):
    """Base exception for similarity oracle errors."""

    pass


class OracleUnavailableError(SimilarityOracleError):
    """Raised when the oracle cannot be reached at all."""

    pass


class OracleCallFailedError(SimilarityOracleError):
    """Raised when a single scoring call fails."""

    pass


class OracleRateLimitError(OracleCallFailedError):
    """Raised when the backend rejects a call with a rate limit (429)."""

    pass


class OracleTimeoutError(OracleCallFailedError):
    """Raised when a scoring call exceeds its timeout."""

    pass


class MalformedOracleResponseError(SimilarityOracleError):
    """Raised when the oracle answers with something that is not a score."""

    pass


@runtime_checkable
class SimilarityOracle(Protocol):
    """Scores the semantic closeness of two text fragments."""

    def score(self, text_a: str, text_b: str) -> float:
        """Return a similarity score in [0, 1].

        Raises:
            SimilarityOracleError: If the call fails or the answer is malformed.
        """
        ...

    def is_available(self) -> bool:
        """Check once, before a pass, whether the backend is reachable."""
        ...


def _number(value: Any) -> float:
    # bool is an int subclass but never a score
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedOracleResponseError(f"Expected a numeric score, got {type(value).__name__}")
    try:
        return clamp_score(float(value))
    except ValueError as e:
        raise MalformedOracleResponseError(str(e)) from e


def parse_similarity_payload(payload: Any) -> float:
    """Parse an oracle answer into a clamped score.

    Args:
        payload: Raw response text, a decoded JSON value, or a number.

    Returns:
        Score clamped into [0, 1].

    Raises:
        MalformedOracleResponseError: If the payload does not follow the contract.

    Example:
        >>> parse_similarity_payload('{"similarity": 0.91}')
        0.91
        >>> parse_similarity_payload("1.4")
        1.0
    """
    if isinstance(payload, str):
        text = payload.strip()
        if not text:
            raise MalformedOracleResponseError("Empty oracle response")
        try:
            return _number(float(text))
        except ValueError:
            pass
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedOracleResponseError(f"Unparsable oracle response: {text[:80]!r}") from e

    if isinstance(payload, dict):
        if SIMILARITY_FIELD not in payload:
            raise MalformedOracleResponseError(f"Oracle response has no '{SIMILARITY_FIELD}' field")
        return _number(payload[SIMILARITY_FIELD])

    return _number(payload)
