"""Vertex AI embedding similarity oracle.

Scores two texts by the cosine similarity of their text-embedding-004
vectors (task type SEMANTIC_SIMILARITY), clamped into [0, 1].

Incident category fields repeat heavily across records, so embeddings are
cached in memory by text hash; a pass typically embeds each distinct text
once. Rate-limited calls are retried with exponential backoff (1s -> 2s -> 4s).
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from typing import Dict, List, Optional
import hashlib
import logging
import threading

import numpy as np
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.common.config import DEFAULT_MAX_CONCURRENCY, DEFAULT_ORACLE_TIMEOUT_SEC, EmbeddingConfig
from src.duplicate_detection.oracle import (
    MalformedOracleResponseError,
    OracleCallFailedError,
    OracleRateLimitError,
    OracleTimeoutError,
    OracleUnavailableError,
)
from src.duplicate_detection.similarity import clamp_score, cosine_similarity

logger = logging.getLogger(__name__)


class EmbeddingSimilarityOracle:
    """Similarity oracle comparing Vertex AI text embeddings.

    Usage:
        oracle = EmbeddingSimilarityOracle(config=load_embedding_config())
        score = oracle.score("JupyterHub login fails", "Cannot log in to JupyterHub")
    """

    def __init__(
        self,
        config: EmbeddingConfig,
        request_timeout_sec: float = DEFAULT_ORACLE_TIMEOUT_SEC,
        max_workers: int = DEFAULT_MAX_CONCURRENCY,
        cache_enabled: bool = True,
        model=None,
    ):
        """Initialize the oracle.

        Args:
            config: Embedding model configuration.
            request_timeout_sec: Maximum time in seconds for one embedding call.
            max_workers: Worker threads for embedding calls. A timed-out call keeps
                its worker until the backend returns, and time spent queued counts
                against the timeout, so size this above the caller's fan-out.
            cache_enabled: Whether to cache embeddings in memory (default: True).
            model: Optional pre-loaded embedding model (tests inject a stub).
        """
        self.config = config
        self.request_timeout_sec = request_timeout_sec
        self.cache_enabled = cache_enabled
        self._cache: Dict[str, np.ndarray] = {}
        self._cache_lock = threading.Lock()
        self._model = model
        self._model_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="embedding-oracle")

    def _get_model(self):
        """Lazy-load the Vertex AI embedding model.

        Raises:
            OracleUnavailableError: If model initialization fails.
        """
        with self._model_lock:
            if self._model is None:
                try:
                    import vertexai
                    from vertexai.language_models import TextEmbeddingModel

                    vertexai.init(
                        project=self.config.project,
                        location=self.config.location,
                    )
                    self._model = TextEmbeddingModel.from_pretrained(self.config.model)
                    logger.info(
                        "Initialized embedding model",
                        extra={
                            "model": self.config.model,
                            "project": self.config.project,
                            "location": self.config.location,
                        },
                    )
                except ImportError as e:
                    raise OracleUnavailableError(
                        "vertexai not installed. Run: pip install google-cloud-aiplatform"
                    ) from e
                except Exception as e:
                    raise OracleUnavailableError(f"Failed to initialize embedding model: {e}") from e
            return self._model

    def _cache_key(self, text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    def _make_api_call(self, texts: List[str]) -> List[List[float]]:
        model = self._get_model()

        try:
            from vertexai.language_models import TextEmbeddingInput

            inputs = [TextEmbeddingInput(text=t, task_type="SEMANTIC_SIMILARITY") for t in texts]
            embeddings = model.get_embeddings(
                texts=inputs,
                output_dimensionality=self.config.output_dimensionality,
            )
            return [e.values for e in embeddings]
        except Exception as e:
            error_str = str(e).lower()
            if "429" in error_str or "quota" in error_str or "rate" in error_str:
                logger.warning(
                    "Rate limit hit, will retry",
                    extra={"error": str(e), "texts_count": len(texts)},
                )
                raise OracleRateLimitError(str(e)) from e
            raise OracleCallFailedError(f"Embedding API error: {e}") from e

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        retry=retry_if_exception_type(OracleRateLimitError),
        reraise=True,
    )
    def _call_embedding_api(self, texts: List[str]) -> List[List[float]]:
        future = self._executor.submit(self._make_api_call, texts)
        try:
            return future.result(timeout=self.request_timeout_sec)
        except FuturesTimeoutError:
            future.cancel()
            raise OracleTimeoutError(
                f"Embedding call exceeded timeout of {self.request_timeout_sec}s"
            )

    def _embed(self, texts: List[str]) -> List[np.ndarray]:
        """Embed texts, serving repeats from the cache."""
        results: List[Optional[np.ndarray]] = [None] * len(texts)
        missing: List[int] = []

        with self._cache_lock:
            for i, text in enumerate(texts):
                cached = self._cache.get(self._cache_key(text)) if self.cache_enabled else None
                if cached is not None:
                    results[i] = cached
                else:
                    missing.append(i)

        if missing:
            vectors = self._call_embedding_api([texts[i] for i in missing])
            if len(vectors) != len(missing):
                raise MalformedOracleResponseError(
                    f"Expected {len(missing)} embeddings, got {len(vectors)}"
                )
            with self._cache_lock:
                for i, vector in zip(missing, vectors):
                    array = np.array(vector, dtype=np.float32)
                    results[i] = array
                    if self.cache_enabled:
                        self._cache[self._cache_key(texts[i])] = array

        return [r for r in results if r is not None]

    def score(self, text_a: str, text_b: str) -> float:
        """Score two texts by embedding cosine similarity.

        Negative cosine values clamp to 0.0.

        Raises:
            OracleCallFailedError: API failure or timeout.
            MalformedOracleResponseError: Wrong number or shape of vectors.
            OracleUnavailableError: Model could not be loaded.
        """
        vec_a, vec_b = self._embed([text_a, text_b])
        if vec_a.shape != vec_b.shape:
            raise MalformedOracleResponseError(
                f"Embedding dimensions differ: {vec_a.shape} vs {vec_b.shape}"
            )
        try:
            return clamp_score(cosine_similarity(vec_a, vec_b))
        except ValueError as e:
            raise MalformedOracleResponseError(str(e)) from e

    def is_available(self) -> bool:
        """Check if the embedding model can be initialized."""
        try:
            self._get_model()
            return True
        except OracleUnavailableError as e:
            logger.warning(
                "Embedding similarity oracle unavailable",
                extra={"model": self.config.model, "error": str(e)},
            )
            return False

    def cache_size(self) -> int:
        return len(self._cache)

    def get_model_info(self) -> Dict[str, object]:
        return {
            "oracle": "embedding",
            "model": self.config.model,
            "location": self.config.location,
            "request_timeout_sec": self.request_timeout_sec,
        }

    def close(self) -> None:
        self._executor.shutdown(wait=False)
