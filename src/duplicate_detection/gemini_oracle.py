"""Gemini similarity oracle using the google-genai SDK.

Asks Gemini (Vertex AI backend) for a structured ``{"similarity": <number>}``
answer via response_mime_type="application/json" and response_schema.

Each call is bounded by a timeout enforced through a thread pool executor;
rate-limited calls are retried with exponential backoff (3 attempts).
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from typing import Any, Dict
import logging

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.common.config import DEFAULT_MAX_CONCURRENCY, DEFAULT_ORACLE_TIMEOUT_SEC, GeminiConfig
from src.duplicate_detection.oracle import (
    MalformedOracleResponseError,
    OracleCallFailedError,
    OracleRateLimitError,
    OracleTimeoutError,
    OracleUnavailableError,
    parse_similarity_payload,
)
from src.duplicate_detection.prompt_templates import (
    build_similarity_prompt,
    get_similarity_response_schema,
)

logger = logging.getLogger(__name__)


class GeminiSimilarityOracle:
    """Similarity oracle backed by a Gemini model.

    Handles:
    - Structured JSON output via response_mime_type and response_schema
    - Per-call timeout (OracleTimeoutError)
    - Retry with exponential backoff on rate limits
    - Error classification for the evaluator's fail-safe scoring
    """

    def __init__(
        self,
        config: GeminiConfig,
        request_timeout_sec: float = DEFAULT_ORACLE_TIMEOUT_SEC,
        max_workers: int = DEFAULT_MAX_CONCURRENCY,
        client: Any = None,
    ):
        """Initialize the oracle.

        Args:
            config: Gemini configuration with model, temperature, etc.
            request_timeout_sec: Maximum time in seconds for a single scoring call.
            max_workers: Worker threads for API calls. A timed-out call keeps its
                worker until the backend returns, and time spent queued counts
                against the timeout, so size this above the caller's fan-out.
            client: Optional pre-built genai client (tests inject a stub).
        """
        self.config = config
        self.request_timeout_sec = request_timeout_sec
        self._client = client
        self._response_schema = get_similarity_response_schema()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="gemini-oracle")

    def _get_client(self):
        """Lazy-load the google-genai client."""
        if self._client is None:
            try:
                from google import genai
                from google.genai.types import HttpOptions

                self._client = genai.Client(
                    vertexai=True,
                    project=None,  # Uses GOOGLE_CLOUD_PROJECT from env
                    location=self.config.location,
                    http_options=HttpOptions(api_version="v1"),
                )
            except ImportError as e:
                raise OracleUnavailableError(
                    "google-genai package not installed. Run: pip install google-genai"
                ) from e
            except Exception as e:
                raise OracleUnavailableError(f"Failed to initialize Gemini client: {e}") from e

        return self._client

    def _make_api_call(self, prompt: str) -> str:
        """Make the Gemini call and return the raw response text.

        Raises:
            OracleRateLimitError: On 429/quota errors (retried).
            OracleCallFailedError: On any other API error.
            MalformedOracleResponseError: If the response carries no text.
        """
        client = self._get_client()

        try:
            from google.genai import types

            config = types.GenerateContentConfig(
                temperature=self.config.temperature,
                max_output_tokens=self.config.max_output_tokens,
                response_mime_type="application/json",
                response_schema=self._response_schema,
            )

            response = client.models.generate_content(
                model=self.config.model,
                contents=prompt,
                config=config,
            )
        except Exception as e:
            error_msg = str(e)
            if "429" in error_msg or "quota" in error_msg.lower() or "rate limit" in error_msg.lower():
                raise OracleRateLimitError(f"Rate limit exceeded: {error_msg}") from e
            raise OracleCallFailedError(f"Gemini API error: {error_msg}") from e

        if not response.text:
            raise MalformedOracleResponseError("Empty response from Gemini")
        return response.text

    @retry(
        retry=retry_if_exception_type(OracleRateLimitError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        reraise=True,
    )
    def _request_score_text(self, prompt: str) -> str:
        future = self._executor.submit(self._make_api_call, prompt)
        try:
            return future.result(timeout=self.request_timeout_sec)
        except FuturesTimeoutError:
            # Won't stop the underlying request, but frees the caller
            future.cancel()
            raise OracleTimeoutError(
                f"Gemini similarity call exceeded timeout of {self.request_timeout_sec}s"
            )

    def score(self, text_a: str, text_b: str) -> float:
        """Score two texts.

        Returns:
            Similarity clamped into [0, 1].

        Raises:
            OracleCallFailedError: API failure or timeout.
            MalformedOracleResponseError: Response outside the score contract.
            OracleUnavailableError: Client could not be created.
        """
        raw_text = self._request_score_text(build_similarity_prompt(text_a, text_b))
        return parse_similarity_payload(raw_text)

    def is_available(self) -> bool:
        """Check that the configured model can be reached.

        Makes one metadata call (models.get); no scoring tokens are spent.
        """
        try:
            self._get_client().models.get(model=self.config.model)
            return True
        except Exception as e:
            logger.warning(
                "Gemini similarity oracle unavailable",
                extra={"model": self.config.model, "error": str(e)},
            )
            return False

    def get_model_info(self) -> Dict[str, Any]:
        """Return current model configuration for logging."""
        return {
            "oracle": "gemini",
            "model": self.config.model,
            "temperature": self.config.temperature,
            "location": self.config.location,
            "request_timeout_sec": self.request_timeout_sec,
        }

    def close(self) -> None:
        self._executor.shutdown(wait=False)
