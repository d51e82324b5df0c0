"""LLM client for Ollama integration."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Sequence

import httpx
from pydantic import BaseModel, ValidationError

from mailsweep.models import Classification, ClassificationResult
from mailsweep.prompts import get_profile

if TYPE_CHECKING:
    from mailsweep.config import OllamaConfig

logger = logging.getLogger(__name__)

CLASSIFICATION_MAP: dict[str, Classification] = {
    "spam": Classification.SPAM,
    "newsletter": Classification.NEWSLETTER,
    "keep": Classification.KEEP,
    "legitimate": Classification.KEEP,
}

SINGLE_BODY_CHARS = 500
BATCH_BODY_CHARS = 200


@dataclass
class BatchEmail:
    """One entry of a batch classification request."""

    from_addr: str
    subject: str
    body_preview: str


class UnsubscribeAnalysis(BaseModel):
    """LLM verdict on an unsubscribe HTTP response."""

    success: bool = False
    explanation: str = "Unable to determine result"
    next_action: str | None = None


UNSUBSCRIBE_ANALYSIS_PROMPT = """You are analyzing the result of an unsubscribe request to a newsletter.

URL: {url}
HTTP Status: {status_code}
{error_line}
Response Body (first 2000 chars):
{body}

Determine:
1. Was the unsubscribe successful?
2. If not, what went wrong?
3. Is a next action needed (like clicking a confirmation link)?

Respond in JSON only:
{{"success": true/false, "explanation": "what happened", "next_action": "what the user should do next, or null"}}"""


class LLMClient:
    """Client for the Ollama generate API.

    Classification never raises: transport, HTTP and parse failures all come
    back as an ``unknown`` result with confidence 0 and the cause as
    reasoning. Retrying is left to the caller.
    """

    def __init__(
        self,
        config: OllamaConfig,
        transport: httpx.BaseTransport | None = None,
        model_resolver: Callable[[], str | None] | None = None,
    ):
        """Initialize the LLM client.

        Args:
            config: Ollama connection and generation settings.
            transport: Optional httpx transport, used in place of the network.
            model_resolver: Called before each request for the model name.
                Falls back to ``config.model`` when it is missing or returns
                an empty value.
        """
        self.config = config
        self._model_resolver = model_resolver
        self._transport = transport
        self._client: httpx.Client | None = None
        self._client_lock = threading.Lock()

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        with self._client_lock:
            if self._client is None:
                self._client = httpx.Client(
                    base_url=self.config.base_url,
                    timeout=self.config.timeout,
                    transport=self._transport,
                )
            return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        with self._client_lock:
            if self._client:
                self._client.close()
                self._client = None

    def __enter__(self) -> LLMClient:
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        """Context manager exit."""
        self.close()

    def current_model(self) -> str:
        """Return the model the next request will use."""
        if self._model_resolver is not None:
            model = self._model_resolver()
            if model:
                return model
        return self.config.model

    def check_health(self) -> bool:
        """Check if Ollama is available."""
        try:
            client = self._get_client()
            response = client.get("/api/tags", timeout=5.0)
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"Ollama health check failed: {e}")
            return False

    def list_models(self) -> list[str]:
        """List available models."""
        try:
            client = self._get_client()
            response = client.get("/api/tags")
            if response.status_code == 200:
                data = response.json()
                return [m["name"] for m in data.get("models", [])]
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.error(f"Failed to list models: {e}")
        return []

    def classify_email(
        self, from_addr: str, subject: str, body_preview: str
    ) -> ClassificationResult:
        """Classify a single email."""
        model = self.current_model()
        profile = get_profile(model)
        prompt = profile.single_prompt.format(
            from_addr=from_addr,
            subject=subject,
            body_preview=(body_preview or "")[:SINGLE_BODY_CHARS],
        )

        raw_response, error = self._generate(
            prompt, model, timeout=self.config.timeout, num_predict=100
        )
        if error:
            logger.warning(f"Classification failed for {from_addr}: {error}")
            return ClassificationResult.failed(f"Error: {error}")

        try:
            data = json.loads(self._clean_json_response(raw_response))
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse LLM response: {e}")
            return ClassificationResult.failed(f"Invalid response format: {e}")

        if not isinstance(data, dict):
            return ClassificationResult.failed("Invalid response format: expected a JSON object")

        return self._to_result(data)

    def classify_batch(self, emails: Sequence[BatchEmail]) -> list[ClassificationResult]:
        """Classify several emails in one request.

        The response must be an ordered array with one entry per email. A
        missing, short or unparsable response fails the whole batch: every
        email gets ``unknown/0``.
        """
        if not emails:
            return []

        model = self.current_model()
        profile = get_profile(model)
        email_list = "\n\n".join(
            f"[{i + 1}] From: {e.from_addr}\nSubject: {e.subject}\n"
            f"Body: {(e.body_preview or '')[:BATCH_BODY_CHARS]}"
            for i, e in enumerate(emails)
        )
        prompt = profile.batch_prompt.format(emails=email_list)

        raw_response, error = self._generate(
            prompt,
            model,
            timeout=self.config.batch_timeout,
            num_predict=max(500, 60 * len(emails)),
        )
        if error:
            logger.error(f"Batch classification failed: {error}")
            return self._fail_batch(len(emails), f"Error: {error}")

        try:
            entries = self._parse_batch_response(raw_response, len(emails))
        except (json.JSONDecodeError, ValueError) as e:
            logger.error(f"Failed to parse batch response: {e}")
            return self._fail_batch(len(emails), f"Invalid batch response: {e}")

        return [self._to_result(entry) for entry in entries]

    def analyze_unsubscribe_response(
        self,
        url: str,
        status_code: int,
        response_body: str,
        error: str | None = None,
    ) -> UnsubscribeAnalysis:
        """Ask the LLM whether an unsubscribe request succeeded."""
        prompt = UNSUBSCRIBE_ANALYSIS_PROMPT.format(
            url=url,
            status_code=status_code,
            error_line=f"Error: {error}" if error else "",
            body=(response_body or "")[:2000],
        )
        raw_response, call_error = self._generate(
            prompt, self.current_model(), timeout=30.0, num_predict=200
        )
        if call_error:
            return UnsubscribeAnalysis(success=False, explanation=f"Analysis error: {call_error}")

        try:
            data = json.loads(self._clean_json_response(raw_response))
            return UnsubscribeAnalysis.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as e:
            return UnsubscribeAnalysis(success=False, explanation=f"Analysis error: {e}")

    def _generate(
        self, prompt: str, model: str, timeout: float, num_predict: int
    ) -> tuple[str, str | None]:
        """Call the Ollama generate API and return (response, error)."""
        try:
            client = self._get_client()

            payload = {
                "model": model,
                "prompt": prompt,
                "stream": False,
                "format": "json",
                "keep_alive": self.config.keep_alive,
                "options": {
                    "temperature": self.config.temperature,
                    "num_predict": num_predict,
                },
            }

            logger.debug(f"Calling Ollama API with model {model}")

            response = client.post("/api/generate", json=payload, timeout=timeout)

            if response.status_code != 200:
                return "", f"API error: {response.status_code} - {response.text[:200]}"

            data = response.json()
            return data.get("response", ""), None

        except httpx.TimeoutException:
            return "", "Request timed out"
        except httpx.RequestError as e:
            return "", f"Request failed: {e}"
        except ValueError as e:
            return "", f"Invalid API response: {e}"
        except Exception as e:
            logger.exception("Unexpected error calling LLM")
            return "", f"Unexpected error: {e}"

    def _parse_batch_response(self, response: str, expected: int) -> list[dict[str, Any]]:
        data = json.loads(self._clean_json_response(response))

        if isinstance(data, dict):
            # JSON mode often wraps the array in an object, e.g. {"results": [...]}
            lists = [value for value in data.values() if isinstance(value, list)]
            if len(lists) == 1:
                data = lists[0]
            elif "classification" in data:
                data = [data]
            else:
                raise ValueError("expected a JSON array of classifications")

        if not isinstance(data, list):
            raise ValueError("expected a JSON array of classifications")
        if len(data) != expected:
            raise ValueError(f"got {len(data)} results for {expected} emails")
        if not all(isinstance(entry, dict) for entry in data):
            raise ValueError("every result must be a JSON object")
        return data

    def _to_result(self, data: dict[str, Any]) -> ClassificationResult:
        label = str(data.get("classification") or "").strip().lower()
        classification = CLASSIFICATION_MAP.get(label)
        if classification is None:
            return ClassificationResult.failed(f"Unrecognized classification: {label!r}")

        reasoning = data.get("reasoning")
        return ClassificationResult(
            classification=classification,
            confidence=data.get("confidence", 0.5),
            reasoning=str(reasoning) if reasoning else None,
        )

    def _fail_batch(self, count: int, reason: str) -> list[ClassificationResult]:
        return [ClassificationResult.failed(reason) for _ in range(count)]

    def _clean_json_response(self, response: str) -> str:
        """Clean markdown formatting from JSON response."""
        response = response.strip()
        if response.startswith("```json"):
            response = response[7:]
        if response.startswith("```"):
            response = response[3:]
        if response.endswith("```"):
            response = response[:-3]
        return response.strip()
