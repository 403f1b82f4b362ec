"""
Completion Client - sends one prompt to the external language-completion
service and returns the generated text.

Contract:
    complete(prompt, options) -> text

- A hard wall-clock timeout applies to every call (Timeout).
- Non-success HTTP responses fail with TransportError (status + raw body).
- Error payloads reported by the service fail with ServiceError.
- Responses without the expected text field fail with MalformedResponse.
- No retries here: retry policy belongs to the orchestrator.

Providers:
1) Google Gemini REST `generateContent` (httpx)
2) Groq chat completions (groq SDK)
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Thread
from typing import Any, Dict, Optional

import httpx

from magic_order.config import PhaseParameters, Settings, settings
from magic_order.error_handler import (
    AnalysisError,
    MalformedResponse,
    ServiceError,
    Timeout,
    TransportError,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionOptions:
    """Generation parameters for one call"""
    temperature: float = 0.2
    max_output_tokens: int = 4096
    top_p: float = 0.9
    timeout_ms: int = 30_000

    @classmethod
    def from_phase(cls, params: PhaseParameters) -> "CompletionOptions":
        return cls(
            temperature=params.temperature,
            max_output_tokens=params.max_output_tokens,
            top_p=params.top_p,
            timeout_ms=params.timeout_ms,
        )

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0


def _preview(text: str, limit: int = 200) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class CompletionService(ABC):
    """Base class for completion providers"""

    name: str = "base"

    def complete(self, prompt: str, options: Optional[CompletionOptions] = None) -> str:
        """
        Send `prompt` and return the generated text.

        The provider call runs on its own daemon thread; if it has not
        returned after `options.timeout_ms` the call fails with Timeout
        whatever the transport is still doing. An abandoned call never delays
        the next one.
        """
        options = options or CompletionOptions()
        logger.debug(f"[COMPLETION] {self.name}: sending prompt ({len(prompt)} chars)")

        outcome: Dict[str, Any] = {}

        def run_call():
            try:
                outcome["text"] = self._call(prompt, options)
            except Exception as e:
                outcome["error"] = e

        worker = Thread(target=run_call, name=f"completion-{self.name}", daemon=True)
        worker.start()
        worker.join(options.timeout_seconds)

        if worker.is_alive():
            logger.warning(f"[COMPLETION] {self.name}: no response after {options.timeout_ms} ms")
            raise Timeout(
                f"{self.name} did not answer within {options.timeout_ms} ms",
                timeout_ms=options.timeout_ms,
            )

        error = outcome.get("error")
        if isinstance(error, AnalysisError):
            raise error
        if error is not None:
            logger.error(f"[COMPLETION] {self.name}: unexpected error: {type(error).__name__}: {error}")
            raise TransportError(
                f"Unexpected error calling {self.name}: {error}",
                details={"exception": type(error).__name__},
            ) from error

        text = outcome["text"]
        logger.debug(f"[COMPLETION] {self.name}: response {_preview(text)!r}")
        return text

    @abstractmethod
    def _call(self, prompt: str, options: CompletionOptions) -> str:
        """Perform the provider request. Raise taxonomy errors on failure."""


# ============================================
# GOOGLE GEMINI (REST over httpx)
# ============================================

GEMINI_STATUS_MESSAGES = {
    400: "Bad request. The message format or length may be the problem.",
    401: "Invalid or expired API key.",
    429: "Request limit exceeded. Please try again later.",
    500: "Internal Gemini server error. Please try again later.",
}


class GeminiCompletionService(CompletionService):
    """Google Gemini `generateContent` endpoint"""

    name = "google-gemini"

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.0-flash",
        endpoint: str = "https://generativelanguage.googleapis.com/v1beta/models",
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.endpoint = endpoint
        self._transport = transport

    def _build_payload(self, prompt: str, options: CompletionOptions) -> dict:
        return {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": options.temperature,
                "maxOutputTokens": options.max_output_tokens,
                "topP": options.top_p,
            },
        }

    def _call(self, prompt: str, options: CompletionOptions) -> str:
        url = f"{self.endpoint.rstrip('/')}/{self.model}:generateContent"

        try:
            with httpx.Client(timeout=options.timeout_seconds, transport=self._transport) as client:
                resp = client.post(
                    url,
                    params={"key": self.api_key},
                    json=self._build_payload(prompt, options),
                )
        except httpx.TimeoutException as e:
            raise Timeout(f"Gemini request timed out: {e}", timeout_ms=options.timeout_ms) from e
        except httpx.HTTPError as e:
            raise TransportError(
                f"Could not connect to Gemini: {e}",
                details={"network_error": str(e)},
            ) from e

        body = resp.text

        if not resp.is_success:
            message = GEMINI_STATUS_MESSAGES.get(
                resp.status_code, f"Error {resp.status_code}: {resp.reason_phrase or 'unknown error'}"
            )
            logger.error(f"[GEMINI] HTTP {resp.status_code}: {_preview(body)}")
            raise TransportError(message, status=resp.status_code, body=body)

        try:
            data = resp.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise MalformedResponse(
                f"Gemini response is not JSON: {e}", details={"raw_body": body}
            ) from e

        if not isinstance(data, dict):
            raise MalformedResponse("Gemini response is not an object", details={"raw_body": body})

        if data.get("error"):
            error = data["error"]
            detail = error.get("message") if isinstance(error, dict) else str(error)
            raise ServiceError(f"Gemini API error: {detail or 'unknown error'}", service_detail=error)

        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback")
            if isinstance(feedback, dict) and feedback.get("blockReason"):
                raise ServiceError(
                    f"Prompt blocked: {feedback['blockReason']}", service_detail=feedback
                )
            raise MalformedResponse("Gemini returned no candidates", details={"raw_body": body})

        candidate = candidates[0] if isinstance(candidates[0], dict) else {}
        if candidate.get("finishReason") == "SAFETY":
            raise ServiceError(
                "Content blocked by safety policies", service_detail=candidate.get("safetyRatings")
            )

        content = candidate.get("content") or {}
        parts = content.get("parts") or [] if isinstance(content, dict) else []
        text = parts[0].get("text") if parts and isinstance(parts[0], dict) else None
        if not isinstance(text, str):
            raise MalformedResponse("Gemini response has no text part", details={"raw_body": body})

        return text


# ============================================
# GROQ (chat completions SDK)
# ============================================

class GroqCompletionService(CompletionService):
    """Groq chat completions with a single user message"""

    name = "groq"

    def __init__(self, api_key: str, model: str = "llama-3.3-70b-versatile", client: Any = None):
        self.model = model
        if client is None:
            from groq import Groq

            # Retries are the orchestrator's decision, not the SDK's
            client = Groq(api_key=api_key, max_retries=0)
        self.client = client

    def _call(self, prompt: str, options: CompletionOptions) -> str:
        import groq

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=options.temperature,
                max_tokens=options.max_output_tokens,
                top_p=options.top_p,
                timeout=options.timeout_seconds,
            )
        except groq.APITimeoutError as e:
            raise Timeout(f"Groq request timed out: {e}", timeout_ms=options.timeout_ms) from e
        except groq.APIStatusError as e:
            raise TransportError(
                f"Groq HTTP error {e.status_code}: {e.message}",
                status=e.status_code,
                body=e.response.text if e.response is not None else None,
            ) from e
        except groq.APIConnectionError as e:
            raise TransportError(
                f"Could not connect to Groq: {e}", details={"network_error": str(e)}
            ) from e
        except groq.APIError as e:
            raise ServiceError(f"Groq API error: {e.message}", service_detail=e.body) from e

        choices = getattr(response, "choices", None)
        if not choices:
            raise MalformedResponse("Groq returned no choices")

        message = getattr(choices[0], "message", None)
        text = getattr(message, "content", None)
        if not isinstance(text, str):
            raise MalformedResponse("Groq response has no message content")

        return text


# ============================================
# FACTORY
# ============================================

def build_completion_service(source: Optional[Settings] = None) -> CompletionService:
    """Create the provider selected in settings."""
    s = source or settings
    if s.completion_provider == "groq":
        logger.info(f"[COMPLETION] Using Groq model {s.groq_model}")
        return GroqCompletionService(api_key=s.groq_api_key, model=s.groq_model)

    logger.info(f"[COMPLETION] Using Gemini model {s.gemini_model}")
    return GeminiCompletionService(
        api_key=s.google_api_key,
        model=s.gemini_model,
        endpoint=s.gemini_endpoint,
    )
