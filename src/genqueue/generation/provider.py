"""Generation provider adapters."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from genqueue.config import ProviderSettings
from genqueue.generation.errors import (
    ProviderRequestError,
    TransientProviderError,
    classify_provider_failure,
    parse_retry_delay,
    provider_error,
)
from genqueue.generation.sanitization import redact_error

logger = logging.getLogger(__name__)

_RETRY_INFO_TYPE = "type.googleapis.com/google.rpc.RetryInfo"


@dataclass(slots=True)
class GenerationRequest:
    """Provider-neutral generation request."""

    kind: str
    prompt: str
    response_mime_type: str = "application/json"
    system_instruction: str | None = None


class GenerationProvider(Protocol):
    """Anything that turns a request into raw provider text."""

    name: str

    def send(self, credential: str, request: GenerationRequest) -> str:
        """Issue one call and return raw text, raising a ``GenerationError`` on failure."""


class GeminiProvider:
    """Gemini REST ``generateContent`` adapter built on httpx."""

    name = "gemini"

    def __init__(
        self,
        *,
        model: str,
        base_url: str,
        timeout_seconds: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.model = model
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    def send(self, credential: str, request: GenerationRequest) -> str:
        url = f"{self._base_url}/models/{self.model}:generateContent"
        try:
            response = self._client.post(
                url,
                json=_build_body(request),
                headers={"x-goog-api-key": credential},
            )
        except httpx.TimeoutException as exc:
            logger.warning("Timeout calling %s model=%s", self.name, self.model)
            raise TransientProviderError(
                f"Provider call timed out after {self._timeout_seconds:g}s",
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("HTTP error calling %s model=%s: %s", self.name, self.model, exc)
            raise TransientProviderError(
                f"Provider network error: {redact_error(str(exc), secrets=(credential,))}",
            ) from exc

        if not response.is_success:
            raw_message, retry_after = _error_payload(response)
            message = redact_error(raw_message, secrets=(credential,))
            classification = classify_provider_failure(
                provider=self.name,
                status_code=response.status_code,
                message=message,
            )
            logger.warning(
                "Provider %s failed status=%d rule=%s",
                self.name,
                response.status_code,
                classification.matched_rule,
            )
            raise provider_error(
                classification,
                status_code=response.status_code,
                message=message,
                retry_after_seconds=retry_after,
            )
        return _response_text(response)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GeminiProvider:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


ScriptedResponse = str | Exception | Callable[[str, GenerationRequest], str]


@dataclass(slots=True)
class ScriptedProvider:
    """Deterministic provider replaying scripted responses in order.

    Each entry is returned as text, raised when it is an exception, or called
    with ``(credential, request)``. Once the script runs out every call echoes
    the request as a JSON object.
    """

    responses: Sequence[ScriptedResponse] = ()
    name: str = "scripted"
    calls: list[tuple[str, GenerationRequest]] = field(default_factory=list)
    _cursor: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def send(self, credential: str, request: GenerationRequest) -> str:
        with self._lock:
            self.calls.append((credential, request))
            if self._cursor < len(self.responses):
                response = self.responses[self._cursor]
                self._cursor += 1
            else:
                response = None
        if response is None:
            return json.dumps({"kind": request.kind, "echo": request.prompt})
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(credential, request)
        return response

    @property
    def credentials_used(self) -> list[str]:
        return [credential for credential, _ in self.calls]


def build_provider(settings: ProviderSettings) -> GenerationProvider:
    """Construct the configured provider."""

    if settings.name == "gemini":
        return GeminiProvider(
            model=settings.model,
            base_url=settings.base_url,
            timeout_seconds=settings.timeout_seconds,
        )
    if settings.name == "scripted":
        return ScriptedProvider()
    raise ValueError(f"Unsupported provider: {settings.name!r}")


def _build_body(request: GenerationRequest) -> dict[str, Any]:
    body: dict[str, Any] = {
        "contents": [{"role": "user", "parts": [{"text": request.prompt}]}],
        "generationConfig": {"responseMimeType": request.response_mime_type},
    }
    if request.system_instruction:
        body["systemInstruction"] = {"parts": [{"text": request.system_instruction}]}
    return body


def _error_payload(response: httpx.Response) -> tuple[str, float | None]:
    try:
        payload = response.json()
    except ValueError:
        return response.text, parse_retry_delay(response.text)

    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        return response.text, parse_retry_delay(response.text)

    status = str(error.get("status") or "").strip()
    message = str(error.get("message") or "").strip()
    retry_after: float | None = None
    for detail in error.get("details") or []:
        if isinstance(detail, dict) and detail.get("@type") == _RETRY_INFO_TYPE:
            raw_delay = str(detail.get("retryDelay") or "").rstrip("s").strip()
            try:
                retry_after = float(raw_delay)
            except ValueError:
                retry_after = None
            break
    if retry_after is None:
        retry_after = parse_retry_delay(message)
    text = f"{status}: {message}" if status else message
    return text, retry_after


def _response_text(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text

    candidates = payload.get("candidates") if isinstance(payload, dict) else None
    if not candidates:
        feedback = payload.get("promptFeedback") if isinstance(payload, dict) else None
        reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
        if reason:
            raise ProviderRequestError(f"Provider blocked the prompt: {reason}")
        raise TransientProviderError("Provider returned no candidates")

    parts = (candidates[0].get("content") or {}).get("parts") or []
    text = "".join(str(part.get("text", "")) for part in parts if isinstance(part, dict))
    if not text.strip():
        raise TransientProviderError("Provider returned an empty response")
    return text
