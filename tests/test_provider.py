from __future__ import annotations

import json

import allure
import httpx
import pytest

from genqueue.config import ProviderSettings
from genqueue.generation.errors import (
    CredentialInvalidError,
    ProviderRequestError,
    RateLimitError,
    TransientProviderError,
)
from genqueue.generation.provider import (
    GeminiProvider,
    GenerationRequest,
    ScriptedProvider,
    build_provider,
)

pytestmark = [
    allure.epic("Generation"),
    allure.feature("Provider Adapters"),
]

_REQUEST = GenerationRequest(kind="generate", prompt="Design something", system_instruction="JSON")


def _provider(handler) -> GeminiProvider:
    return GeminiProvider(
        model="gemini-test",
        base_url="https://provider.test/v1beta/",
        timeout_seconds=5,
        transport=httpx.MockTransport(handler),
    )


def test_gemini_sends_generate_content_and_joins_parts() -> None:
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("x-goog-api-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"candidates": [{"content": {"parts": [{"text": '{"a": '}, {"text": "1}"}]}}]},
        )

    with _provider(handler) as provider:
        text = provider.send("secret-key", _REQUEST)

    assert text == '{"a": 1}'
    assert seen["url"] == "https://provider.test/v1beta/models/gemini-test:generateContent"
    assert seen["key"] == "secret-key"
    body = seen["body"]
    assert isinstance(body, dict)
    assert body["contents"][0]["parts"][0]["text"] == "Design something"
    assert body["generationConfig"] == {"responseMimeType": "application/json"}
    assert body["systemInstruction"] == {"parts": [{"text": "JSON"}]}


def test_gemini_maps_leaked_key_to_credential_invalid() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            403,
            json={
                "error": {
                    "code": 403,
                    "status": "PERMISSION_DENIED",
                    "message": "Your API key was reported as leaked.",
                },
            },
        )

    with _provider(handler) as provider, pytest.raises(CredentialInvalidError, match="leaked"):
        provider.send("leaky", _REQUEST)


def test_gemini_rate_limit_reads_retry_info_detail() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            json={
                "error": {
                    "code": 429,
                    "status": "RESOURCE_EXHAUSTED",
                    "message": "Quota exceeded for metric generate_content_free_tier_requests",
                    "details": [
                        {"@type": "type.googleapis.com/google.rpc.RetryInfo", "retryDelay": "21s"},
                    ],
                },
            },
        )

    with _provider(handler) as provider, pytest.raises(RateLimitError) as error_info:
        provider.send("key", _REQUEST)

    assert error_info.value.retry_after_seconds == 21.0


def test_gemini_server_error_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="upstream connect error")

    with _provider(handler) as provider, pytest.raises(TransientProviderError):
        provider.send("key", _REQUEST)


def test_gemini_timeout_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with _provider(handler) as provider, pytest.raises(TransientProviderError, match="timed out"):
        provider.send("key", _REQUEST)


def test_gemini_network_error_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with _provider(handler) as provider, pytest.raises(TransientProviderError, match="network"):
        provider.send("key", _REQUEST)


def test_gemini_blocked_prompt_is_not_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}})

    with _provider(handler) as provider, pytest.raises(ProviderRequestError, match="SAFETY"):
        provider.send("key", _REQUEST)


def test_scripted_provider_replays_then_echoes() -> None:
    provider = ScriptedProvider(["first", CredentialInvalidError("bad key")])

    assert provider.send("k1", _REQUEST) == "first"
    with pytest.raises(CredentialInvalidError):
        provider.send("k2", _REQUEST)
    echoed = json.loads(provider.send("k3", _REQUEST))

    assert echoed == {"kind": "generate", "echo": "Design something"}
    assert provider.credentials_used == ["k1", "k2", "k3"]


def test_build_provider_uses_settings() -> None:
    assert isinstance(build_provider(ProviderSettings(name="scripted")), ScriptedProvider)
    gemini = build_provider(ProviderSettings(name="gemini", model="gemini-x"))
    assert isinstance(gemini, GeminiProvider)
    assert gemini.model == "gemini-x"
    gemini.close()
    with pytest.raises(ValueError, match="Unsupported provider"):
        build_provider(ProviderSettings(name="other"))
