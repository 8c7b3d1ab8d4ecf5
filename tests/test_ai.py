"""Summary: Tests for AI abstraction layer.

Importance: Ensures AI providers return expected outputs and send the expected requests.
Alternatives: Skip AI testing and rely on manual verification.
"""

from __future__ import annotations

import time

import pytest

from mailharvest.ai import AiProviderFactory, MockAiProvider, OllamaProvider, SamplingOptions
from mailharvest.errors import DeadlineExceededError, ValidationError
from mailharvest.http import Deadline


def test_mock_ai_provider_returns_response() -> None:
    """Summary: Verify mock AI provider returns deterministic text.

    Importance: Confirms basic AI abstraction behavior for tests.
    Alternatives: Use live providers in integration tests only.
    """

    provider = MockAiProvider()
    response, latency = provider.generate_text("Hello", "test")
    assert "[mock:test]" in response
    assert latency >= 0
    assert provider.generate_text("Hello", "entities") == ("[]", 0)


def test_mock_provider_honors_deadline() -> None:
    expired = Deadline(expires_at=time.monotonic() - 1)
    with pytest.raises(DeadlineExceededError):
        MockAiProvider().generate_text("Hello", "summary", deadline=expired)


def test_ollama_provider_posts_generate_request(fake_http) -> None:
    fake_http.on("POST", "http://ollama.test/api/generate", {"response": "Hi there"})
    provider = OllamaProvider(
        "http://ollama.test/", "mistral", fake_http, options=SamplingOptions(temperature=0.2, top_p=0.5, top_k=10)
    )
    text, latency = provider.generate_text("Say hi", "summary")
    assert text == "Hi there"
    assert latency >= 0
    assert fake_http.calls[0].url == "http://ollama.test/api/generate"
    assert fake_http.calls[0].body == {
        "model": "mistral",
        "prompt": "Say hi",
        "stream": False,
        "options": {"temperature": 0.2, "top_p": 0.5, "top_k": 10},
    }


def test_factory_selects_provider(make_config, fake_http) -> None:
    """Summary: Verify provider selection from configuration.

    Importance: An unknown provider name must fail at startup, not on the first request.
    Alternatives: Default silently to the mock provider.
    """

    assert isinstance(AiProviderFactory(make_config(), fake_http).build(), OllamaProvider)
    assert isinstance(AiProviderFactory(make_config(ai_provider=" Mock "), fake_http).build(), MockAiProvider)
    with pytest.raises(ValidationError):
        AiProviderFactory(make_config(ai_provider="openai"), fake_http).build()
