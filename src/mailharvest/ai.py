"""Summary: AI provider abstraction and implementations.

Importance: Centralizes LLM access so analysis stays independent of the model server.
Alternatives: Call the Ollama HTTP API directly in each service.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from mailharvest.config import AppConfig
from mailharvest.errors import MalformedResponseError, ValidationError
from mailharvest.http import Deadline, HttpClient


logger = logging.getLogger(__name__)


class AiProvider(ABC):
    """Summary: Abstract interface for AI text generation.

    Importance: Allows switching between a local LLM and a deterministic stand-in.
    Alternatives: Use a single vendor SDK and accept lock-in risk.
    """

    @abstractmethod
    def generate_text(self, prompt: str, purpose: str, deadline: Deadline | None = None) -> tuple[str, int]:
        """Summary: Generate a response for a prompt.

        Importance: Returns the text together with latency in milliseconds for logging.
        Alternatives: Return provider-specific response objects directly.
        """


@dataclass(frozen=True)
class SamplingOptions:
    """Sampling parameters forwarded with every generation request."""

    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40


class GenerateResponse(BaseModel):
    response: str


class MockAiProvider(AiProvider):
    """Summary: Deterministic AI provider for local testing.

    Importance: Enables offline workflows and repeatable tests.
    Alternatives: Use a small local LLM for all development tasks.
    """

    def generate_text(self, prompt: str, purpose: str, deadline: Deadline | None = None) -> tuple[str, int]:
        if deadline is not None:
            deadline.check()
        if purpose == "entities":
            return "[]", 0
        return f"[mock:{purpose}] {prompt[:240]}", 0


class OllamaProvider(AiProvider):
    """Summary: AI provider that targets a local Ollama server.

    Importance: Keeps message content on local hardware.
    Alternatives: Use llama.cpp directly with a Python binding.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        http: HttpClient,
        options: SamplingOptions | None = None,
        timeout: float = 120.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._http = http
        self._options = options or SamplingOptions()
        self._timeout = timeout

    def generate_text(self, prompt: str, purpose: str, deadline: Deadline | None = None) -> tuple[str, int]:
        """Summary: Generate text using the Ollama HTTP API.

        Importance: One synchronous, non-streaming call per request with no retry.
        Alternatives: Stream tokens and assemble the response incrementally.
        """

        payload = {
            "model": self._model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": self._options.temperature,
                "top_p": self._options.top_p,
                "top_k": self._options.top_k,
            },
        }
        started = time.monotonic()
        raw = self._http.post_json(
            f"{self._base_url}/api/generate", payload, deadline=deadline, timeout=self._timeout
        )
        latency_ms = int((time.monotonic() - started) * 1000)
        try:
            parsed = GenerateResponse.model_validate(raw)
        except SchemaError as exc:
            raise MalformedResponseError("Ollama response has no 'response' text") from exc
        logger.info("Ollama %s completed in %sms.", purpose, latency_ms)
        return parsed.response, latency_ms


@dataclass(frozen=True)
class AiProviderFactory:
    """Summary: Factory for selecting AI providers from configuration.

    Importance: Keeps provider selection logic centralized.
    Alternatives: Wire providers manually at the application entrypoint.
    """

    config: AppConfig
    http: HttpClient

    def build(self) -> AiProvider:
        name = self.config.ai_provider.strip().lower()
        if name == "ollama":
            options = SamplingOptions(
                temperature=self.config.llm_temperature,
                top_p=self.config.llm_top_p,
                top_k=self.config.llm_top_k,
            )
            return OllamaProvider(
                self.config.ollama_url,
                self.config.ollama_model,
                self.http,
                options=options,
                timeout=self.config.llm_timeout_seconds,
            )
        if name == "mock":
            return MockAiProvider()
        raise ValidationError(f"Unsupported AI provider: {self.config.ai_provider!r}")
