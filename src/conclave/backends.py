# Copyright (c) Syntropy Systems
"""Decision backends: the mock backend and thin HTTP clients for hosted models."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Protocol, cast

import httpx
from pydantic import ValidationError

from conclave.credentials import EnvironmentCredentials, resolve_api_key
from conclave.errors import BackendError, ConfigurationError
from conclave.models.base import ConclaveBaseModel
from conclave.models.experiment import Provider

if TYPE_CHECKING:
    from conclave.credentials import CredentialResolver
    from conclave.models.base import JSONObject
    from conclave.models.experiment import BackendConfig

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})

DEFAULT_BASE_URLS: dict[Provider, str] = {
    Provider.ANTHROPIC: "https://api.anthropic.com",
    Provider.OPENAI: "https://api.openai.com",
    Provider.OPENROUTER: "https://openrouter.ai/api",
    Provider.OLLAMA: "http://localhost:11434",
}


@dataclass
class Message:
    """One chat message sent to a backend."""

    role: str
    content: str


@dataclass
class Decision:
    """A backend's reply plus the units it consumed."""

    content: str
    input_units: int
    output_units: int
    model: str


class DecisionBackend(Protocol):
    """Anything that can answer a prompt and report usage."""

    model: str

    def complete(
        self,
        messages: list[Message],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Decision:
        ...

    def close(self) -> None:
        ...


BackendFactory = Callable[["BackendConfig", "CredentialResolver"], DecisionBackend]


class MockBackend:
    """Offline backend with fixed replies and fixed usage."""

    model: str
    input_units: int
    output_units: int
    calls: int

    def __init__(self, model: str = "mock", input_units: int = 100, output_units: int = 50) -> None:
        self.model = model
        self.input_units = input_units
        self.output_units = output_units
        self.calls = 0

    def complete(
        self,
        messages: list[Message],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Decision:
        _ = (messages, temperature, max_tokens)
        self.calls += 1
        content = (
            f"REASONING: This is call {self.calls}. Holding positions.\n\n"
            "ORDERS:\nHOLD\n"
        )
        return Decision(
            content=content,
            input_units=self.input_units,
            output_units=self.output_units,
            model=self.model,
        )

    def close(self) -> None:
        return


class _AnthropicUsage(ConclaveBaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class _AnthropicBlock(ConclaveBaseModel):
    type: str = "text"
    text: str = ""


class _AnthropicResponse(ConclaveBaseModel):
    content: list[_AnthropicBlock] = []
    usage: _AnthropicUsage = _AnthropicUsage()


class _ChatUsage(ConclaveBaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0


class _ChatMessage(ConclaveBaseModel):
    content: str | None = None


class _ChatChoice(ConclaveBaseModel):
    message: _ChatMessage = _ChatMessage()
    finish_reason: str | None = None


class _ChatResponse(ConclaveBaseModel):
    choices: list[_ChatChoice] = []
    usage: _ChatUsage = _ChatUsage()


class _HttpBackend:
    """Shared request/retry handling for hosted backends."""

    model: str
    base_url: str
    temperature: float
    max_tokens: int
    max_retries: int
    _client: httpx.Client
    _sleep: Callable[[float], None]

    def __init__(
        self,
        model: str,
        base_url: str,
        *,
        temperature: float = 0.7,
        max_tokens: int = 2048,
        timeout: float = 120.0,
        max_retries: int = 3,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_retries = max_retries
        self._client = client or httpx.Client(timeout=timeout)
        self._sleep = sleep

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _post(self, path: str, body: JSONObject) -> object:
        url = f"{self.base_url}{path}"
        attempt = 0
        while True:
            try:
                response = self._client.post(url, json=body, headers=self._headers())
                if response.status_code in RETRYABLE_STATUS and attempt < self.max_retries:
                    delay = 2.0**attempt
                    logger.warning(
                        "%s returned %s, retrying in %.0fs", url, response.status_code, delay
                    )
                    attempt += 1
                    self._sleep(delay)
                    continue
                _ = response.raise_for_status()
                return cast("object", response.json())
            except httpx.HTTPStatusError as e:
                msg = f"API error: {e.response.status_code} - {e.response.text[:500]}"
                raise BackendError(msg) from e
            except httpx.RequestError as e:
                msg = f"Connection error: {e}"
                raise BackendError(msg) from e


class AnthropicBackend(_HttpBackend):
    """Anthropic Messages API."""

    _api_key: str

    def __init__(self, model: str, api_key: str, base_url: str | None = None, **kwargs: object) -> None:
        super().__init__(
            model,
            base_url or DEFAULT_BASE_URLS[Provider.ANTHROPIC],
            **kwargs,  # pyright: ignore[reportArgumentType]
        )
        self._api_key = api_key

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self._api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def complete(
        self,
        messages: list[Message],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Decision:
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        body: JSONObject = {
            "model": self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature if temperature is None else temperature,
            "system": system,
            "messages": [
                {"role": m.role, "content": m.content} for m in messages if m.role != "system"
            ],
        }
        data = self._post("/v1/messages", body)
        try:
            parsed = _AnthropicResponse.model_validate(data)
        except ValidationError as e:
            msg = f"Unexpected Anthropic response: {e}"
            raise BackendError(msg) from e
        text = "".join(block.text for block in parsed.content if block.type == "text")
        return Decision(
            content=text,
            input_units=parsed.usage.input_tokens,
            output_units=parsed.usage.output_tokens,
            model=self.model,
        )


class OpenAICompatibleBackend(_HttpBackend):
    """OpenAI chat completions and the APIs that mimic it."""

    _api_key: str | None

    def __init__(self, model: str, base_url: str, api_key: str | None = None, **kwargs: object) -> None:
        super().__init__(model, base_url, **kwargs)  # pyright: ignore[reportArgumentType]
        self._api_key = api_key

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def complete(
        self,
        messages: list[Message],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Decision:
        body: JSONObject = {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
        }
        limit = max_tokens or self.max_tokens
        # Reasoning models take max_completion_tokens and reject temperature.
        reasoning = self.model.startswith(("o1", "o3", "o4", "gpt-5"))
        if reasoning:
            body["max_completion_tokens"] = limit
        else:
            body["max_tokens"] = limit
            body["temperature"] = self.temperature if temperature is None else temperature

        data = self._post("/v1/chat/completions", body)
        try:
            parsed = _ChatResponse.model_validate(data)
        except ValidationError as e:
            msg = f"Unexpected chat completion response: {e}"
            raise BackendError(msg) from e
        content = parsed.choices[0].message.content if parsed.choices else None
        return Decision(
            content=content or "",
            input_units=parsed.usage.prompt_tokens,
            output_units=parsed.usage.completion_tokens,
            model=self.model,
        )


def create_backend(
    backend: BackendConfig,
    resolver: CredentialResolver | None = None,
) -> DecisionBackend:
    """Build a decision backend for a backend entry."""
    resolver = resolver or EnvironmentCredentials()
    options: dict[str, object] = {
        "temperature": backend.temperature,
        "max_tokens": backend.max_tokens,
    }

    if backend.provider == Provider.MOCK:
        return MockBackend(model=backend.model)

    api_key = resolve_api_key(backend, resolver)

    if backend.provider == Provider.ANTHROPIC:
        return AnthropicBackend(backend.model, api_key or "", backend.base_url, **options)

    if backend.provider == Provider.CUSTOM:
        if not backend.base_url:
            msg = f"Backend '{backend.id}' uses the custom provider but has no base URL"
            raise ConfigurationError(msg)
        base_url = backend.base_url
    else:
        base_url = backend.base_url or DEFAULT_BASE_URLS[backend.provider]

    return OpenAICompatibleBackend(backend.model, base_url, api_key, **options)
