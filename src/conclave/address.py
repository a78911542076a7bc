# Copyright (c) Syntropy Systems
"""Backend address parsing.

Addresses use the form ``[provider:]model[@base_url][#api_key]``::

    openai:gpt-4o                          -> OpenAI, gpt-4o
    ollama:llama3.2@http://gpu:11434       -> Ollama at a custom URL
    custom:mymodel@https://api.example.com#sk-xxx
    claude-sonnet-4-5                      -> inferred: Anthropic
    meta-llama/llama-3.1-70b-instruct      -> inferred: OpenRouter
    mock                                   -> built-in mock backend
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from pydantic import SecretStr

from conclave.errors import AddressError
from conclave.models.experiment import BackendAddress, BackendConfig, Participant, Provider

if TYPE_CHECKING:
    from collections.abc import Mapping

PROVIDER_ALIASES: dict[str, Provider] = {
    "mock": Provider.MOCK,
    "anthropic": Provider.ANTHROPIC,
    "claude": Provider.ANTHROPIC,
    "openai": Provider.OPENAI,
    "chatgpt": Provider.OPENAI,
    "openrouter": Provider.OPENROUTER,
    "ollama": Provider.OLLAMA,
    "custom": Provider.CUSTOM,
    "local": Provider.CUSTOM,
}

_OPENAI_REASONING = re.compile(r"^o[134](\b|-)")


def infer_provider(model: str) -> Provider:
    """Infer the provider from a bare model name.

    Raises AddressError when no rule matches; there is no fallback provider.
    """
    lower = model.lower()

    if lower == "mock":
        return Provider.MOCK

    if lower.startswith(("claude-", "claude3", "claude4")):
        return Provider.ANTHROPIC

    if lower.startswith(("gpt-", "chatgpt-")) or _OPENAI_REASONING.match(lower):
        return Provider.OPENAI

    if "/" in model:
        return Provider.OPENROUTER

    msg = (
        f"Cannot auto-detect provider for model '{model}'. "
        f"Use an explicit prefix, e.g. openai:{model}, anthropic:{model}, "
        f"openrouter:{model}, ollama:{model} or custom:{model}"
    )
    raise AddressError(msg)


def resolve(spec: str) -> BackendAddress:
    """Parse an address string into a BackendAddress."""
    if not spec or not spec.strip():
        msg = "Backend address cannot be empty"
        raise AddressError(msg)

    raw = spec.strip()
    remaining = raw
    api_key: str | None = None
    base_url: str | None = None

    hash_idx = remaining.find("#")
    if hash_idx != -1:
        api_key = remaining[hash_idx + 1:]
        remaining = remaining[:hash_idx]
        if not api_key:
            msg = f"Invalid backend address: trailing '#' with no API key: {_redact(raw)}"
            raise AddressError(msg)

    at_idx = remaining.find("@")
    if at_idx != -1:
        base_url = remaining[at_idx + 1:]
        remaining = remaining[:at_idx]
        if not base_url:
            msg = f"Invalid backend address: trailing '@' with no base URL: {_redact(raw)}"
            raise AddressError(msg)

    provider: Provider | None = None
    model = remaining
    colon_idx = remaining.find(":")
    if colon_idx != -1:
        candidate = remaining[:colon_idx].lower()
        if candidate in PROVIDER_ALIASES:
            provider = PROVIDER_ALIASES[candidate]
            model = remaining[colon_idx + 1:]

    if not model:
        msg = f"Invalid backend address: no model name found: {_redact(raw)}"
        raise AddressError(msg)

    if provider is None:
        provider = infer_provider(model)

    return BackendAddress(
        provider=provider,
        model=model,
        base_url=base_url,
        api_key=SecretStr(api_key) if api_key is not None else None,
    )


def resolve_backend(spec: str, backend_id: str | None = None) -> BackendConfig:
    """Resolve an address string straight into a backend list entry."""
    address = resolve(spec)
    return BackendConfig(
        id=backend_id or address.canonical,
        provider=address.provider,
        model=address.model,
        base_url=address.base_url,
        api_key=address.api_key,
    )


def parse_assignments(
    assignments: Mapping[str, str],
    default: str | None = None,
) -> tuple[list[BackendConfig], dict[Participant, str]]:
    """Resolve ``participant -> address`` pairs.

    Returns the deduplicated backend entries (default first) and a mapping of
    participant to backend id.
    """
    backends: dict[str, BackendConfig] = {}
    by_participant: dict[Participant, str] = {}

    if default:
        backend = resolve_backend(default)
        backends[backend.id] = backend

    for name, spec in assignments.items():
        try:
            participant = Participant(name.strip().upper())
        except ValueError as e:
            valid = ", ".join(p.value for p in Participant)
            msg = f"Unknown participant '{name}' (expected one of: {valid})"
            raise AddressError(msg) from e
        backend = resolve_backend(spec)
        backends.setdefault(backend.id, backend)
        by_participant[participant] = backend.id

    return list(backends.values()), by_participant


def _redact(raw: str) -> str:
    hash_idx = raw.find("#")
    if hash_idx == -1:
        return raw
    return raw[:hash_idx] + "#***"
