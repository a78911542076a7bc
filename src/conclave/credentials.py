# Copyright (c) Syntropy Systems
"""Credential lookup for decision backends.

Resolved secrets are handed to backends only; they are never logged or
written to disk.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Protocol

from conclave.errors import ConfigurationError, MissingCredentialError
from conclave.models.experiment import Provider

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from conclave.models.experiment import BackendConfig

DEFAULT_CREDENTIAL_REFS: dict[Provider, str] = {
    Provider.ANTHROPIC: "ANTHROPIC_API_KEY",
    Provider.OPENAI: "OPENAI_API_KEY",
    Provider.OPENROUTER: "OPENROUTER_API_KEY",
}


class CredentialResolver(Protocol):
    """Looks up a secret by reference."""

    def resolve(self, reference: str) -> str:
        """Return the secret or raise MissingCredentialError."""
        ...


class EnvironmentCredentials:
    """Resolve credential references as environment variable names."""

    _environ: Mapping[str, str]

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self._environ = os.environ if environ is None else environ

    def resolve(self, reference: str) -> str:
        value = self._environ.get(reference, "")
        if not value:
            msg = f"Credential '{reference}' not found in environment"
            raise MissingCredentialError(msg)
        return value


def credential_ref(backend: BackendConfig) -> str | None:
    """Reference used to look up the backend's key, if it needs one."""
    if backend.credential_ref:
        return backend.credential_ref
    return DEFAULT_CREDENTIAL_REFS.get(backend.provider)


def resolve_api_key(backend: BackendConfig, resolver: CredentialResolver) -> str | None:
    """Find the API key for a backend.

    An inline key wins. Mock, Ollama and custom endpoints work without one
    unless an explicit credential_ref was configured.
    """
    if backend.api_key is not None:
        return backend.api_key.get_secret_value()
    reference = credential_ref(backend)
    if reference is None:
        return None
    return resolver.resolve(reference)


def validate_credentials(
    backends: Iterable[BackendConfig],
    resolver: CredentialResolver,
) -> None:
    """Fail fast if any backend cannot be given what it needs."""
    missing: list[str] = []
    for backend in backends:
        if backend.provider == Provider.CUSTOM and not backend.base_url:
            msg = f"Backend '{backend.id}' uses the custom provider but has no base URL"
            raise ConfigurationError(msg)
        try:
            _ = resolve_api_key(backend, resolver)
        except MissingCredentialError as e:
            missing.append(f"{backend.id}: {e}")
    if missing:
        msg = "Missing credentials:\n  " + "\n  ".join(missing)
        raise MissingCredentialError(msg)
