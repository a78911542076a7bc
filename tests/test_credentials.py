# Copyright (c) Syntropy Systems
"""Tests for credential resolution."""

from __future__ import annotations

import pytest

from conclave.address import resolve_backend
from conclave.credentials import (
    EnvironmentCredentials,
    credential_ref,
    resolve_api_key,
    validate_credentials,
)
from conclave.errors import ConfigurationError, MissingCredentialError
from conclave.models.experiment import BackendConfig


class TestEnvironmentCredentials:
    """Tests for EnvironmentCredentials."""

    def test_resolve(self) -> None:
        assert EnvironmentCredentials({"KEY": "v"}).resolve("KEY") == "v"

    def test_empty_value_is_missing(self) -> None:
        with pytest.raises(MissingCredentialError, match="'KEY'"):
            _ = EnvironmentCredentials({"KEY": ""}).resolve("KEY")

    def test_reads_process_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CONCLAVE_TEST_KEY", "from-env")

        assert EnvironmentCredentials().resolve("CONCLAVE_TEST_KEY") == "from-env"


class TestResolveApiKey:
    """Tests for resolve_api_key() and credential_ref()."""

    def test_inline_key_wins(self) -> None:
        backend = resolve_backend("openai:gpt-4o#sk-inline")

        assert resolve_api_key(backend, EnvironmentCredentials({})) == "sk-inline"

    def test_provider_default_reference(self) -> None:
        backend = resolve_backend("claude-3-haiku")

        assert credential_ref(backend) == "ANTHROPIC_API_KEY"
        assert resolve_api_key(backend, EnvironmentCredentials({"ANTHROPIC_API_KEY": "a"})) == "a"

    def test_explicit_reference(self) -> None:
        backend = BackendConfig.model_validate(
            {"address": "openai:gpt-4o", "credential_ref": "TEAM_OPENAI_KEY"}
        )

        assert credential_ref(backend) == "TEAM_OPENAI_KEY"
        assert resolve_api_key(backend, EnvironmentCredentials({"TEAM_OPENAI_KEY": "t"})) == "t"

    @pytest.mark.parametrize("spec", ["mock", "ollama:llama3.2", "custom:m@http://localhost:8000"])
    def test_keyless_providers(self, spec: str) -> None:
        assert resolve_api_key(resolve_backend(spec), EnvironmentCredentials({})) is None


class TestValidateCredentials:
    """Tests for validate_credentials()."""

    def test_reports_every_missing_backend(self) -> None:
        backends = [
            resolve_backend("openai:gpt-4o"),
            resolve_backend("mock"),
            resolve_backend("claude-3-haiku"),
        ]

        with pytest.raises(MissingCredentialError) as exc_info:
            validate_credentials(backends, EnvironmentCredentials({}))

        message = str(exc_info.value)
        assert "OPENAI_API_KEY" in message
        assert "ANTHROPIC_API_KEY" in message

    def test_all_present(self) -> None:
        backends = [resolve_backend("openai:gpt-4o"), resolve_backend("mock")]

        validate_credentials(backends, EnvironmentCredentials({"OPENAI_API_KEY": "k"}))

    def test_custom_needs_base_url(self) -> None:
        with pytest.raises(ConfigurationError, match="no base URL"):
            validate_credentials([resolve_backend("custom:m")], EnvironmentCredentials({}))
