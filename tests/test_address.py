# Copyright (c) Syntropy Systems
"""Tests for backend address parsing."""

from __future__ import annotations

import pytest

from conclave.address import infer_provider, parse_assignments, resolve, resolve_backend
from conclave.errors import AddressError, ConfigurationError
from conclave.models.experiment import Participant, Provider


class TestResolve:
    """Tests for resolve()."""

    def test_explicit_provider(self) -> None:
        address = resolve("openai:gpt-4o")

        assert address.provider == Provider.OPENAI
        assert address.model == "gpt-4o"
        assert address.base_url is None
        assert address.api_key is None

    def test_inferred_anthropic(self) -> None:
        assert resolve("claude-sonnet-x").provider == Provider.ANTHROPIC

    def test_inferred_openrouter_from_org_shape(self) -> None:
        address = resolve("meta-llama/llama-3.1-70b")

        assert address.provider == Provider.OPENROUTER
        assert address.model == "meta-llama/llama-3.1-70b"

    def test_mock_literal(self) -> None:
        assert resolve("mock").provider == Provider.MOCK

    def test_unknown_model_fails(self) -> None:
        with pytest.raises(AddressError, match="Cannot auto-detect provider"):
            _ = resolve("unknown-model")

    @pytest.mark.parametrize("spec", ["", "   "])
    def test_empty_spec_fails(self, spec: str) -> None:
        with pytest.raises(AddressError):
            _ = resolve(spec)

    def test_trailing_hash_fails(self) -> None:
        with pytest.raises(AddressError, match="trailing '#'"):
            _ = resolve("openai:gpt-4o#")

    def test_trailing_at_fails(self) -> None:
        with pytest.raises(AddressError, match="trailing '@'"):
            _ = resolve("ollama:llama3.2@")

    def test_prefix_without_model_fails(self) -> None:
        with pytest.raises(AddressError, match="no model name"):
            _ = resolve("openai:")

    def test_address_errors_are_configuration_errors(self) -> None:
        with pytest.raises(ConfigurationError):
            _ = resolve("nope")

    def test_whitespace_trimmed(self) -> None:
        assert resolve("  openai:gpt-4o \n") == resolve("openai:gpt-4o")

    def test_base_url_and_key(self) -> None:
        address = resolve("custom:mymodel@https://api.example.com/v1#sk-test")

        assert address.provider == Provider.CUSTOM
        assert address.model == "mymodel"
        assert address.base_url == "https://api.example.com/v1"
        assert address.api_key is not None
        assert address.api_key.get_secret_value() == "sk-test"

    def test_colon_in_model_kept_for_ollama(self) -> None:
        address = resolve("ollama:qwen2.5:7b@http://gpu-box:11434")

        assert address.provider == Provider.OLLAMA
        assert address.model == "qwen2.5:7b"
        assert address.base_url == "http://gpu-box:11434"

    def test_unknown_prefix_is_part_of_model(self) -> None:
        # "gpt" is not a provider alias, so the whole token is the model
        address = resolve("gpt-4o:latest")

        assert address.provider == Provider.OPENAI
        assert address.model == "gpt-4o:latest"

    @pytest.mark.parametrize(
        ("alias", "provider"),
        [
            ("claude", Provider.ANTHROPIC),
            ("chatgpt", Provider.OPENAI),
            ("local", Provider.CUSTOM),
            ("OpenRouter", Provider.OPENROUTER),
        ],
    )
    def test_provider_aliases(self, alias: str, provider: Provider) -> None:
        assert resolve(f"{alias}:some-model").provider == provider

    def test_key_redacted_in_errors(self) -> None:
        with pytest.raises(AddressError) as exc_info:
            _ = resolve("openai:@#sk-very-secret")

        assert "sk-very-secret" not in str(exc_info.value)

    def test_deterministic(self) -> None:
        spec = "openrouter:anthropic/claude-3.5-sonnet@https://proxy#k1"

        first = resolve(spec)
        second = resolve(spec)

        assert first.model_dump_json() == second.model_dump_json()
        assert first.canonical == second.canonical


class TestInferProvider:
    """Tests for provider inference."""

    @pytest.mark.parametrize(
        ("model", "provider"),
        [
            ("claude-3-haiku-20240307", Provider.ANTHROPIC),
            ("claude3-opus", Provider.ANTHROPIC),
            ("gpt-4o-mini", Provider.OPENAI),
            ("chatgpt-4o-latest", Provider.OPENAI),
            ("o1", Provider.OPENAI),
            ("o3-mini", Provider.OPENAI),
            ("mistralai/mistral-large", Provider.OPENROUTER),
        ],
    )
    def test_rules(self, model: str, provider: Provider) -> None:
        assert infer_provider(model) == provider

    def test_o_prefix_needs_boundary(self) -> None:
        with pytest.raises(AddressError):
            _ = infer_provider("o1x")


class TestCanonical:
    """Tests for the deduplication key."""

    def test_canonical_without_key(self) -> None:
        assert resolve("gpt-4o@http://proxy").canonical == "openai:gpt-4o@http://proxy"

    def test_canonical_hides_key(self) -> None:
        canonical = resolve("openai:gpt-4o#sk-secret").canonical

        assert "sk-secret" not in canonical
        assert canonical.startswith("openai:gpt-4o#")

    def test_different_keys_differ(self) -> None:
        assert resolve("gpt-4o#a").canonical != resolve("gpt-4o#b").canonical


class TestResolveBackend:
    """Tests for resolve_backend() and parse_assignments()."""

    def test_id_defaults_to_canonical(self) -> None:
        backend = resolve_backend("openai:gpt-4o")

        assert backend.id == "openai:gpt-4o"

    def test_explicit_id(self) -> None:
        assert resolve_backend("mock", "offline").id == "offline"

    def test_parse_assignments_shares_backends(self) -> None:
        backends, by_participant = parse_assignments(
            {"england": "openai:gpt-4o", "FRANCE": "openai:gpt-4o", "TURKEY": "mock"},
            default="mock",
        )

        assert [b.id for b in backends] == ["mock:mock", "openai:gpt-4o"]
        assert by_participant[Participant.ENGLAND] == by_participant[Participant.FRANCE]
        assert by_participant[Participant.TURKEY] == "mock:mock"

    def test_parse_assignments_unknown_participant(self) -> None:
        with pytest.raises(AddressError, match="Unknown participant"):
            _ = parse_assignments({"NARNIA": "mock"})
