"""Tests for model version canonicalization."""

import pytest

from model_versions import DEFAULT_VERSIONS, ModelVersionValidator, model_version_validator
from models import ProviderTag


@pytest.mark.parametrize("tag", list(ProviderTag))
def test_missing_version_uses_default(tag):
    assert model_version_validator.validate(tag, None) == DEFAULT_VERSIONS[tag]
    assert model_version_validator.validate(tag, "") == DEFAULT_VERSIONS[tag]
    assert model_version_validator.validate(tag, "   ") == DEFAULT_VERSIONS[tag]


def test_supported_version_passes_through():
    validator = ModelVersionValidator()
    assert validator.validate(ProviderTag.OPENAI, "gpt-4o-mini") == "gpt-4o-mini"
    assert validator.validate(ProviderTag.GEMINI, "gemini-2.0-flash") == "gemini-2.0-flash"
    assert validator.validate(ProviderTag.MISTRAL, "mistral-small") == "mistral-small"
    assert validator.validate(ProviderTag.CLAUDE, "claude-3-haiku") == "claude-3-haiku"


def test_unknown_or_foreign_version_falls_back():
    validator = ModelVersionValidator()
    assert validator.validate(ProviderTag.OPENAI, "gpt-99") == "gpt-4o"
    # A valid Claude version is still unknown to OpenAI
    assert validator.validate(ProviderTag.OPENAI, "claude-2.1") == "gpt-4o"


@pytest.mark.parametrize("tag", list(ProviderTag))
@pytest.mark.parametrize("version", [None, "", "nonsense", "gpt-4", "gemini-pro", "mistral-large", "claude-2.0"])
def test_validate_is_idempotent(tag, version):
    once = model_version_validator.validate(tag, version)
    assert model_version_validator.validate(tag, once) == once


def test_default_is_always_supported():
    for tag in ProviderTag:
        assert model_version_validator.default_version(tag) in model_version_validator.supported_versions(tag)
