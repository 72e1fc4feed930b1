"""Per-provider model version whitelist and defaults."""

import logging
from types import MappingProxyType
from typing import Dict, Optional, Tuple

from models import ProviderTag

logger = logging.getLogger(__name__)


DEFAULT_VERSIONS = MappingProxyType({
    ProviderTag.OPENAI: "gpt-4o",
    ProviderTag.GEMINI: "gemini-1.5-pro",
    ProviderTag.MISTRAL: "mistral-large-latest",
    ProviderTag.CLAUDE: "claude-3-sonnet-20240229",
})

SUPPORTED_VERSIONS = MappingProxyType({
    ProviderTag.OPENAI: (
        "gpt-4o",
        "gpt-4o-mini",
        "gpt-4-turbo",
        "gpt-4",
        "gpt-4-vision-preview",
        "gpt-3.5-turbo",
        "gpt-3.5-turbo-16k",
    ),
    ProviderTag.GEMINI: (
        "gemini-2.5-flash-preview-04-17",
        "gemini-2.5-pro-preview-03-25",
        "gemini-2.0-flash",
        "gemini-2.0-flash-lite",
        "gemini-1.5-flash",
        "gemini-1.5-flash-8b",
        "gemini-1.5-pro",
        "gemini-pro",
        "gemini-pro-vision",
    ),
    ProviderTag.MISTRAL: (
        "codestral-latest",
        "mistral-large-latest",
        "mistral-saba-latest",
        "mistral-tiny",
        "mistral-small",
        "mistral-medium",
        "mistral-large",
    ),
    ProviderTag.CLAUDE: (
        "claude-3-opus-20240229",
        "claude-3-sonnet-20240229",
        "claude-3-haiku-20240307",
        "claude-3-opus",
        "claude-3-sonnet",
        "claude-3-haiku",
        "claude-2.1",
        "claude-2.0",
    ),
})


class ModelVersionValidator:
    """Canonicalizes an optional version string; unknown versions fall back to the default."""

    def __init__(self) -> None:
        self._versions: Dict[ProviderTag, Tuple[str, ...]] = dict(SUPPORTED_VERSIONS)
        self._lookup = {tag: frozenset(versions) for tag, versions in self._versions.items()}

    def validate(self, tag: ProviderTag, version: Optional[str]) -> str:
        if not version or not version.strip():
            return self.default_version(tag)

        if version in self._lookup.get(tag, frozenset()):
            return version

        logger.debug(f"Unsupported {tag} version '{version}', using default")
        return self.default_version(tag)

    def default_version(self, tag: ProviderTag) -> str:
        return DEFAULT_VERSIONS[tag]

    def supported_versions(self, tag: ProviderTag) -> Tuple[str, ...]:
        return self._versions.get(tag, ())


model_version_validator = ModelVersionValidator()
