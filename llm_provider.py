"""LLM Provider Interface and Implementations - one contract over four upstream wire formats."""

import asyncio
import json
import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import aiohttp

import token_estimator
from config import Settings
from exceptions import ProviderError
from model_versions import ModelVersionValidator, model_version_validator
from models import ProviderTag

logger = logging.getLogger(__name__)

SIMULATION_KEY_PREFIX = "test_"
SIMULATED_RESPONSE = (
    "This is a simulated response for testing purposes. "
    "The actual {name} model is currently unavailable."
)
TEMPERATURE = 0.7
MAX_OUTPUT_TOKENS = 150
CONNECT_TIMEOUT_SEC = 10
READ_TIMEOUT_SEC = 30


@dataclass
class QueryResult:
    """Normalized outcome of one provider call."""
    response: str = ""
    response_time_ms: int = 0
    status_code: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    num_tokens: int = 0  # Deprecated: use total_tokens
    num_retries: int = 0


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff applied at the client boundary."""
    max_attempts: int = 3
    initial_backoff_ms: int = 1000
    max_backoff_ms: int = 30000
    backoff_multiplier: float = 2.0
    jitter: float = 0.1

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_backoff_ms=settings.retry_initial_backoff_ms,
            max_backoff_ms=settings.retry_max_backoff_ms,
            backoff_multiplier=settings.retry_backoff_multiplier,
            jitter=settings.retry_jitter,
        )

    def backoff_seconds(self, retry_number: int) -> float:
        """Delay before the given reattempt (1-based), capped and jittered."""
        delay_ms = self.initial_backoff_ms * (self.backoff_multiplier ** (retry_number - 1))
        delay_ms = min(delay_ms, self.max_backoff_ms)
        if self.jitter > 0:
            delay_ms *= 1 + random.uniform(-self.jitter, self.jitter)
        return max(0.0, delay_ms) / 1000


def create_session() -> aiohttp.ClientSession:
    """Pooled session shared by all providers. Must be called inside a running loop."""
    return aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=None, connect=CONNECT_TIMEOUT_SEC, sock_read=READ_TIMEOUT_SEC)
    )


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _dig(data: Any, *path) -> Any:
    """Walk dict keys / list indexes, returning None as soon as a step is missing."""
    node = data
    for step in path:
        if isinstance(step, int):
            if not isinstance(node, list) or len(node) <= step:
                return None
        elif not isinstance(node, dict) or step not in node:
            return None
        node = node[step]
    return node


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class LLMProvider(ABC):
    """Abstract base class for upstream providers. One instance per ProviderTag."""

    tag: ProviderTag

    @abstractmethod
    async def query(self, prompt: str, model_version: Optional[str] = None) -> QueryResult:
        """Run one completion. Raises ProviderError on failure."""
        pass

    @abstractmethod
    async def check_availability(self) -> bool:
        """Cheap liveness probe. Never raises."""
        pass


class ChatProvider(LLMProvider):
    """
    Shared request/classify/extract algorithm for HTTP JSON providers.

    Subclasses supply the wire details: endpoint, headers, payload shape and
    where the text and usage live in the response body.
    """

    display_name = ""
    API_URL = ""
    MODELS_URL = ""
    SIMULATED_LATENCY_SEC = 0.3

    def __init__(
        self,
        api_key: Optional[str],
        session: Optional[aiohttp.ClientSession] = None,
        retry_policy: Optional[RetryPolicy] = None,
        validator: Optional[ModelVersionValidator] = None,
    ):
        self.api_key = api_key or ""
        self.session = session
        self.retry_policy = retry_policy or RetryPolicy()
        self.validator = validator or model_version_validator
        self._owns_session = False

    @property
    def simulated(self) -> bool:
        return self.api_key.startswith(SIMULATION_KEY_PREFIX)

    async def connect(self) -> None:
        """Create a private session when none was injected."""
        if self.session is None:
            self.session = create_session()
            self._owns_session = True
            logger.info(f"{self.display_name} connection pool created")

    async def disconnect(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None
            self._owns_session = False
            logger.info(f"{self.display_name} connection pool closed")

    async def query(self, prompt: str, model_version: Optional[str] = None) -> QueryResult:
        """Call the provider, reattempting retryable failures per the retry policy."""
        max_attempts = max(1, self.retry_policy.max_attempts)
        retries = 0

        while True:
            try:
                result = await self._query_once(prompt, model_version)
            except ProviderError as e:
                if not e.retryable or retries + 1 >= max_attempts:
                    raise
                retries += 1
                delay = self.retry_policy.backoff_seconds(retries)
                logger.warning(
                    f"{self.display_name} attempt {retries}/{max_attempts} failed "
                    f"({e.status_code}: {e.message}), retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                continue

            result.num_retries = retries
            return result

    async def _query_once(self, prompt: str, model_version: Optional[str]) -> QueryResult:
        if not self.api_key:
            raise ProviderError.api_key_missing(str(self.tag))

        start = time.perf_counter()
        version = self.validator.validate(self.tag, model_version)
        result = QueryResult()

        if self.simulated:
            logger.info(f"Using test {self.display_name} key, returning simulated response")
            await asyncio.sleep(self.SIMULATED_LATENCY_SEC)
            text = SIMULATED_RESPONSE.format(name=self.display_name)
            result.status_code = 200
            result.response = text
            token_estimator.fill(result, prompt, text)
            result.response_time_ms = _elapsed_ms(start)
            return result

        try:
            status, body = await self._send(
                "POST",
                self.endpoint(version),
                headers=self.headers(),
                params=self.query_params(),
                payload=self.build_payload(prompt, version),
            )
            self._raise_for_status(status, body)

            try:
                data = json.loads(body)
            except ValueError as e:
                raise ProviderError.invalid_response(str(self.tag), e) from e

            text = self.extract_text(data)
            if not text:
                raise ProviderError.empty_response(str(self.tag))

            result.response = text
            result.status_code = status
            self.extract_usage(data, result)
            token_estimator.fill(result, prompt, text)

            logger.info(
                f"{self.display_name} call | model={version} | tokens={result.total_tokens} "
                f"| latency={_elapsed_ms(start)}ms"
            )
        except ProviderError as e:
            e.response_time_ms = _elapsed_ms(start)
            raise
        except Exception as e:
            logger.error(f"Error querying {self.display_name}: {type(e).__name__}: {e}", exc_info=True)
            error = ProviderError.invalid_response(str(self.tag), e)
            error.response_time_ms = _elapsed_ms(start)
            raise error from e
        finally:
            result.response_time_ms = _elapsed_ms(start)

        return result

    async def _send(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, str]:
        """One HTTP exchange. Transport failures become retryable ProviderErrors."""
        if self.session is None:
            await self.connect()

        try:
            async with self.session.request(method, url, json=payload, headers=headers, params=params) as response:
                return response.status, await response.text()
        except asyncio.TimeoutError as e:
            logger.error(f"{self.display_name} request timed out")
            raise ProviderError.timeout(str(self.tag)) from e
        except aiohttp.ClientError as e:
            # Exception text can include the request URL, which carries the key for Gemini.
            logger.error(f"{self.display_name} connection error: {type(e).__name__}")
            raise ProviderError.unavailable(str(self.tag)) from e

    def _raise_for_status(self, status: int, body: str) -> None:
        if status == 429:
            raise ProviderError.rate_limited(str(self.tag))
        if status >= 400:
            message = self._upstream_message(body)
            logger.error(f"{self.display_name} returned HTTP {status}: {message}")
            raise ProviderError.from_upstream(str(self.tag), status, message)

    @staticmethod
    def _upstream_message(body: str) -> str:
        try:
            message = _dig(json.loads(body), "error", "message")
        except ValueError:
            return "API error"
        return message if isinstance(message, str) and message else "API error"

    async def check_availability(self) -> bool:
        if not self.api_key:
            return False

        if self.simulated:
            logger.info(f"Using test {self.display_name} key, assuming service is available")
            return True

        try:
            status, _ = await self._send(
                "GET",
                self.MODELS_URL,
                headers=self.availability_headers(),
                params=self.query_params(),
            )
        except ProviderError as e:
            logger.error(f"Error checking {self.display_name} availability: {e.message}")
            return False

        available = 200 <= status < 300
        if not available:
            logger.warning(f"{self.display_name} availability probe returned HTTP {status}")
        return available

    # Wire details

    def endpoint(self, version: str) -> str:
        return self.API_URL

    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def availability_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def query_params(self) -> Optional[Dict[str, str]]:
        return None

    @abstractmethod
    def build_payload(self, prompt: str, version: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    def extract_text(self, data: Any) -> Optional[str]:
        pass

    @abstractmethod
    def extract_usage(self, data: Any, result: QueryResult) -> None:
        pass


class OpenAIProvider(ChatProvider):
    """OpenAI chat completions."""

    tag = ProviderTag.OPENAI
    display_name = "OpenAI"
    API_URL = "https://api.openai.com/v1/chat/completions"
    MODELS_URL = "https://api.openai.com/v1/models"

    def build_payload(self, prompt: str, version: str) -> Dict[str, Any]:
        return {
            "model": version,
            "temperature": TEMPERATURE,
            "max_tokens": MAX_OUTPUT_TOKENS,
            "messages": [{"role": "user", "content": prompt}],
        }

    def extract_text(self, data: Any) -> Optional[str]:
        return _dig(data, "choices", 0, "message", "content")

    def extract_usage(self, data: Any, result: QueryResult) -> None:
        usage = _dig(data, "usage") or {}
        result.input_tokens = _as_int(usage.get("prompt_tokens"))
        result.output_tokens = _as_int(usage.get("completion_tokens"))
        result.total_tokens = _as_int(usage.get("total_tokens"))
        result.num_tokens = result.total_tokens


class MistralProvider(OpenAIProvider):
    """Mistral speaks the OpenAI chat-completions dialect."""

    tag = ProviderTag.MISTRAL
    display_name = "Mistral"
    API_URL = "https://api.mistral.ai/v1/chat/completions"
    MODELS_URL = "https://api.mistral.ai/v1/models"


class ClaudeProvider(ChatProvider):
    """Anthropic messages API."""

    tag = ProviderTag.CLAUDE
    display_name = "Claude"
    API_URL = "https://api.anthropic.com/v1/messages"
    MODELS_URL = "https://api.anthropic.com/v1/models"
    ANTHROPIC_VERSION = "2023-06-01"

    def headers(self) -> Dict[str, str]:
        headers = super().headers()
        headers["anthropic-version"] = self.ANTHROPIC_VERSION
        return headers

    def availability_headers(self) -> Dict[str, str]:
        headers = super().availability_headers()
        headers["anthropic-version"] = self.ANTHROPIC_VERSION
        return headers

    def build_payload(self, prompt: str, version: str) -> Dict[str, Any]:
        return {
            "model": version,
            "max_tokens": MAX_OUTPUT_TOKENS,
            "temperature": TEMPERATURE,
            "messages": [{"role": "user", "content": prompt}],
        }

    def extract_text(self, data: Any) -> Optional[str]:
        return _dig(data, "content", 0, "text")

    def extract_usage(self, data: Any, result: QueryResult) -> None:
        usage = _dig(data, "usage") or {}
        result.input_tokens = _as_int(usage.get("input_tokens"))
        result.output_tokens = _as_int(usage.get("output_tokens"))
        result.total_tokens = result.input_tokens + result.output_tokens
        result.num_tokens = result.total_tokens


class GeminiProvider(ChatProvider):
    """Google Generative Language API. Authenticates with a `key` query parameter."""

    tag = ProviderTag.GEMINI
    display_name = "Gemini"
    API_URL = "https://generativelanguage.googleapis.com/v1/models/"
    MODELS_URL = "https://generativelanguage.googleapis.com/v1/models/"

    def endpoint(self, version: str) -> str:
        return f"{self.API_URL}{version}:generateContent"

    def headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def availability_headers(self) -> Dict[str, str]:
        return {}

    def query_params(self) -> Optional[Dict[str, str]]:
        return {"key": self.api_key}

    def build_payload(self, prompt: str, version: str) -> Dict[str, Any]:
        return {
            "contents": {"parts": [{"text": prompt}]},
            "temperature": TEMPERATURE,
            "maxOutputTokens": MAX_OUTPUT_TOKENS,
        }

    def extract_text(self, data: Any) -> Optional[str]:
        return _dig(data, "candidates", 0, "content", "parts", 0, "text")

    def extract_usage(self, data: Any, result: QueryResult) -> None:
        usage = _dig(data, "usageMetadata")
        if not isinstance(usage, dict):
            # No usage block: token_estimator.fill() takes over.
            return
        result.input_tokens = _as_int(usage.get("promptTokenCount"))
        result.output_tokens = _as_int(usage.get("candidatesTokenCount"))
        result.total_tokens = result.input_tokens + result.output_tokens
        result.num_tokens = result.total_tokens


PROVIDER_CLASSES = (OpenAIProvider, GeminiProvider, MistralProvider, ClaudeProvider)


class ProviderRegistry:
    """Fixed ProviderTag -> client mapping, built once at startup."""

    def __init__(self, providers: Iterable[LLMProvider], session: Optional[aiohttp.ClientSession] = None):
        self._providers: Dict[ProviderTag, LLMProvider] = {p.tag: p for p in providers}
        self.session = session

    def get(self, tag: ProviderTag) -> LLMProvider:
        provider = self._providers.get(tag)
        if provider is None:
            raise ProviderError.unavailable(str(tag))
        return provider

    def tags(self) -> List[ProviderTag]:
        return list(self._providers)

    def __iter__(self) -> Iterator[LLMProvider]:
        return iter(self._providers.values())

    def __len__(self) -> int:
        return len(self._providers)

    async def close(self) -> None:
        """Close the shared session, if this registry created one."""
        if self.session is not None and not self.session.closed:
            await self.session.close()
            logger.info("Provider connection pool closed")


async def initialize_providers(settings: Settings) -> ProviderRegistry:
    """Create all four providers over one pooled session."""
    session = create_session()
    policy = RetryPolicy.from_settings(settings)

    providers = []
    for provider_cls in PROVIDER_CLASSES:
        provider = provider_cls(settings.api_key_for(provider_cls.tag), session=session, retry_policy=policy)
        if not provider.api_key:
            logger.warning(f"{provider.display_name} API key not set; provider will report unavailable")
        elif provider.simulated:
            logger.info(f"{provider.display_name} running in simulation mode")
        providers.append(provider)

    logger.info(f"Provider registry initialized with {len(providers)} providers")
    return ProviderRegistry(providers, session=session)


async def cleanup_providers(registry: Optional[ProviderRegistry]) -> None:
    if registry is not None:
        await registry.close()
