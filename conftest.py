"""Shared fakes and fixtures for the Relay test suite."""

import pytest

from cache import ResponseCache
from llm_provider import LLMProvider, ProviderRegistry, QueryResult
from models import ProviderTag
from query_service import QueryService
from rate_limiter import RateLimiterService
from router import Router


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider(LLMProvider):
    """
    In-memory provider. `outcomes` is consumed one per call; the last entry
    repeats. Entries are QueryResult instances or exceptions to raise.
    """

    def __init__(self, tag: ProviderTag, *outcomes, available: bool = True):
        self.tag = tag
        self.outcomes = list(outcomes) or [default_result()]
        self.available = available
        self.calls = []
        self.probes = 0

    async def query(self, prompt, model_version=None):
        self.calls.append((prompt, model_version))
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def check_availability(self):
        self.probes += 1
        if isinstance(self.available, BaseException):
            raise self.available
        return self.available


def default_result(text: str = "Hi") -> QueryResult:
    return QueryResult(
        response=text,
        status_code=200,
        input_tokens=5,
        output_tokens=2,
        total_tokens=7,
        num_tokens=7,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def providers():
    return {tag: FakeProvider(tag) for tag in ProviderTag}


@pytest.fixture
def registry(providers):
    return ProviderRegistry(providers.values())


@pytest.fixture
def router(registry):
    """Test-mode router with every provider marked available."""
    router = Router(registry, test_mode=True)
    for tag in ProviderTag:
        router.set_availability(tag, True)
    return router


@pytest.fixture
def rate_limiter():
    return RateLimiterService(requests_per_minute=60, burst=100)


@pytest.fixture
def response_cache():
    return ResponseCache()


@pytest.fixture
def service(rate_limiter, response_cache, router, registry):
    return QueryService(rate_limiter, response_cache, router, registry)


def only_available(router: Router, *tags: ProviderTag) -> None:
    for tag in ProviderTag:
        router.set_availability(tag, tag in tags)
