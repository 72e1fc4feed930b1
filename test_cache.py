"""Tests for the response cache: fingerprinting, TTL and size bound."""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from cache import ResponseCache, fingerprint
from conftest import FakeClock
from models import ProviderTag, QueryRequest, QueryResponse, TaskTag


def make_response(text: str = "Hi") -> QueryResponse:
    return QueryResponse(
        response=text,
        model=ProviderTag.OPENAI,
        response_time_ms=42,
        timestamp=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        input_tokens=5,
        output_tokens=2,
        total_tokens=7,
        num_tokens=7,
        request_id="req-1",
    )


def test_fingerprint_is_sha256_hex():
    key = fingerprint(QueryRequest(query="Hello"))
    assert len(key) == 64
    assert key == key.lower()
    int(key, 16)


def test_fingerprint_ignores_request_id_and_model_version():
    a = QueryRequest(query="Hello", model=ProviderTag.CLAUDE, request_id="1", model_version="claude-2.1")
    b = QueryRequest(query="Hello", model=ProviderTag.CLAUDE, request_id="2", model_version="claude-3-opus")
    assert fingerprint(a) == fingerprint(b)


def test_fingerprint_distinguishes_query_model_and_task():
    base = QueryRequest(query="Hello")
    assert fingerprint(base) != fingerprint(QueryRequest(query="Hello!"))
    assert fingerprint(base) != fingerprint(QueryRequest(query="Hello", model=ProviderTag.GEMINI))
    assert fingerprint(base) != fingerprint(QueryRequest(query="Hello", task_type=TaskTag.SUMMARIZATION))
    assert fingerprint(QueryRequest(query="Hello", model=ProviderTag.GEMINI)) != fingerprint(
        QueryRequest(query="Hello", model=ProviderTag.MISTRAL)
    )


def test_hit_returns_stored_fields():
    cache = ResponseCache(clock=FakeClock())
    request = QueryRequest(query="Hello")
    stored = make_response()
    cache.set(request, stored)

    hit = cache.get(QueryRequest(query="Hello", request_id="other"))

    assert hit is not None
    assert hit.response == "Hi"
    assert hit.model is ProviderTag.OPENAI
    assert hit.timestamp == stored.timestamp
    assert (hit.input_tokens, hit.output_tokens, hit.total_tokens) == (5, 2, 7)


def test_returned_copy_does_not_alias_the_entry():
    cache = ResponseCache(clock=FakeClock())
    request = QueryRequest(query="Hello")
    cache.set(request, make_response())

    cache.get(request).cached = True
    assert cache.get(request).cached is False


def test_miss_for_unknown_request():
    cache = ResponseCache(clock=FakeClock())
    assert cache.get(QueryRequest(query="never stored")) is None


def test_entries_expire_without_renewal():
    clock = FakeClock()
    cache = ResponseCache(ttl_seconds=10, clock=clock)
    request = QueryRequest(query="Hello")
    cache.set(request, make_response())

    clock.advance(9)
    assert cache.get(request) is not None  # reading does not extend the TTL
    clock.advance(1)
    assert cache.get(request) is None
    assert len(cache) == 0


def test_set_overwrites():
    cache = ResponseCache(clock=FakeClock())
    request = QueryRequest(query="Hello")
    cache.set(request, make_response("first"))
    cache.set(request, make_response("second"))

    assert cache.get(request).response == "second"
    assert len(cache) == 1


def test_lru_eviction_beyond_max_items():
    cache = ResponseCache(max_items=2, clock=FakeClock())
    a, b, c = (QueryRequest(query=q) for q in ("a", "b", "c"))
    cache.set(a, make_response("a"))
    cache.set(b, make_response("b"))
    cache.get(a)  # a becomes most recently used
    cache.set(c, make_response("c"))

    assert len(cache) == 2
    assert cache.get(b) is None
    assert cache.get(a).response == "a"
    assert cache.get(c).response == "c"


def test_disabled_cache_is_a_no_op():
    cache = ResponseCache(enabled=False, clock=FakeClock())
    request = QueryRequest(query="Hello")
    cache.set(request, make_response())

    assert cache.get(request) is None
    assert len(cache) == 0


def test_stats():
    cache = ResponseCache(clock=FakeClock())
    request = QueryRequest(query="Hello")
    cache.get(request)
    cache.set(request, make_response())
    cache.get(request)
    cache.get(request)

    stats = cache.stats()
    assert stats["cache_hits"] == 2
    assert stats["cache_misses"] == 1
    assert stats["stored_items"] == 1
    assert stats["hit_rate_percent"] == 66.67


def test_parallel_get_and_set():
    cache = ResponseCache(max_items=5)
    requests = [QueryRequest(query=f"q{i}") for i in range(20)]

    def worker(offset):
        mismatches = 0
        for i in range(300):
            write = requests[(i + offset) % 20]
            cache.set(write, make_response(write.query))
            read = requests[(i * 7 + offset) % 20]
            hit = cache.get(read)
            if hit is not None and hit.response != read.query:
                mismatches += 1
        return mismatches

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(worker, range(8)))

    assert results == [0] * 8
    assert len(cache) <= 5
    stats = cache.stats()
    assert stats["total_requests"] == 8 * 300
    assert stats["cache_hits"] + stats["cache_misses"] == 8 * 300
