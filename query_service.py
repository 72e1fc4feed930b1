"""
Query Service - Orchestrates admission, validation, caching, routing and fallback.

RESPONSIBILITY:
    Run one completion request through the pipeline:
    rate check → validate → cache → route → call → fallback → cache.
    Return a QueryResponse or raise a RelayError.

    The service layer is transport-agnostic: it raises domain exceptions
    and main.py maps them to HTTP status codes and error bodies.
"""

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

import metrics
from cache import ResponseCache
from exceptions import (
    InternalServiceError,
    ProviderError,
    QueryValidationError,
    RateLimitExceededError,
    RelayError,
)
from llm_provider import ProviderRegistry, QueryResult
from models import ProviderTag, QueryRequest, QueryResponse
from rate_limiter import RateLimiterService
from router import Router

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 32000


class QueryService:
    """
    Service layer for query execution.

    Dependencies are injected so tests can substitute fakes for the
    limiter, cache, router and provider registry.
    """

    def __init__(
        self,
        rate_limiter: RateLimiterService,
        cache: ResponseCache,
        router: Router,
        registry: ProviderRegistry,
    ):
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.router = router
        self.registry = registry

    async def execute_query(self, request: QueryRequest, client_id: str) -> QueryResponse:
        """
        Execute one query.

        Raises:
            RateLimitExceededError: client has no tokens left (nothing else is touched)
            QueryValidationError: empty or oversized query
            ProviderError: upstream failure that fallback could not recover
            InternalServiceError: anything unexpected
        """
        # Step 1: Admission
        if not self.rate_limiter.allow_client(client_id):
            logger.warning(f"Rate limit exceeded for client: {client_id}")
            metrics.record_rate_limited()
            raise RateLimitExceededError()

        # Step 2: Validation (on the trimmed query)
        query = (request.query or "").strip()
        if not query:
            raise QueryValidationError("Query cannot be empty")
        if len(query) > MAX_QUERY_LENGTH:
            raise QueryValidationError(f"Query exceeds maximum length of {MAX_QUERY_LENGTH} characters")

        # Step 3: Normalize
        request = request.model_copy(update={
            "query": query,
            "request_id": request.request_id or str(uuid.uuid4()),
        })
        logger.info(
            f"Processing query request: model={request.model}, taskType={request.task_type}, "
            f"requestId={request.request_id}"
        )

        try:
            return await self._execute(request)
        except ProviderError as e:
            logger.error(f"Error processing query: {e.message} | requestId={request.request_id}")
            e.request_id = request.request_id
            raise
        except RelayError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error processing query: {e}", exc_info=True)
            raise InternalServiceError(f"Internal server error: {e}", request.request_id) from e

    async def _execute(self, request: QueryRequest) -> QueryResponse:
        # Step 4: Cache lookup
        cached = self.cache.get(request)
        if cached is not None:
            metrics.record_cache_lookup("hit")
            logger.info(f"Returning cached response for requestId={request.request_id}")
            cached.cached = True
            return cached
        metrics.record_cache_lookup("miss")

        # Steps 5-6: Route and call
        start = time.perf_counter()
        routed: Optional[ProviderTag] = None
        try:
            tag = await self.router.route(request)
            routed = tag
            result = await self._call(tag, request)
        except ProviderError as e:
            if not e.retryable:
                raise
            # Step 7: One cross-provider fallback
            response = await self._try_fallback(routed, request, e, start)
            if response is None:
                raise
            return response

        response = self._build_response(tag, request, result, start)
        self.cache.set(request, response)
        logger.info(
            f"Query completed: model={tag}, responseTime={response.response_time_ms}ms, "
            f"tokens={response.total_tokens}, requestId={request.request_id}"
        )
        return response

    async def _try_fallback(
        self,
        failed_tag: Optional[ProviderTag],
        request: QueryRequest,
        error: ProviderError,
        start: float,
    ) -> Optional[QueryResponse]:
        """Return a fallback response, or None if no fallback succeeded."""
        try:
            fallback_tag = await self.router.fallback_on_error(failed_tag, request, error)
            metrics.record_fallback(str(failed_tag) if failed_tag else "none", str(fallback_tag))
            result = await self._call(fallback_tag, request)
        except Exception as fallback_error:
            logger.error(f"Fallback failed: {fallback_error}")
            return None

        response = self._build_response(fallback_tag, request, result, start)
        response.original_model = failed_tag
        self.cache.set(request, response)
        logger.info(
            f"Fallback query completed: originalModel={failed_tag}, fallbackModel={fallback_tag}, "
            f"responseTime={response.response_time_ms}ms, requestId={request.request_id}"
        )
        return response

    async def _call(self, tag: ProviderTag, request: QueryRequest) -> QueryResult:
        provider = self.registry.get(tag)
        try:
            result = await provider.query(request.query, request.model_version)
        except ProviderError:
            metrics.record_provider_call(str(tag), "error")
            raise
        metrics.record_provider_call(str(tag), "success")
        metrics.record_tokens(str(tag), result.input_tokens, result.output_tokens)
        return result

    @staticmethod
    def _build_response(
        tag: ProviderTag,
        request: QueryRequest,
        result: QueryResult,
        start: float,
    ) -> QueryResponse:
        return QueryResponse(
            response=result.response,
            model=tag,
            response_time_ms=int((time.perf_counter() - start) * 1000),
            timestamp=datetime.now(timezone.utc),
            cached=False,
            request_id=request.request_id,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            total_tokens=result.total_tokens,
            num_tokens=result.num_tokens,
            num_retries=result.num_retries,
        )
