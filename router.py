"""
Router - provider availability tracking and model-selection policy.

RESPONSIBILITY:
    Decide which provider serves a request (explicit model, task-type
    preference, random) and which provider to fall back to after a
    retryable failure.

STATE:
    One availability map, ProviderTag -> bool. Refreshes build a new dict
    and swap it in, so readers only ever take a reference to the current
    map and never see a half-written one. Refreshes are serialized by an
    asyncio.Lock; a set_availability() made while probes are in flight is
    applied on top of the probe results, so direct writes are never lost.

REFRESH:
    Lazy. The caller that first observes a stale map probes every provider
    concurrently; there is no background task. Test mode turns refresh off
    and leaves the map to set_availability().
"""

import asyncio
import logging
import random
import time
from typing import Callable, Dict, List, Optional

from exceptions import ProviderError
from llm_provider import ProviderRegistry
from models import ProviderTag, QueryRequest, StatusResponse, TaskTag

logger = logging.getLogger(__name__)

DEFAULT_AVAILABILITY_TTL = 300

TASK_PREFERENCES = {
    TaskTag.TEXT_GENERATION: ProviderTag.OPENAI,
    TaskTag.SUMMARIZATION: ProviderTag.CLAUDE,
    TaskTag.SENTIMENT_ANALYSIS: ProviderTag.GEMINI,
    TaskTag.QUESTION_ANSWERING: ProviderTag.MISTRAL,
}


class Router:
    """Availability map plus the route / fallback policy."""

    def __init__(
        self,
        registry: ProviderRegistry,
        availability_ttl: int = DEFAULT_AVAILABILITY_TTL,
        test_mode: bool = False,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.availability_ttl = availability_ttl
        self.test_mode = test_mode
        # OS-seeded so replicas do not pick the same fallbacks in lockstep
        self._rng = rng or random.SystemRandom()
        self._clock = clock
        self._availability: Dict[ProviderTag, bool] = {}
        self._last_updated: Optional[float] = None
        self._lock = asyncio.Lock()
        # Direct writes made since the running refresh started
        self._pending_writes: Dict[ProviderTag, bool] = {}

    def set_test_mode(self, enabled: bool) -> None:
        self.test_mode = enabled

    def set_availability(self, tag: ProviderTag, available: bool) -> None:
        updated = dict(self._availability)
        updated[tag] = available
        self._availability = updated
        if self._lock.locked():
            self._pending_writes[tag] = available

    def _is_stale(self) -> bool:
        return self._last_updated is None or self._clock() - self._last_updated >= self.availability_ttl

    async def ensure_fresh(self) -> None:
        """Re-probe providers if the map has never been filled or has outlived its TTL."""
        if self.test_mode or not self._is_stale():
            return

        async with self._lock:
            # Another coroutine may have refreshed while we waited.
            if self.test_mode or not self._is_stale():
                return
            await self._refresh()

    async def _refresh(self) -> None:
        logger.debug("Updating provider availability")
        self._pending_writes = {}
        providers = list(self.registry)
        results = await asyncio.gather(
            *(provider.check_availability() for provider in providers),
            return_exceptions=True,
        )

        updated: Dict[ProviderTag, bool] = {tag: False for tag in ProviderTag}
        for provider, result in zip(providers, results):
            if isinstance(result, BaseException):
                logger.warning(f"Availability probe for {provider.tag} raised {type(result).__name__}")
                continue
            updated[provider.tag] = bool(result)

        updated.update(self._pending_writes)
        self._pending_writes = {}
        self._availability = updated
        self._last_updated = self._clock()
        logger.info(f"Provider availability: {', '.join(f'{t}={v}' for t, v in updated.items())}")

    async def get_availability(self) -> StatusResponse:
        await self.ensure_fresh()
        snapshot = self._availability
        return StatusResponse(**{str(tag): snapshot.get(tag, False) for tag in ProviderTag})

    async def available_providers(self) -> List[ProviderTag]:
        await self.ensure_fresh()
        snapshot = self._availability
        return [tag for tag in ProviderTag if snapshot.get(tag, False)]

    async def is_available(self, tag: ProviderTag) -> bool:
        await self.ensure_fresh()
        return self._availability.get(tag, False)

    async def route(self, request: QueryRequest) -> ProviderTag:
        """
        Pick the provider for a request.

        1. The requested model, if available.
        2. The task type's preferred provider, if available.
        3. A uniformly random available provider.

        Raises ProviderError.unavailable("all") when nothing is available.
        """
        if request.model is not None:
            if await self.is_available(request.model):
                logger.debug(f"Using user-specified model: {request.model}")
                return request.model
            logger.warning(f"Requested model {request.model} not available, trying alternatives")

        if request.task_type is not None:
            preferred = TASK_PREFERENCES.get(request.task_type)
            if preferred is not None and await self.is_available(preferred):
                logger.debug(f"Routed to model {preferred} based on task type {request.task_type}")
                return preferred

        tag = self._pick(await self.available_providers())
        logger.debug(f"Using random available model: {tag}")
        return tag

    async def fallback_on_error(
        self,
        failed_tag: Optional[ProviderTag],
        request: QueryRequest,
        error: Exception,
    ) -> ProviderTag:
        """
        Pick a different provider after `failed_tag` raised `error`.

        Only retryable ProviderErrors are eligible. The result is never
        `failed_tag`; the requested model is preferred when it is a candidate.
        """
        if not isinstance(error, ProviderError) or not error.retryable:
            raise ProviderError.unavailable("all")

        candidates = [tag for tag in await self.available_providers() if tag != failed_tag]
        if not candidates:
            raise ProviderError.unavailable("all")

        if request.model is not None and request.model != failed_tag and request.model in candidates:
            logger.debug(f"Falling back to user-specified model: {request.model}")
            return request.model

        fallback = self._pick(candidates)
        logger.debug(f"Falling back from {failed_tag} to {fallback}")
        return fallback

    def _pick(self, candidates: List[ProviderTag]) -> ProviderTag:
        if not candidates:
            raise ProviderError.unavailable("all")
        return self._rng.choice(candidates)
