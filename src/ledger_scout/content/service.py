from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, List, Optional, TypeVar

from pydantic import ValidationError

from ledger_scout.cache.store import TtlCacheStore
from ledger_scout.coalescer import RequestCoalescer
from ledger_scout.content.fetcher import ContentFetcher
from ledger_scout.content.models import RecordMetadata, ResolvedContent
from ledger_scout.content.normalize import content_from_response, decode_data_uri, normalize_metadata
from ledger_scout.errors import GatewayError, GatewayExhausted, GatewayTimeout, GatewayUnreachable, MalformedIdentifier
from ledger_scout.gateways import GatewayCandidate, GatewayResolver, parse_identifier
from ledger_scout.scheduler import BackgroundScheduler

logger = logging.getLogger(__name__)

CONTENT_NAMESPACE = "content:"

D = TypeVar("D")


class ContentResolutionService:
    """
    Resolves identifiers to payloads through the cache and the gateway chain.

    Failures never leave this class: a malformed identifier or an exhausted
    gateway chain both resolve to the caller's default. Exhaustion is cached
    with the short failure TTL so the chain is retried soon, but not on every call.
    """

    def __init__(
        self,
        *,
        resolver: GatewayResolver,
        fetcher: ContentFetcher,
        cache: TtlCacheStore,
        coalescer: RequestCoalescer,
        scheduler: BackgroundScheduler,
        success_ttl_seconds: float,
        failure_ttl_seconds: float,
        request_timeout_seconds: float,
        placeholder_image: str = "",
        unavailable_name: str = "Metadata unavailable",
        unavailable_description: str = "",
    ) -> None:
        if failure_ttl_seconds >= success_ttl_seconds:
            raise ValueError("failure_ttl_seconds must be shorter than success_ttl_seconds")
        self._resolver = resolver
        self._fetcher = fetcher
        self._cache = cache
        self._coalescer = coalescer
        self._scheduler = scheduler
        self._success_ttl = success_ttl_seconds
        self._failure_ttl = failure_ttl_seconds
        self._timeout = request_timeout_seconds
        self._placeholder_image = placeholder_image
        self._unavailable_name = unavailable_name
        self._unavailable_description = unavailable_description

    @staticmethod
    def cache_key(identifier: str) -> str:
        return f"{CONTENT_NAMESPACE}{identifier}"

    async def resolve_content(self, identifier: str, default: D) -> ResolvedContent | D:
        identifier = (identifier or "").strip()
        try:
            parsed = parse_identifier(identifier)
        except MalformedIdentifier as e:
            logger.warning("Malformed identifier, using default payload. identifier=%r reason=%s", identifier, e.reason)
            return default

        if parsed.kind == "data":
            try:
                return decode_data_uri(identifier)
            except MalformedIdentifier as e:
                logger.warning("Undecodable data URI, using default payload. reason=%s", e.reason)
                return default

        key = self.cache_key(identifier)
        lookup = self._cache.get_stale(key)
        if lookup is not None:
            if lookup.is_fresh:
                logger.debug("Content cache hit. identifier=%s", identifier)
            else:
                logger.debug("Serving stale content, scheduling refresh. identifier=%s", identifier)
                self._scheduler.schedule(key, partial(self._refresh, identifier, lookup.value))
            return self._from_cached(key, lookup.value, default)

        content = await self._resolve_and_store(identifier, previous=None)
        if content is None:
            return default
        return content

    async def resolve_metadata(self, identifier: Optional[str], *, fallback_name: str) -> RecordMetadata:
        """Resolve a metadata URI into the canonical RecordMetadata shape."""
        if not identifier:
            return self.unavailable_metadata(fallback_name)
        content = await self.resolve_content(identifier, None)
        if content is None:
            return self.unavailable_metadata(fallback_name)
        if content.kind == "json":
            return normalize_metadata(
                content.document,
                fallback_name=fallback_name,
                placeholder_image=self._placeholder_image,
                to_http_url=self._resolver.to_http_url,
            )
        # The identifier points straight at the asset rather than at a metadata document.
        return RecordMetadata(name=fallback_name, image=self._resolver.to_http_url(identifier))

    def unavailable_metadata(self, name: Optional[str] = None) -> RecordMetadata:
        return RecordMetadata(
            name=name or self._unavailable_name,
            description=self._unavailable_description,
            image=self._placeholder_image,
            error=True,
        )

    def invalidate(self, identifier: Optional[str] = None) -> int:
        if identifier is None:
            return self._cache.invalidate_prefix(CONTENT_NAMESPACE)
        return int(self._cache.invalidate(self.cache_key(identifier.strip())))

    async def _refresh(self, identifier: str, previous: Any, cancel_event: asyncio.Event) -> None:
        if cancel_event.is_set():
            return
        await self._resolve_and_store(identifier, previous=previous)

    async def _resolve_and_store(self, identifier: str, *, previous: Any) -> Optional[ResolvedContent]:
        key = self.cache_key(identifier)
        try:
            content = await self._fetch_through_gateways(identifier)
        except GatewayExhausted as e:
            logger.warning(
                "All gateways failed, using fallback. identifier=%s attempts=%d",
                identifier,
                len(e.attempts),
            )
            if self._is_success(previous):
                # Keep serving the last good payload, but retry on the failure schedule.
                self._cache.set(key, previous, self._failure_ttl)
                return ResolvedContent.model_validate(previous["content"])
            self._cache.set(key, {"status": "failed"}, self._failure_ttl)
            return None
        except MalformedIdentifier as e:
            logger.warning("No gateway candidate for identifier. identifier=%s reason=%s", identifier, e.reason)
            return None

        self._cache.set(key, {"status": "ok", "content": content.model_dump(mode="json")}, self._success_ttl)
        return content

    async def _fetch_through_gateways(self, identifier: str) -> ResolvedContent:
        errors: List[GatewayError] = []
        index = 0
        while True:
            candidate = self._resolver.next_candidate(identifier, index)
            if candidate is None:
                raise GatewayExhausted(identifier, errors)
            try:
                return await self._coalescer.run_exclusive(
                    (identifier, candidate.index),
                    partial(self._attempt, candidate),
                )
            except GatewayError as e:
                logger.debug(
                    "Gateway attempt failed. identifier=%s index=%d url=%s error=%s",
                    identifier,
                    candidate.index,
                    candidate.url,
                    e,
                )
                errors.append(e)
            index += 1

    async def _attempt(self, candidate: GatewayCandidate) -> ResolvedContent:
        try:
            return await asyncio.wait_for(self._attempt_once(candidate), timeout=self._timeout)
        except GatewayError:
            raise
        except asyncio.TimeoutError as e:
            raise GatewayTimeout(candidate.url, self._timeout) from e
        except Exception as e:
            logger.exception("Unexpected gateway attempt error. url=%s", candidate.url)
            raise GatewayUnreachable(candidate.url, detail=repr(e)) from e

    async def _attempt_once(self, candidate: GatewayCandidate) -> ResolvedContent:
        if candidate.probe:
            exists = await self._fetcher.probe(candidate.url, timeout=self._timeout)
            if not exists:
                raise GatewayUnreachable(candidate.url, detail="existence probe failed")
        response = await self._fetcher.fetch(candidate.url, timeout=self._timeout)
        try:
            return content_from_response(response)
        except ValueError as e:
            raise GatewayUnreachable(candidate.url, status=response.status, detail=f"undecodable body: {e}") from e

    def _from_cached(self, key: str, value: Any, default: D) -> ResolvedContent | D:
        if not self._is_success(value):
            return default
        try:
            return ResolvedContent.model_validate(value["content"])
        except ValidationError:
            logger.warning("Dropping unreadable cached content. key=%s", key)
            self._cache.invalidate(key)
            return default

    @staticmethod
    def _is_success(value: Any) -> bool:
        return isinstance(value, dict) and value.get("status") == "ok" and isinstance(value.get("content"), dict)
