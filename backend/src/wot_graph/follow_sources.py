"""Follow list sources - where the crawler learns who an account follows.

The crawler only depends on FollowListSource. Concrete sources:
- HttpFollowListSource: one HTTP backend (relay bridge / indexer)
- MultiFollowListSource: queries several backends concurrently and merges
- CachedFollowListSource: database-backed cache in front of another source
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Callable, Iterable, Optional
import httpx
import tenacity
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import Settings, settings as default_settings
from .identifiers import HEX_PUBKEY_RE
from .models import FollowsCacheEntry, utc_now


logger = logging.getLogger(__name__)

FOLLOW_LIST_KIND = 3


class FetchError(Exception):
    """Follow list for one account could not be obtained."""

    def __init__(self, identifier: str, message: str, source: str = None):
        self.identifier = identifier
        self.message = message
        self.source = source
        where = f" from {source}" if source else ""
        super().__init__(f"Fetching follows of {identifier[:8]}{where} failed: {message}")


class RetryableFetchError(FetchError):
    """Transient failure (rate limit, 5xx, transport error) worth retrying."""
    pass


def _log_retry(retry_state: tenacity.RetryCallState) -> None:
    """Log retry attempts for debugging."""
    logger.warning(
        f"Retry attempt {retry_state.attempt_number} after "
        f"{retry_state.outcome.exception() if retry_state.outcome else 'unknown error'}"
    )


def _event_time(event: dict) -> float:
    created_at = event.get("created_at")
    if isinstance(created_at, bool) or not isinstance(created_at, (int, float)):
        return 0
    return created_at


def extract_follows(payload: Any) -> set[str]:
    """Pull followed pubkeys out of a backend response.

    Accepts {"follows": [...]}, a kind-3 event with "p" tags, {"event": {...}},
    or a list of kind-3 events (the most recent wins). Malformed keys are dropped.
    """
    if payload is None:
        return set()

    if isinstance(payload, list):
        events = [e for e in payload if isinstance(e, dict)]
        if not events:
            return set()
        latest = max(events, key=_event_time)
        return extract_follows(latest)

    if not isinstance(payload, dict):
        return set()

    if "follows" in payload:
        candidates = payload.get("follows")
        if not isinstance(candidates, list):
            return set()
    elif "event" in payload:
        return extract_follows(payload.get("event"))
    elif "tags" in payload:
        kind = payload.get("kind", FOLLOW_LIST_KIND)
        tags = payload.get("tags")
        if kind != FOLLOW_LIST_KIND or not isinstance(tags, list):
            return set()
        candidates = [
            tag[1] for tag in tags
            if isinstance(tag, list) and len(tag) >= 2 and tag[0] == "p"
        ]
    else:
        return set()

    return {
        c.lower() for c in candidates
        if isinstance(c, str) and HEX_PUBKEY_RE.match(c)
    }


class FollowListSource(ABC):
    """Capability: given an account, return the set of accounts it follows.

    Implementations raise FetchError when no answer can be produced. An
    account with no published follow list is an empty set, not an error.
    """

    name: str = "source"

    @abstractmethod
    async def fetch_follows(self, identifier: str) -> set[str]:
        ...

    async def close(self):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class HttpFollowListSource(FollowListSource):
    """Follow lists served as JSON at GET {base_url}/follows/{identifier}."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        retries: int = 2,
        client: httpx.AsyncClient = None,
        retry_wait=None
    ):
        self.base_url = base_url.rstrip("/")
        self.name = self.base_url
        self.retries = retries
        self.retry_wait = retry_wait or tenacity.wait_exponential(multiplier=0.5, min=0.5, max=5)
        self.client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Accept": "application/json"},
            timeout=timeout
        )

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()

    async def _request(self, identifier: str) -> set[str]:
        try:
            response = await self.client.get(f"/follows/{identifier}")
        except httpx.HTTPError as e:
            raise RetryableFetchError(identifier, f"{type(e).__name__}: {e}", self.name) from e

        if response.status_code == 404:
            return set()

        if response.status_code == 429 or response.status_code >= 500:
            raise RetryableFetchError(identifier, f"HTTP {response.status_code}", self.name)

        if response.status_code != 200:
            raise FetchError(identifier, f"HTTP {response.status_code}", self.name)

        try:
            payload = response.json()
        except ValueError as e:
            raise FetchError(identifier, "response is not JSON", self.name) from e

        return extract_follows(payload)

    async def fetch_follows(self, identifier: str) -> set[str]:
        retrying = tenacity.AsyncRetrying(
            stop=tenacity.stop_after_attempt(self.retries + 1),
            wait=self.retry_wait,
            retry=tenacity.retry_if_exception_type(RetryableFetchError),
            before_sleep=_log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._request(identifier)


class MultiFollowListSource(FollowListSource):
    """Queries every backend concurrently and returns the union.

    Fails only when all backends fail.
    """

    name = "multi"

    def __init__(self, sources: Iterable[FollowListSource]):
        self.sources = list(sources)

    async def close(self):
        for source in self.sources:
            await source.close()

    async def fetch_follows(self, identifier: str) -> set[str]:
        if not self.sources:
            raise FetchError(identifier, "no follow list sources configured")

        results = await asyncio.gather(
            *(source.fetch_follows(identifier) for source in self.sources),
            return_exceptions=True
        )

        follows: set[str] = set()
        failures = []
        for source, result in zip(self.sources, results):
            if isinstance(result, Exception) and not isinstance(result, FetchError):
                result = FetchError(identifier, f"{type(result).__name__}: {result}", source.name)
            if isinstance(result, FetchError):
                logger.warning(f"Failed to fetch from {source.name}: {result.message}")
                failures.append(result)
            elif isinstance(result, BaseException):
                raise result
            else:
                follows |= result

        if len(failures) == len(self.sources):
            raise FetchError(
                identifier,
                "; ".join(f.message for f in failures),
                self.name
            )
        return follows


class CachedFollowListSource(FollowListSource):
    """Serves follow lists from the follows_cache table while they are fresh."""

    def __init__(
        self,
        inner: FollowListSource,
        session_factory: Callable[[], Session],
        ttl_hours: int = 6
    ):
        self.inner = inner
        self.name = f"cached({inner.name})"
        self.session_factory = session_factory
        self.ttl = timedelta(hours=ttl_hours)

    async def close(self):
        await self.inner.close()

    def _get_cached(self, identifier: str) -> Optional[set[str]]:
        cutoff = utc_now() - self.ttl
        with self.session_factory() as db:
            entry = db.query(FollowsCacheEntry).filter(
                FollowsCacheEntry.identifier == identifier,
                FollowsCacheEntry.fetched_at >= cutoff
            ).first()
            if entry is None:
                return None
            return set(json.loads(entry.follows_json))

    def _store(self, identifier: str, follows: set[str]) -> None:
        with self.session_factory() as db:
            entry = db.get(FollowsCacheEntry, identifier)
            payload = json.dumps(sorted(follows))
            if entry:
                entry.follows_json = payload
                entry.fetched_at = utc_now()
            else:
                db.add(FollowsCacheEntry(identifier=identifier, follows_json=payload))
            db.commit()

    async def fetch_follows(self, identifier: str) -> set[str]:
        try:
            cached = self._get_cached(identifier)
        except (SQLAlchemyError, ValueError) as e:
            logger.warning(f"Follows cache read for {identifier[:8]} failed: {e}")
            cached = None
        if cached is not None:
            return cached

        follows = await self.inner.fetch_follows(identifier)
        try:
            self._store(identifier, follows)
        except SQLAlchemyError as e:
            logger.warning(f"Follows cache write for {identifier[:8]} failed: {e}")
        return follows

    def clear(self) -> int:
        """Drop every cache entry."""
        return clear_follows_cache(self.session_factory)

    def clear_expired(self) -> int:
        """Drop entries older than the cache window."""
        return clear_follows_cache(self.session_factory, older_than=self.ttl)


def clear_follows_cache(
    session_factory: Callable[[], Session],
    older_than: Optional[timedelta] = None
) -> int:
    with session_factory() as db:
        query = db.query(FollowsCacheEntry)
        if older_than is not None:
            query = query.filter(FollowsCacheEntry.fetched_at < utc_now() - older_than)
        deleted = query.delete(synchronize_session=False)
        db.commit()
        return deleted


def build_follow_source(
    session_factory: Callable[[], Session],
    config: Settings = None
) -> FollowListSource:
    """Assemble the configured backends behind the database cache."""
    config = config or default_settings
    backends = [
        HttpFollowListSource(
            url,
            timeout=config.follow_fetch_timeout_seconds,
            retries=config.follow_fetch_retries
        )
        for url in config.follow_source_urls
    ]
    return CachedFollowListSource(
        MultiFollowListSource(backends),
        session_factory,
        ttl_hours=config.follows_cache_hours
    )
