"""Graph crawler - bounded breadth-first traversal of the follow graph.

Starting from the seeders (depth 0):
1. Fetch follow lists for every account on the current frontier, concurrently
2. Assign unseen followees depth + 1 (never beyond MAX_DEPTH)
3. Credit every followee with one follower of the current depth tier
4. Move to the next frontier once the whole level has resolved

Depth-2 accounts never add nodes. Their follow lists are optionally fetched to
credit tier-2 followers to accounts already in the graph.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .follow_sources import FollowListSource, FetchError


logger = logging.getLogger(__name__)

MAX_DEPTH = 2


class CrawlFailed(Exception):
    """Crawl could not produce a usable graph."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


@dataclass(frozen=True)
class FollowerCounts:
    """Distinct followers of an account, split by the followers' depth."""
    d0: int = 0
    d1: int = 0
    d2: int = 0

    @property
    def total(self) -> int:
        return self.d0 + self.d1 + self.d2

    def to_dict(self) -> dict:
        return {"d0": self.d0, "d1": self.d1, "d2": self.d2}


@dataclass
class CrawlResult:
    """Output of one crawl: depth buckets and per-node follower counts."""
    nodes_by_depth: dict[int, set[str]] = field(default_factory=dict)
    follower_counts: dict[str, FollowerCounts] = field(default_factory=dict)
    fetch_failures: int = 0

    @property
    def total_nodes(self) -> int:
        return sum(len(ids) for ids in self.nodes_by_depth.values())

    def depths(self) -> dict[str, int]:
        return {
            identifier: depth
            for depth, ids in self.nodes_by_depth.items()
            for identifier in ids
        }


class GraphCrawler:
    """Runs the bounded BFS against a FollowListSource."""

    def __init__(
        self,
        source: FollowListSource,
        concurrency: int = 10,
        fetch_timeout: float = 10.0,
        deadline: float = 1800.0,
        expand_depth2: bool = True
    ):
        self.source = source
        self.concurrency = max(1, concurrency)
        self.fetch_timeout = fetch_timeout
        self.deadline = deadline
        self.expand_depth2 = expand_depth2

    async def crawl(self, seeders: Iterable[str]) -> CrawlResult:
        """Crawl outward from the seeders. Raises CrawlFailed."""
        seeds = list(dict.fromkeys(seeders))
        if not seeds:
            raise CrawlFailed("no seeders configured")

        logger.info(f"Starting crawl with {len(seeds)} seeders")
        try:
            return await asyncio.wait_for(self._crawl(seeds), timeout=self.deadline)
        except asyncio.TimeoutError:
            raise CrawlFailed(f"crawl deadline of {self.deadline:g}s exceeded")

    async def _fetch(self, identifier: str, semaphore: asyncio.Semaphore) -> Optional[set[str]]:
        """Follow list of one account, or None if it failed or timed out.

        Errors never escape: one bad account only loses its outgoing edges.
        """
        async with semaphore:
            try:
                return await asyncio.wait_for(
                    self.source.fetch_follows(identifier),
                    timeout=self.fetch_timeout
                )
            except asyncio.TimeoutError:
                logger.warning(f"Timed out fetching follows of {identifier[:8]} after {self.fetch_timeout:g}s")
            except FetchError as e:
                logger.warning(str(e))
            except Exception as e:
                logger.warning(
                    f"Unexpected error fetching follows of {identifier[:8]}: {type(e).__name__}: {e}"
                )
        return None

    async def _expand(
        self,
        frontier: set[str],
        semaphore: asyncio.Semaphore
    ) -> dict[str, Optional[set[str]]]:
        ordered = sorted(frontier)
        results = await asyncio.gather(*(self._fetch(i, semaphore) for i in ordered))
        return dict(zip(ordered, results))

    async def _crawl(self, seeds: list[str]) -> CrawlResult:
        depths: dict[str, int] = {s: 0 for s in seeds}
        tiers: dict[str, list[int]] = {s: [0, 0, 0] for s in seeds}
        semaphore = asyncio.Semaphore(self.concurrency)
        failures = 0

        frontier = set(seeds)
        for depth in range(MAX_DEPTH + 1):
            if not frontier or (depth == MAX_DEPTH and not self.expand_depth2):
                break

            logger.info(f"Fetching follows for {len(frontier)} depth-{depth} accounts")
            fetched = await self._expand(frontier, semaphore)

            failed = sum(1 for follows in fetched.values() if follows is None)
            failures += failed
            if depth == 0 and failed == len(fetched):
                raise CrawlFailed(f"could not fetch follow lists for any of {failed} seeders")
            if failed:
                logger.warning(f"{failed}/{len(fetched)} depth-{depth} fetches failed")

            next_frontier: set[str] = set()
            for follower, follows in fetched.items():
                for followee in follows or ():
                    if followee == follower:
                        continue
                    if followee not in depths:
                        if depth >= MAX_DEPTH:
                            continue
                        depths[followee] = depth + 1
                        tiers[followee] = [0, 0, 0]
                        next_frontier.add(followee)
                    tiers[followee][depth] += 1

            if depth < MAX_DEPTH:
                logger.info(f"Found {len(next_frontier)} accounts at depth {depth + 1}")
            frontier = next_frontier

        result = CrawlResult(fetch_failures=failures)
        for depth in range(MAX_DEPTH + 1):
            result.nodes_by_depth[depth] = set()
        for identifier, depth in depths.items():
            result.nodes_by_depth[depth].add(identifier)
            result.follower_counts[identifier] = FollowerCounts(*tiers[identifier])

        logger.info(
            f"Crawl finished: {result.total_nodes} nodes, {failures} failed fetches"
        )
        return result
