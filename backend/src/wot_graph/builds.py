"""Build job manager - single-flight graph rebuilds with durable history.

State machine: IDLE -> RUNNING -> (COMPLETED | FAILED) -> IDLE.

Only one build runs per manager at a time. The running flag is claimed with a
lock-protected check-and-set; everything else reads the append-only
graph_builds table or the store's active snapshot without locking.
"""
import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional
from sqlalchemy.orm import Session

from .config import Settings, settings as default_settings
from .crawler import GraphCrawler, CrawlFailed
from .follow_sources import FollowListSource
from .graph_store import GraphStore, GraphSnapshot
from .models import GraphBuild, BuildStatus, utc_now
from .seeds import SeedRegistry


logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Build interrupted before completion (process restarted)"


class BuildAlreadyRunning(Exception):
    """A build is in progress; retry once it finishes."""

    def __init__(self):
        super().__init__("A build is already in progress")


@dataclass
class BuildState:
    """Answer to "is a build running, and what happened last"."""
    is_running: bool
    last_build: Optional[GraphBuild]


class BuildJobManager:
    """Owns the GraphBuild lifecycle and tells the store when to activate."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        store: GraphStore,
        source_factory: Callable[[], FollowListSource],
        config: Settings = None
    ):
        self.session_factory = session_factory
        self.store = store
        self.source_factory = source_factory
        self.config = config or default_settings
        self._lock = threading.Lock()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    def status(self) -> BuildState:
        latest = self.history(limit=1)
        return BuildState(is_running=self._running, last_build=latest[0] if latest else None)

    def history(self, limit: int = 10) -> list[GraphBuild]:
        """Builds, most recent first."""
        with self.session_factory() as db:
            return db.query(GraphBuild).order_by(
                GraphBuild.started_at.desc(), GraphBuild.id.desc()
            ).limit(limit).all()

    def get_build(self, build_id: int) -> Optional[GraphBuild]:
        with self.session_factory() as db:
            return db.get(GraphBuild, build_id)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _claim(self) -> None:
        with self._lock:
            if self._running:
                raise BuildAlreadyRunning()
            self._running = True

    def _release(self) -> None:
        with self._lock:
            self._running = False

    def _create_build(self) -> tuple[GraphBuild, list[str]]:
        with self.session_factory() as db:
            seeders = [s.identifier for s in SeedRegistry(db).list_seeders()]
            build = GraphBuild(
                status=BuildStatus.RUNNING,
                started_at=utc_now(),
                seeders_count=len(seeders),
                config_version=self.config.config_version
            )
            db.add(build)
            db.commit()
            db.refresh(build)
            return build, seeders

    def _finish_build(
        self,
        build_id: int,
        status: str,
        nodes_count: int = None,
        error_message: str = None
    ) -> GraphBuild:
        """Move a RUNNING build to its terminal status. Terminal rows are left as they are."""
        with self.session_factory() as db:
            updated = db.query(GraphBuild).filter(
                GraphBuild.id == build_id,
                GraphBuild.status == BuildStatus.RUNNING
            ).update({
                GraphBuild.status: status,
                GraphBuild.completed_at: utc_now(),
                GraphBuild.nodes_count: nodes_count,
                GraphBuild.error_message: error_message,
            }, synchronize_session=False)
            db.commit()
            if not updated:
                logger.warning(f"Build {build_id} was already closed; not marking it {status}")
            return db.get(GraphBuild, build_id)

    def _still_running(self, build_id: int) -> bool:
        build = self.get_build(build_id)
        return build is not None and build.status == BuildStatus.RUNNING

    async def start_build(self) -> GraphBuild:
        """Claim the running flag, record a RUNNING build and start crawling.

        Raises BuildAlreadyRunning if another build holds the flag.
        """
        self._claim()
        try:
            build, seeders = self._create_build()
        except Exception:
            self._release()
            raise

        logger.info(f"Starting graph build {build.id} with {len(seeders)} seeders")
        self._task = asyncio.create_task(self._run(build.id, seeders))
        return build

    async def _run(self, build_id: int, seeders: list[str]) -> GraphBuild:
        try:
            async with self.source_factory() as source:
                crawler = GraphCrawler(
                    source,
                    concurrency=self.config.crawl_concurrency,
                    fetch_timeout=self.config.follow_fetch_timeout_seconds,
                    deadline=self.config.crawl_deadline_seconds,
                    expand_depth2=self.config.crawl_depth2_followers
                )
                result = await crawler.crawl(seeders)

            if not self._still_running(build_id):
                logger.warning(f"Build {build_id} was closed by another process; discarding its snapshot")
                return self.get_build(build_id)

            self.store.commit(GraphSnapshot.from_crawl(build_id, result))
            build = self._finish_build(
                build_id, BuildStatus.COMPLETED, nodes_count=result.total_nodes
            )
            logger.info(f"Build {build_id} completed with {result.total_nodes} nodes")
            return build
        except CrawlFailed as e:
            logger.error(f"Build {build_id} failed: {e.reason}")
            return self._finish_build(build_id, BuildStatus.FAILED, error_message=e.reason)
        except Exception as e:
            logger.exception(f"Build {build_id} failed")
            return self._finish_build(
                build_id, BuildStatus.FAILED, error_message=str(e) or type(e).__name__
            )
        finally:
            self._release()

    async def wait(self) -> Optional[GraphBuild]:
        """Wait for the most recently started build and return its final record."""
        if self._task is None:
            return None
        return await self._task

    async def rebuild(self) -> GraphBuild:
        """Run a full build and return its terminal record."""
        await self.start_build()
        return await self.wait()

    def recover_interrupted(self) -> int:
        """Mark RUNNING builds left by a dead process as FAILED.

        Only builds started longer ago than the crawl deadline are reclaimed;
        younger ones may still belong to a live process.
        """
        if self._running:
            return 0
        cutoff = utc_now() - timedelta(seconds=self.config.crawl_deadline_seconds)
        with self.session_factory() as db:
            stale = db.query(GraphBuild).filter(
                GraphBuild.status == BuildStatus.RUNNING,
                GraphBuild.started_at < cutoff
            ).all()
            for build in stale:
                build.status = BuildStatus.FAILED
                build.completed_at = utc_now()
                build.error_message = INTERRUPTED_MESSAGE
            db.commit()
        if stale:
            logger.warning(f"Marked {len(stale)} interrupted builds as failed")
        return len(stale)
