"""Graph store - durable, atomically activated graph snapshots.

The active snapshot lives in two places:
- graph_nodes rows of the active build plus the graph_state pointer (durable)
- an immutable GraphSnapshot held in memory (what readers query)

commit() writes the rows and moves the pointer in one transaction, then swaps
the in-memory reference. Readers take the reference once per query and never
see two builds mixed together.
"""
import logging
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Mapping, Optional
from sqlalchemy import insert, delete
from sqlalchemy.orm import Session

from .crawler import CrawlResult, FollowerCounts, MAX_DEPTH
from .models import GraphNode, GraphState, utc_now


logger = logging.getLogger(__name__)

ACTIVE_STATE_ID = 1
INSERT_BATCH_SIZE = 1000
ZERO_COUNTS = FollowerCounts()


@dataclass(frozen=True)
class GraphSnapshot:
    """Read-only view of one completed build."""
    build_id: Optional[int] = None
    depths: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    follower_counts: Mapping[str, FollowerCounts] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @classmethod
    def from_crawl(cls, build_id: int, result: CrawlResult) -> "GraphSnapshot":
        return cls(
            build_id=build_id,
            depths=MappingProxyType(result.depths()),
            follower_counts=MappingProxyType(dict(result.follower_counts)),
        )

    @property
    def total_nodes(self) -> int:
        return len(self.depths)

    def get_depth(self, identifier: str) -> Optional[int]:
        return self.depths.get(identifier)

    def get_follower_counts(self, identifier: str) -> FollowerCounts:
        return self.follower_counts.get(identifier, ZERO_COUNTS)

    def nodes_by_depth(self) -> dict[int, int]:
        counts = {depth: 0 for depth in range(MAX_DEPTH + 1)}
        for depth in self.depths.values():
            counts[depth] += 1
        return counts


class GraphStore:
    """Owns snapshot persistence and the active-snapshot pointer."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory
        self._snapshot: Optional[GraphSnapshot] = None
        self._commit_lock = threading.Lock()

    @property
    def snapshot(self) -> GraphSnapshot:
        """The active snapshot, loaded from the database on first use."""
        snapshot = self._snapshot
        if snapshot is None:
            with self._commit_lock:
                snapshot = self._snapshot
                if snapshot is None:
                    snapshot = self._load()
        return snapshot

    def load(self) -> GraphSnapshot:
        """Restore the active snapshot from the database."""
        with self._commit_lock:
            return self._load()

    def _load(self) -> GraphSnapshot:
        # Caller holds _commit_lock so a concurrent commit cannot be overwritten
        with self.session_factory() as db:
            state = db.get(GraphState, ACTIVE_STATE_ID)
            if state is None or state.active_build_id is None:
                snapshot = GraphSnapshot()
            else:
                rows = db.query(GraphNode).filter(
                    GraphNode.build_id == state.active_build_id
                ).all()
                snapshot = GraphSnapshot(
                    build_id=state.active_build_id,
                    depths=MappingProxyType({r.identifier: r.depth for r in rows}),
                    follower_counts=MappingProxyType({
                        r.identifier: FollowerCounts(
                            r.followed_by_depth_0,
                            r.followed_by_depth_1,
                            r.followed_by_depth_2
                        )
                        for r in rows
                    }),
                )
        self._snapshot = snapshot
        logger.info(f"Loaded snapshot of build {snapshot.build_id} with {snapshot.total_nodes} nodes")
        return snapshot

    def commit(self, snapshot: GraphSnapshot) -> None:
        """Persist and activate a snapshot. All-or-nothing."""
        if snapshot.build_id is None:
            raise ValueError("Snapshot must belong to a build")

        rows = [
            {
                "build_id": snapshot.build_id,
                "identifier": identifier,
                "depth": depth,
                "followed_by_depth_0": snapshot.get_follower_counts(identifier).d0,
                "followed_by_depth_1": snapshot.get_follower_counts(identifier).d1,
                "followed_by_depth_2": snapshot.get_follower_counts(identifier).d2,
            }
            for identifier, depth in sorted(snapshot.depths.items())
        ]

        with self._commit_lock:
            with self.session_factory() as db:
                try:
                    for i in range(0, len(rows), INSERT_BATCH_SIZE):
                        db.execute(insert(GraphNode), rows[i:i + INSERT_BATCH_SIZE])

                    state = db.get(GraphState, ACTIVE_STATE_ID)
                    if state is None:
                        state = GraphState(id=ACTIVE_STATE_ID)
                        db.add(state)
                    state.active_build_id = snapshot.build_id
                    state.activated_at = utc_now()

                    db.execute(
                        delete(GraphNode).where(GraphNode.build_id != snapshot.build_id)
                    )
                    db.commit()
                except Exception:
                    db.rollback()
                    raise

            self._snapshot = snapshot

        logger.info(f"Activated snapshot of build {snapshot.build_id} ({len(rows)} nodes)")

    def get_depth(self, identifier: str) -> Optional[int]:
        """Depth of an account, or None when it is not in the graph."""
        return self.snapshot.get_depth(identifier)

    def get_follower_counts(self, identifier: str) -> FollowerCounts:
        return self.snapshot.get_follower_counts(identifier)

    def get_node(self, identifier: str) -> Optional[dict]:
        snapshot = self.snapshot
        depth = snapshot.get_depth(identifier)
        if depth is None:
            return None
        counts = snapshot.get_follower_counts(identifier)
        return {
            "identifier": identifier,
            "depth": depth,
            "isSeeder": depth == 0,
            "followedByDepth0": counts.d0,
            "followedByDepth1": counts.d1,
            "followedByDepth2": counts.d2,
            "totalTrustFollowers": counts.total,
        }

    def stats(self) -> dict:
        snapshot = self.snapshot
        return {
            "total_nodes": snapshot.total_nodes,
            "nodes_by_depth": snapshot.nodes_by_depth(),
        }
