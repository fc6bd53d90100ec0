"""SQLAlchemy models for web-of-trust graph storage.

Table groups:
- Curated (admin-managed): seeders
- Build history (append-only): graph_builds
- Snapshot (replaced on every successful build): graph_nodes, graph_state
- Cache (recomputable): follows_cache
"""
from datetime import datetime, timezone


def utc_now():
    """Timezone-aware UTC now (replaces deprecated datetime.utcnow)."""
    return datetime.now(timezone.utc)
from typing import Optional
from sqlalchemy import (
    String, Integer, Text, DateTime, ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


class BuildStatus:
    """Allowed values of GraphBuild.status."""
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# =============================================================================
# CURATED LAYER
# =============================================================================

class Seeder(Base):
    """Manually trusted root account of the graph."""
    __tablename__ = "seeders"

    identifier: Mapped[str] = mapped_column(String(64), primary_key=True)  # hex pubkey
    region: Mapped[str] = mapped_column(String(100), index=True)
    label: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    added_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


# =============================================================================
# BUILD HISTORY (append-only)
# =============================================================================

class GraphBuild(Base):
    """One crawl execution. Transitions out of RUNNING exactly once."""
    __tablename__ = "graph_builds"

    id: Mapped[int] = mapped_column(primary_key=True)
    status: Mapped[str] = mapped_column(String(20), default=BuildStatus.RUNNING)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    seeders_count: Mapped[int] = mapped_column(Integer, default=0)
    nodes_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    config_version: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "seedersCount": self.seeders_count,
            "nodesCount": self.nodes_count,
            "errorMessage": self.error_message,
        }


# =============================================================================
# SNAPSHOT LAYER
# =============================================================================

class GraphNode(Base):
    """Account discovered by a build, with its follower-count vector."""
    __tablename__ = "graph_nodes"

    id: Mapped[int] = mapped_column(primary_key=True)
    build_id: Mapped[int] = mapped_column(ForeignKey("graph_builds.id"), index=True)
    identifier: Mapped[str] = mapped_column(String(64))
    depth: Mapped[int] = mapped_column(Integer)  # 0 = seeder, max 2
    followed_by_depth_0: Mapped[int] = mapped_column(Integer, default=0)
    followed_by_depth_1: Mapped[int] = mapped_column(Integer, default=0)
    followed_by_depth_2: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        UniqueConstraint("build_id", "identifier", name="uq_graph_node"),
    )


class GraphState(Base):
    """Single-row pointer to the build whose nodes are currently served."""
    __tablename__ = "graph_state"

    id: Mapped[int] = mapped_column(primary_key=True)
    active_build_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("graph_builds.id"), nullable=True
    )
    activated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


# =============================================================================
# CACHE LAYER
# =============================================================================

class FollowsCacheEntry(Base):
    """Follow list of one account as last fetched from the remote backends."""
    __tablename__ = "follows_cache"

    identifier: Mapped[str] = mapped_column(String(64), primary_key=True)
    follows_json: Mapped[str] = mapped_column(Text)
    fetched_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


# =============================================================================
# INDEXES
# =============================================================================

Index("ix_graph_builds_started", GraphBuild.started_at)
Index("ix_graph_nodes_build_depth", GraphNode.build_id, GraphNode.depth)
Index("ix_follows_cache_fetched", FollowsCacheEntry.fetched_at)
