"""Process-wide service instances shared by the API and the CLI."""
from functools import lru_cache

from .builds import BuildJobManager
from .database import SessionLocal
from .follow_sources import build_follow_source
from .graph_store import GraphStore
from .scoring import TrustScoreEngine


@lru_cache
def get_graph_store() -> GraphStore:
    return GraphStore(SessionLocal)


@lru_cache
def get_build_manager() -> BuildJobManager:
    return BuildJobManager(
        SessionLocal,
        get_graph_store(),
        source_factory=lambda: build_follow_source(SessionLocal)
    )


@lru_cache
def get_trust_engine() -> TrustScoreEngine:
    return TrustScoreEngine(get_graph_store())


def get_trust_score(identifier: str) -> float:
    """Consumer entry point used by the content spam filter."""
    return get_trust_engine().score(identifier)
