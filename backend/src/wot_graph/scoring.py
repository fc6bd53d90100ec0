"""Trust score engine.

score = 1.0 for seeders, otherwise
    followed_by_depth_0 * 0.15 + followed_by_depth_1 * 0.02 + followed_by_depth_2 * 0.005
with a floor of 0.02 for accounts no graph node follows. The weights are shared
with the consuming spam filter and must not change.
"""
from typing import Iterable

from .crawler import FollowerCounts
from .graph_store import GraphStore, GraphSnapshot
from .identifiers import normalize_identifier, InvalidIdentifier


SEEDER_SCORE = 1.0
DEFAULT_TRUST_SCORE = 0.02

SCORE_WEIGHTS = {
    "per_depth0_follower": 0.15,  # each seeder following you
    "per_depth1_follower": 0.02,  # each depth-1 account following you
    "per_depth2_follower": 0.005,  # each depth-2 account following you
}

SCORE_PRECISION = 6


def calculate_score(is_seeder: bool, counts: FollowerCounts) -> float:
    """Score from a follower-count vector. Not clamped."""
    if is_seeder:
        return SEEDER_SCORE

    score = (
        counts.d0 * SCORE_WEIGHTS["per_depth0_follower"]
        + counts.d1 * SCORE_WEIGHTS["per_depth1_follower"]
        + counts.d2 * SCORE_WEIGHTS["per_depth2_follower"]
    )
    if score == 0:
        return DEFAULT_TRUST_SCORE
    return round(score, SCORE_PRECISION)


def _canonical(identifier: str) -> str:
    try:
        return normalize_identifier(identifier)
    except InvalidIdentifier:
        # Unparseable ids cannot be graph nodes; they fall through to the floor.
        return identifier.strip().lower() if isinstance(identifier, str) else ""


class TrustScoreEngine:
    """Pure scoring over whatever snapshot the store currently serves."""

    def __init__(self, store: GraphStore):
        self.store = store

    @staticmethod
    def _score_in(snapshot: GraphSnapshot, identifier: str) -> float:
        return calculate_score(
            snapshot.get_depth(identifier) == 0,
            snapshot.get_follower_counts(identifier)
        )

    def score(self, identifier: str) -> float:
        return self._score_in(self.store.snapshot, _canonical(identifier))

    def scores(self, identifiers: Iterable[str]) -> dict[str, float]:
        """Scores for many accounts, all read from the same snapshot."""
        snapshot = self.store.snapshot
        return {
            identifier: self._score_in(snapshot, _canonical(identifier))
            for identifier in identifiers
        }
