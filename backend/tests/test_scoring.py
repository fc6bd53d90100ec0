"""Test trust score calculation."""
import pytest

from wot_graph.crawler import CrawlResult, FollowerCounts
from wot_graph.graph_store import GraphStore, GraphSnapshot
from wot_graph.scoring import (
    TrustScoreEngine, calculate_score, DEFAULT_TRUST_SCORE, SEEDER_SCORE
)

from fakes import A, B, C, D, E, F


@pytest.fixture
def engine(session_factory):
    result = CrawlResult(
        nodes_by_depth={0: {A, B}, 1: {C, D}, 2: {E}},
        follower_counts={
            A: FollowerCounts(1, 4, 0),
            B: FollowerCounts(),
            C: FollowerCounts(2, 0, 0),
            D: FollowerCounts(3, 10, 0),
            E: FollowerCounts(0, 1, 0),
        },
    )
    store = GraphStore(session_factory)
    store.commit(GraphSnapshot.from_crawl(1, result))
    return TrustScoreEngine(store)


class TestCalculateScore:
    """Test the scoring formula itself."""

    def test_seeder_short_circuits(self):
        assert calculate_score(True, FollowerCounts(0, 0, 0)) == SEEDER_SCORE
        assert calculate_score(True, FollowerCounts(50, 50, 50)) == 1.0

    def test_formula_exact(self):
        assert calculate_score(False, FollowerCounts(3, 10, 0)) == 0.65

    def test_depth2_weight(self):
        assert calculate_score(False, FollowerCounts(0, 0, 4)) == 0.02
        assert calculate_score(False, FollowerCounts(1, 1, 1)) == 0.175

    def test_no_followers_gets_floor(self):
        assert calculate_score(False, FollowerCounts()) == DEFAULT_TRUST_SCORE == 0.02

    def test_not_clamped(self):
        assert calculate_score(False, FollowerCounts(10, 0, 0)) == 1.5


class TestTrustScoreEngine:
    """Test scoring against a committed snapshot."""

    def test_seeders_score_one(self, engine):
        assert engine.score(A) == 1.0
        assert engine.score(B) == 1.0

    def test_followed_by_two_seeders(self, engine):
        assert engine.score(C) == 0.3

    def test_formula_from_counts(self, engine):
        assert engine.score(D) == 0.65

    def test_single_depth1_follower(self, engine):
        """0.02 here comes from the formula, not the floor."""
        assert engine.score(E) == 0.02

    def test_unknown_gets_floor(self, engine):
        assert engine.score(F) == 0.02

    def test_unparseable_identifier_gets_floor(self, engine):
        assert engine.score("not-a-key") == 0.02

    def test_uppercase_hex_normalized(self, engine):
        assert engine.score(C.upper()) == 0.3

    def test_batch_scores(self, engine):
        assert engine.scores([A, C, F]) == {A: 1.0, C: 0.3, F: 0.02}

    def test_stable_between_calls(self, engine):
        assert [engine.score(D) for _ in range(3)] == [0.65, 0.65, 0.65]

    def test_no_snapshot_yields_floor(self, session_factory):
        engine = TrustScoreEngine(GraphStore(session_factory))
        assert engine.score(A) == 0.02
