"""Aggregate views of the active snapshot for the admin dashboard."""
from collections import Counter
from typing import Iterable

from .graph_store import GraphSnapshot
from .models import GraphBuild
from .scoring import calculate_score


# (lower bound, label), checked in order
SCORE_BUCKETS = [
    (0.8, "0.8-1.0"),
    (0.6, "0.6-0.8"),
    (0.4, "0.4-0.6"),
    (0.2, "0.2-0.4"),
    (0.1, "0.1-0.2"),
    (0.05, "0.05-0.1"),
    (0.0, "0-0.05"),
]

SEEDER_FOLLOWER_BUCKETS = [
    (5, "5+ seeders"),
    (3, "3-4 seeders"),
    (2, "2 seeders"),
    (1, "1 seeder"),
    (0, "0 seeders"),
]

TOP_USERS_LIMIT = 20


def _bucket(value: float, buckets: list[tuple[float, str]]) -> str:
    for lower, label in buckets:
        if value >= lower:
            return label
    return buckets[-1][1]


def _short(identifier: str) -> str:
    return f"{identifier[:8]}...{identifier[-8:]}"


def node_rows(snapshot: GraphSnapshot) -> list[dict]:
    """One dict per node with its counts and score."""
    rows = []
    for identifier, depth in snapshot.depths.items():
        counts = snapshot.get_follower_counts(identifier)
        rows.append({
            "identifier": identifier,
            "identifierShort": _short(identifier),
            "depth": depth,
            "isSeeder": depth == 0,
            "followedByDepth0": counts.d0,
            "followedByDepth1": counts.d1,
            "followedByDepth2": counts.d2,
            "totalTrustFollowers": counts.total,
            "score": calculate_score(depth == 0, counts),
        })
    return rows


def _rank(rows: list[dict], by: str, limit: int) -> list[dict]:
    return sorted(rows, key=lambda r: (-r[by], r["identifier"]))[:limit]


def top_nodes(snapshot: GraphSnapshot, by: str = "score", limit: int = TOP_USERS_LIMIT) -> list[dict]:
    """Non-seeder nodes ordered by one of the row fields, highest first."""
    return _rank([r for r in node_rows(snapshot) if not r["isSeeder"]], by, limit)


def graph_analytics(snapshot: GraphSnapshot, builds: Iterable[GraphBuild]) -> dict:
    rows = node_rows(snapshot)
    non_seeders = [r for r in rows if not r["isSeeder"]]
    seeder_count = len(rows) - len(non_seeders)

    fields = ["followedByDepth0", "followedByDepth1", "followedByDepth2", "score"]
    averages = {
        f: (sum(r[f] for r in non_seeders) / len(non_seeders)) if non_seeders else 0
        for f in fields
    }
    maximums = {
        f: max((r[f] for r in non_seeders), default=0)
        for f in fields
    }

    by_depth = Counter(r["depth"] for r in rows)
    by_score = Counter(_bucket(r["score"], SCORE_BUCKETS) for r in rows)
    by_seeder_followers = Counter(
        _bucket(r["followedByDepth0"], SEEDER_FOLLOWER_BUCKETS) for r in non_seeders
    )

    return {
        "summary": {
            "totalNodes": len(rows),
            "seederCount": seeder_count,
            "nonSeederCount": len(non_seeders),
            "averages": averages,
            "maximums": maximums,
        },
        "distributions": {
            "byDepth": [
                {"depth": depth, "count": count}
                for depth, count in sorted(by_depth.items())
            ],
            "byScore": [
                {"bucket": label, "count": by_score[label]}
                for _, label in SCORE_BUCKETS if by_score[label]
            ],
            "bySeederFollowers": [
                {"bucket": label, "count": by_seeder_followers[label]}
                for _, label in SEEDER_FOLLOWER_BUCKETS if by_seeder_followers[label]
            ],
        },
        "topUsers": {
            "bySeederFollowers": _rank(non_seeders, "followedByDepth0", TOP_USERS_LIMIT),
            "byTotalFollowers": _rank(non_seeders, "totalTrustFollowers", TOP_USERS_LIMIT),
            "byScore": _rank(non_seeders, "score", TOP_USERS_LIMIT),
        },
        "buildHistory": [b.to_dict() for b in builds],
    }
