"""Test the build job lifecycle."""
import asyncio
from datetime import timedelta
import pytest

from wot_graph.builds import BuildJobManager, BuildAlreadyRunning, INTERRUPTED_MESSAGE
from wot_graph.graph_store import GraphStore
from wot_graph.models import GraphBuild, BuildStatus, utc_now
from wot_graph.seeds import SeedRegistry

from fakes import StaticFollowSource, A, B, C, D, E


SCENARIO = {A: {C}, B: {C, D}, C: {E}}


@pytest.fixture
def seeded(session_factory):
    with session_factory() as db:
        registry = SeedRegistry(db)
        registry.add_seeder(A, "eu")
        registry.add_seeder(B, "us")
    return session_factory


def make_manager(session_factory, source) -> BuildJobManager:
    return BuildJobManager(
        session_factory,
        GraphStore(session_factory),
        source_factory=lambda: source
    )


@pytest.mark.asyncio
class TestRebuild:
    """Test complete and failed builds."""

    async def test_successful_build(self, seeded):
        source = StaticFollowSource(SCENARIO)
        manager = make_manager(seeded, source)

        build = await manager.rebuild()

        assert build.status == BuildStatus.COMPLETED
        assert build.seeders_count == 2
        assert build.nodes_count == 5
        assert build.completed_at is not None
        assert manager.store.get_depth(E) == 2
        assert manager.store.snapshot.build_id == build.id
        assert not manager.is_running
        assert source.closed

    async def test_failed_build_keeps_previous_snapshot(self, seeded):
        manager = make_manager(seeded, StaticFollowSource(SCENARIO))
        first = await manager.rebuild()

        manager.source_factory = lambda: StaticFollowSource(SCENARIO, failing={A, B})
        second = await manager.rebuild()

        assert second.status == BuildStatus.FAILED
        assert "any of 2 seeders" in second.error_message
        assert second.nodes_count is None
        assert manager.store.snapshot.build_id == first.id
        assert manager.store.get_depth(C) == 1
        assert not manager.is_running

    async def test_no_seeders_fails(self, session_factory):
        manager = make_manager(session_factory, StaticFollowSource({}))

        build = await manager.rebuild()

        assert build.status == BuildStatus.FAILED
        assert build.error_message == "no seeders configured"
        assert manager.store.snapshot.build_id is None

    async def test_unexpected_error_recorded(self, seeded):
        def broken_factory():
            raise RuntimeError("backend misconfigured")

        manager = make_manager(seeded, None)
        manager.source_factory = broken_factory

        build = await manager.rebuild()

        assert build.status == BuildStatus.FAILED
        assert build.error_message == "backend misconfigured"
        assert not manager.is_running

    async def test_partial_fetch_failures_still_complete(self, seeded):
        manager = make_manager(seeded, StaticFollowSource(SCENARIO, failing={C}))

        build = await manager.rebuild()

        assert build.status == BuildStatus.COMPLETED
        assert manager.store.get_depth(E) is None


@pytest.mark.asyncio
class TestSingleFlight:
    """Test that only one build runs at a time."""

    async def test_second_start_rejected(self, seeded):
        gate = asyncio.Event()
        manager = make_manager(seeded, StaticFollowSource(SCENARIO, gate=gate))

        running = await manager.start_build()
        assert running.status == BuildStatus.RUNNING
        assert manager.is_running
        assert manager.status().is_running

        with pytest.raises(BuildAlreadyRunning):
            await manager.start_build()

        gate.set()
        finished = await manager.wait()

        assert finished.id == running.id
        assert finished.status == BuildStatus.COMPLETED
        assert len(manager.history()) == 1

    async def test_new_build_allowed_after_finish(self, seeded):
        manager = make_manager(seeded, StaticFollowSource(SCENARIO))

        await manager.rebuild()
        await manager.rebuild()

        assert len(manager.history()) == 2

    async def test_readers_see_old_snapshot_while_running(self, seeded):
        manager = make_manager(seeded, StaticFollowSource({A: {D}}))
        first = await manager.rebuild()

        gate = asyncio.Event()
        manager.source_factory = lambda: StaticFollowSource(SCENARIO, gate=gate)
        await manager.start_build()

        assert manager.store.snapshot.build_id == first.id
        assert manager.store.get_depth(C) is None
        assert manager.store.get_depth(D) == 1

        gate.set()
        await manager.wait()

        assert manager.store.get_depth(C) == 1


@pytest.mark.asyncio
class TestHistory:
    """Test status and history queries."""

    async def test_history_most_recent_first(self, seeded):
        manager = make_manager(seeded, StaticFollowSource(SCENARIO))
        first = await manager.rebuild()
        second = await manager.rebuild()

        history = manager.history()

        assert [b.id for b in history] == [second.id, first.id]
        assert manager.history(limit=1)[0].id == second.id
        assert manager.status().last_build.id == second.id
        assert manager.get_build(first.id).status == BuildStatus.COMPLETED

    async def test_to_dict(self, seeded):
        manager = make_manager(seeded, StaticFollowSource(SCENARIO))
        build = await manager.rebuild()

        data = build.to_dict()

        assert data["status"] == "COMPLETED"
        assert data["nodesCount"] == 5
        assert data["seedersCount"] == 2

    async def test_wait_without_build(self, session_factory):
        manager = make_manager(session_factory, StaticFollowSource({}))
        assert await manager.wait() is None


class TestRecovery:
    """Test cleanup of builds left RUNNING by a dead process."""

    def test_marks_running_builds_failed(self, session_factory, db_session):
        long_ago = utc_now() - timedelta(hours=2)
        db_session.add(GraphBuild(status=BuildStatus.RUNNING, started_at=long_ago))
        db_session.add(GraphBuild(status=BuildStatus.COMPLETED, nodes_count=3, started_at=long_ago))
        db_session.commit()

        manager = make_manager(session_factory, StaticFollowSource({}))

        assert manager.recover_interrupted() == 1
        assert manager.recover_interrupted() == 0

        statuses = {b.status: b for b in manager.history()}
        assert statuses[BuildStatus.FAILED].error_message == INTERRUPTED_MESSAGE
        assert statuses[BuildStatus.FAILED].completed_at is not None
        assert BuildStatus.RUNNING not in statuses

    def test_recent_running_build_left_alone(self, session_factory, db_session):
        db_session.add(GraphBuild(status=BuildStatus.RUNNING))
        db_session.commit()

        manager = make_manager(session_factory, StaticFollowSource({}))

        assert manager.recover_interrupted() == 0
        assert manager.history()[0].status == BuildStatus.RUNNING

    def test_status_when_no_builds(self, session_factory):
        manager = make_manager(session_factory, StaticFollowSource({}))

        state = manager.status()

        assert state.is_running is False
        assert state.last_build is None


@pytest.mark.asyncio
class TestTerminalStatus:
    """Test that a closed build record never changes again."""

    async def test_reclaimed_build_stays_failed(self, seeded, db_session):
        gate = asyncio.Event()
        worker = make_manager(seeded, StaticFollowSource(SCENARIO, gate=gate))
        running = await worker.start_build()

        # Another process sharing the database sees the row as stale
        row = db_session.get(GraphBuild, running.id)
        row.started_at = utc_now() - timedelta(hours=2)
        db_session.commit()
        other = make_manager(seeded, StaticFollowSource({}))
        assert other.recover_interrupted() == 1

        gate.set()
        finished = await worker.wait()

        assert finished.status == BuildStatus.FAILED
        assert finished.error_message == INTERRUPTED_MESSAGE
        assert finished.nodes_count is None
        assert worker.store.snapshot.build_id is None
        assert GraphStore(seeded).snapshot.build_id is None
        assert not worker.is_running

    async def test_finish_does_not_overwrite_terminal_row(self, seeded):
        manager = make_manager(seeded, StaticFollowSource(SCENARIO))
        build = await manager.rebuild()

        again = manager._finish_build(build.id, BuildStatus.FAILED, error_message="late")

        assert again.status == BuildStatus.COMPLETED
        assert again.error_message is None
        assert again.nodes_count == 5
