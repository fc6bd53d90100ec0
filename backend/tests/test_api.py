"""Test the HTTP API."""
import pytest
from fastapi.testclient import TestClient

from wot_graph.api import app
from wot_graph.builds import BuildJobManager
from wot_graph.config import settings
from wot_graph.database import get_db
from wot_graph.graph_store import GraphStore
from wot_graph.scoring import TrustScoreEngine
from wot_graph.services import get_build_manager, get_graph_store, get_trust_engine

from fakes import StaticFollowSource, A, B, C, D, E, F
from test_identifiers import NPUB, HEX


SCENARIO = {A: {C}, B: {C, D}, C: {E}}


@pytest.fixture
def manager(session_factory):
    source = StaticFollowSource(SCENARIO)
    return BuildJobManager(
        session_factory,
        GraphStore(session_factory),
        source_factory=lambda: source
    )


@pytest.fixture
def client(session_factory, manager, monkeypatch):
    """Client wired to the test database. Startup hooks are not run."""
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    monkeypatch.setattr(settings, "admin_token", "")
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_build_manager] = lambda: manager
    app.dependency_overrides[get_graph_store] = lambda: manager.store
    app.dependency_overrides[get_trust_engine] = lambda: TrustScoreEngine(manager.store)
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def built(client):
    """Client with seeders A, B and a completed build."""
    client.post("/admin/seeders", json={"identifier": A, "region": "eu"})
    client.post("/admin/seeders", json={"identifier": B, "region": "us"})
    response = client.post("/admin/graph")
    assert response.status_code == 200
    return client


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestSeederEndpoints:
    def test_create_with_npub(self, client):
        response = client.post(
            "/admin/seeders",
            json={"identifier": NPUB, "region": "eu", "label": "Fiatjaf"},
            headers={"X-Admin-Identity": A}
        )

        assert response.status_code == 200
        seeder = response.json()["seeder"]
        assert seeder["identifier"] == HEX
        assert seeder["addedBy"] == A

    def test_create_duplicate(self, client):
        client.post("/admin/seeders", json={"identifier": A, "region": "eu"})

        response = client.post("/admin/seeders", json={"identifier": A, "region": "us"})

        assert response.status_code == 400
        assert response.json() == {"error": "Seeder already exists"}

    def test_create_invalid_identifier(self, client):
        response = client.post("/admin/seeders", json={"identifier": "bogus", "region": "eu"})

        assert response.status_code == 400
        assert "Must be npub or 64 hex" in response.json()["error"]

    def test_list_by_region(self, client):
        client.post("/admin/seeders", json={"identifier": A, "region": "eu"})
        client.post("/admin/seeders", json={"identifier": B, "region": "us"})

        data = client.get("/admin/seeders", params={"region": "eu"}).json()

        assert [s["identifier"] for s in data["seeders"]] == [A]
        assert data["regions"] == ["eu", "us"]

    def test_get_update_delete(self, client):
        client.post("/admin/seeders", json={"identifier": A, "region": "eu"})

        assert client.get(f"/admin/seeders/{A}").json()["seeder"]["region"] == "eu"

        response = client.patch(f"/admin/seeders/{A}", json={"label": "Alice"})
        assert response.json()["seeder"]["label"] == "Alice"

        assert client.delete(f"/admin/seeders/{A}").json() == {"success": True}
        assert client.get(f"/admin/seeders/{A}").status_code == 404

    def test_unknown_seeder(self, client):
        assert client.patch(f"/admin/seeders/{A}", json={"region": "us"}).status_code == 404
        assert client.delete(f"/admin/seeders/{A}").status_code == 404

    def test_seeder_status(self, client):
        client.post("/admin/seeders", json={"identifier": A, "region": "eu", "label": "Alice"})

        assert client.get("/user/seeder-status", params={"identifier": A}).json() == {
            "isSeeder": True,
            "seeder": {"label": "Alice", "region": "eu"},
        }
        assert client.get("/user/seeder-status", params={"identifier": B}).json()["isSeeder"] is False
        assert client.get("/user/seeder-status", params={"identifier": "x"}).status_code == 400


class TestGraphEndpoints:
    def test_rebuild(self, built):
        data = built.get("/admin/graph").json()

        assert data["stats"]["totalNodes"] == 5
        assert data["stats"]["nodesByDepth"] == {"0": 2, "1": 2, "2": 1}
        assert data["stats"]["topByDepth0Followers"][0]["identifier"] == C
        assert data["lastBuild"]["status"] == "COMPLETED"
        assert len(data["history"]) == 1
        assert data["isRunning"] is False

    def test_rebuild_response(self, client):
        client.post("/admin/seeders", json={"identifier": A, "region": "eu"})

        response = client.post("/admin/graph")

        assert response.json() == {"success": True, "nodesCount": 3}

    def test_rebuild_without_seeders_fails(self, client):
        response = client.post("/admin/graph")

        assert response.status_code == 500
        assert response.json() == {"error": "no seeders configured"}

    def test_rebuild_while_running(self, client, manager):
        manager._claim()

        response = client.post("/admin/graph")

        assert response.status_code == 409
        assert response.json() == {"error": "A build is already in progress"}

    def test_graph_before_any_build(self, client):
        data = client.get("/admin/graph").json()

        assert data["stats"]["totalNodes"] == 0
        assert data["lastBuild"] is None
        assert data["history"] == []

    def test_analytics(self, built):
        data = built.get("/admin/graph/analytics").json()

        assert data["summary"]["seederCount"] == 2
        assert data["topUsers"]["byScore"][0]["identifier"] == C


class TestTrustEndpoint:
    def test_scores(self, built):
        assert built.get(f"/trust/{A}").json() == {"identifier": A, "score": 1.0, "depth": 0}
        assert built.get(f"/trust/{C}").json() == {"identifier": C, "score": 0.3, "depth": 1}
        assert built.get(f"/trust/{E}").json()["score"] == 0.02

    def test_unknown_account(self, built):
        assert built.get(f"/trust/{F}").json() == {"identifier": F, "score": 0.02, "depth": None}

    def test_npub_accepted(self, client):
        assert client.get(f"/trust/{NPUB}").json()["identifier"] == HEX

    def test_invalid_identifier(self, client):
        assert client.get("/trust/nope").status_code == 400


class TestAdminToken:
    def test_missing_token_rejected(self, client, monkeypatch):
        monkeypatch.setattr(settings, "admin_token", "secret")

        assert client.get("/admin/graph").status_code == 401
        assert client.get("/admin/graph", headers={"X-Admin-Token": "wrong"}).status_code == 401

    def test_valid_token(self, client, monkeypatch):
        monkeypatch.setattr(settings, "admin_token", "secret")

        assert client.get("/admin/graph", headers={"X-Admin-Token": "secret"}).status_code == 200

    def test_consumer_endpoints_open(self, client, monkeypatch):
        monkeypatch.setattr(settings, "admin_token", "secret")

        assert client.get(f"/trust/{D}").status_code == 200
