"""FastAPI application for the web-of-trust graph."""
import secrets
from typing import Optional
from fastapi import FastAPI, Depends, HTTPException, Header
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from .analytics import graph_analytics, top_nodes
from .builds import BuildJobManager, BuildAlreadyRunning
from .config import settings
from .database import get_db, init_db
from .graph_store import GraphStore
from .identifiers import InvalidIdentifier, normalize_identifier
from .models import BuildStatus, Seeder
from .scoring import TrustScoreEngine
from .seeds import SeedRegistry, DuplicateSeeder, SeederNotFound
from .services import get_build_manager, get_graph_store, get_trust_engine


app = FastAPI(
    title="WoT Graph API",
    description="Web-of-trust graph builder and trust scoring",
    version="0.1.0"
)


# =============================================================================
# Startup
# =============================================================================

@app.on_event("startup")
async def startup():
    """Create tables, close out builds a previous process left RUNNING, load the snapshot."""
    init_db()
    get_build_manager().recover_interrupted()
    get_graph_store().load()


# =============================================================================
# Auth
# =============================================================================

def require_admin(x_admin_token: Optional[str] = Header(default=None)) -> None:
    """Admin gate. Disabled when no admin token is configured."""
    if not settings.admin_token:
        return
    if not x_admin_token or not secrets.compare_digest(x_admin_token, settings.admin_token):
        raise HTTPException(status_code=401, detail="Admin authentication required")


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


# =============================================================================
# Schemas
# =============================================================================

class SeederCreate(BaseModel):
    """Request to register a seeder. identifier may be hex or npub."""
    identifier: str
    region: str
    label: Optional[str] = None


class SeederUpdate(BaseModel):
    """Partial seeder update."""
    region: Optional[str] = None
    label: Optional[str] = None


def seeder_dict(seeder: Seeder) -> dict:
    return {
        "identifier": seeder.identifier,
        "region": seeder.region,
        "label": seeder.label,
        "addedBy": seeder.added_by,
        "createdAt": seeder.created_at.isoformat() if seeder.created_at else None,
    }


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/")
async def root():
    """Health check."""
    return {
        "service": "wot-graph",
        "status": "healthy",
        "version": "0.1.0"
    }


@app.get("/admin/graph", dependencies=[Depends(require_admin)])
async def get_graph(
    store: GraphStore = Depends(get_graph_store),
    manager: BuildJobManager = Depends(get_build_manager)
):
    """Graph statistics, build history and whether a build is running."""
    stats = store.stats()
    state = manager.status()
    history = manager.history(limit=settings.history_limit)
    return {
        "stats": {
            "totalNodes": stats["total_nodes"],
            "nodesByDepth": stats["nodes_by_depth"],
            "topByDepth0Followers": top_nodes(store.snapshot, by="followedByDepth0", limit=10),
        },
        "lastBuild": state.last_build.to_dict() if state.last_build else None,
        "history": [b.to_dict() for b in history],
        "isRunning": state.is_running,
    }


@app.post("/admin/graph", dependencies=[Depends(require_admin)])
async def rebuild_graph(
    wait: bool = True,
    manager: BuildJobManager = Depends(get_build_manager)
):
    """
    Trigger a graph rebuild.
    With wait=false the build record is returned immediately (202) for polling.
    """
    try:
        if not wait:
            build = await manager.start_build()
            return JSONResponse(status_code=202, content={"build": build.to_dict()})
        build = await manager.rebuild()
    except BuildAlreadyRunning as e:
        return error_response(409, str(e))

    if build.status != BuildStatus.COMPLETED:
        return error_response(500, build.error_message or "Build failed")

    return {
        "success": True,
        "nodesCount": build.nodes_count,
    }


@app.get("/admin/graph/analytics", dependencies=[Depends(require_admin)])
async def get_graph_analytics(
    store: GraphStore = Depends(get_graph_store),
    manager: BuildJobManager = Depends(get_build_manager)
):
    """Distributions and top users of the active snapshot."""
    return graph_analytics(store.snapshot, manager.history(limit=settings.history_limit))


@app.get("/admin/seeders", dependencies=[Depends(require_admin)])
async def list_seeders(
    region: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """List seeders, optionally filtered by region."""
    registry = SeedRegistry(db)
    return {
        "seeders": [seeder_dict(s) for s in registry.list_seeders(region)],
        "regions": registry.regions(),
    }


@app.post("/admin/seeders", dependencies=[Depends(require_admin)])
async def create_seeder(
    request: SeederCreate,
    x_admin_identity: Optional[str] = Header(default=None),
    db: Session = Depends(get_db)
):
    """Register a new seeder."""
    try:
        seeder = SeedRegistry(db).add_seeder(
            request.identifier,
            request.region,
            label=request.label,
            added_by=x_admin_identity
        )
    except (InvalidIdentifier, DuplicateSeeder) as e:
        return error_response(400, str(e))
    return {"success": True, "seeder": seeder_dict(seeder)}


@app.get("/admin/seeders/{identifier}", dependencies=[Depends(require_admin)])
async def get_seeder(identifier: str, db: Session = Depends(get_db)):
    """Get a seeder by hex or npub identifier."""
    try:
        seeder = SeedRegistry(db).get_seeder(identifier)
    except InvalidIdentifier as e:
        return error_response(400, str(e))
    if not seeder:
        return error_response(404, "Seeder not found")
    return {"seeder": seeder_dict(seeder)}


@app.patch("/admin/seeders/{identifier}", dependencies=[Depends(require_admin)])
async def update_seeder(
    identifier: str,
    request: SeederUpdate,
    db: Session = Depends(get_db)
):
    """Update a seeder's region or label."""
    try:
        seeder = SeedRegistry(db).update_seeder(
            identifier, region=request.region, label=request.label
        )
    except InvalidIdentifier as e:
        return error_response(400, str(e))
    except SeederNotFound as e:
        return error_response(404, str(e))
    return {"success": True, "seeder": seeder_dict(seeder)}


@app.delete("/admin/seeders/{identifier}", dependencies=[Depends(require_admin)])
async def delete_seeder(identifier: str, db: Session = Depends(get_db)):
    """Remove a seeder. Existing snapshots are unaffected until the next build."""
    try:
        SeedRegistry(db).remove_seeder(identifier)
    except InvalidIdentifier as e:
        return error_response(400, str(e))
    except SeederNotFound as e:
        return error_response(404, str(e))
    return {"success": True}


# =============================================================================
# Consumer Endpoints
# =============================================================================

@app.get("/trust/{identifier}")
async def get_trust(
    identifier: str,
    engine: TrustScoreEngine = Depends(get_trust_engine)
):
    """Trust score of an account. Unknown accounts get the floor score."""
    try:
        canonical = normalize_identifier(identifier)
    except InvalidIdentifier as e:
        return error_response(400, str(e))
    return {
        "identifier": canonical,
        "score": engine.score(canonical),
        "depth": engine.store.get_depth(canonical),
    }


@app.get("/user/seeder-status")
async def seeder_status(identifier: str, db: Session = Depends(get_db)):
    """Whether an account is a seeder."""
    try:
        seeder = SeedRegistry(db).get_seeder(identifier)
    except InvalidIdentifier as e:
        return error_response(400, str(e))
    return {
        "isSeeder": seeder is not None,
        "seeder": {"label": seeder.label, "region": seeder.region} if seeder else None,
    }
