"""CLI for web-of-trust graph administration."""
import asyncio
import argparse
import logging
import sys
import json
from datetime import timedelta

from .config import settings
from .database import init_db, SessionLocal
from .follow_sources import clear_follows_cache
from .identifiers import InvalidIdentifier
from .models import BuildStatus
from .seeds import SeedRegistry, DuplicateSeeder, SeederNotFound
from .services import get_build_manager, get_graph_store, get_trust_engine


def cmd_init(args):
    """Initialize the database."""
    print("Initializing database...")
    init_db()
    print("Database initialized successfully")


def cmd_seeders_list(args):
    """List seeders."""
    init_db()
    db = SessionLocal()

    try:
        seeders = SeedRegistry(db).list_seeders(args.region)
        if not seeders:
            print("No seeders found")
            return

        print(f"Seeders ({len(seeders)}):")
        print("-" * 70)
        for seeder in seeders:
            label = f" ({seeder.label})" if seeder.label else ""
            print(f"  {seeder.identifier}  [{seeder.region}]{label}")
    finally:
        db.close()


def cmd_seeders_add(args):
    """Register a seeder."""
    init_db()
    db = SessionLocal()

    try:
        seeder = SeedRegistry(db).add_seeder(
            args.identifier, args.region, label=args.label, added_by="cli"
        )
        print(f"Added seeder {seeder.identifier} [{seeder.region}]")
    except (InvalidIdentifier, DuplicateSeeder) as e:
        print(f"Error: {e}")
        return 1
    finally:
        db.close()


def cmd_seeders_remove(args):
    """Remove a seeder."""
    init_db()
    db = SessionLocal()

    try:
        SeedRegistry(db).remove_seeder(args.identifier)
        print(f"Removed seeder {args.identifier}")
    except (InvalidIdentifier, SeederNotFound) as e:
        print(f"Error: {e}")
        return 1
    finally:
        db.close()


async def cmd_build_async(args):
    """Run a full graph build."""
    manager = get_build_manager()
    manager.recover_interrupted()

    print("Starting graph build...")
    build = await manager.rebuild()

    if build.status == BuildStatus.COMPLETED:
        print(f"\nBuild #{build.id} completed!")
        print(f"  Seeders: {build.seeders_count}")
        print(f"  Nodes: {build.nodes_count}")
        return 0

    print(f"\nBuild #{build.id} failed: {build.error_message}")
    return 1


def cmd_build(args):
    """Run a full graph build (sync wrapper)."""
    init_db()
    return asyncio.run(cmd_build_async(args))


def cmd_history(args):
    """List graph builds."""
    init_db()
    builds = get_build_manager().history(limit=args.limit)

    if not builds:
        print("No builds found")
        return

    print(f"Recent builds (limit {args.limit}):")
    print("-" * 70)
    for build in builds:
        duration = ""
        if build.completed_at:
            delta = build.completed_at - build.started_at
            duration = f" ({delta.total_seconds():.1f}s)"

        print(f"  #{build.id}: {build.status}{duration}")
        print(f"    Started: {build.started_at}")
        print(f"    Seeders: {build.seeders_count}  Nodes: {build.nodes_count}")
        if build.error_message:
            print(f"    Error: {build.error_message}")
        print()


def cmd_stats(args):
    """Show graph statistics."""
    init_db()
    stats = get_graph_store().stats()
    state = get_build_manager().status()

    if args.json:
        print(json.dumps({
            "stats": stats,
            "lastBuild": state.last_build.to_dict() if state.last_build else None,
        }, indent=2))
        return

    print("WoT Graph Statistics")
    print("=" * 40)
    print(f"Nodes: {stats['total_nodes']}")
    for depth, count in stats["nodes_by_depth"].items():
        print(f"  Depth {depth}: {count}")

    if state.last_build:
        build = state.last_build
        print(f"\nLast build:")
        print(f"  ID: {build.id}")
        print(f"  Status: {build.status}")
        print(f"  Started: {build.started_at}")
        if build.error_message:
            print(f"  Error: {build.error_message}")


def cmd_score(args):
    """Print trust scores."""
    init_db()
    engine = get_trust_engine()
    for identifier, score in engine.scores(args.identifiers).items():
        print(f"{identifier}  {score:.4f}")


def cmd_serve(args):
    """Run the API server."""
    import uvicorn
    uvicorn.run("wot_graph.api:app", host=args.host, port=args.port, log_level=settings.log_level.lower())


def cmd_cache_clear(args):
    """Clear cached follow lists."""
    init_db()
    older_than = timedelta(hours=settings.follows_cache_hours) if args.expired else None
    deleted = clear_follows_cache(SessionLocal, older_than=older_than)
    print(f"Deleted {deleted} cached follow lists")


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="WoT Graph - web-of-trust graph builder"
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # init
    init_parser = subparsers.add_parser("init", help="Initialize database")
    init_parser.set_defaults(func=cmd_init)

    # seeders
    seeders_parser = subparsers.add_parser("seeders", help="Manage seeders")
    seeders_sub = seeders_parser.add_subparsers(dest="seeders_command")

    list_parser = seeders_sub.add_parser("list", help="List seeders")
    list_parser.add_argument("--region", help="Only seeders in this region")
    list_parser.set_defaults(func=cmd_seeders_list)

    add_parser = seeders_sub.add_parser("add", help="Add a seeder")
    add_parser.add_argument("identifier", help="Hex pubkey or npub")
    add_parser.add_argument("--region", required=True, help="Region tag")
    add_parser.add_argument("--label", help="Human-readable label")
    add_parser.set_defaults(func=cmd_seeders_add)

    remove_parser = seeders_sub.add_parser("remove", help="Remove a seeder")
    remove_parser.add_argument("identifier", help="Hex pubkey or npub")
    remove_parser.set_defaults(func=cmd_seeders_remove)

    # build
    build_parser = subparsers.add_parser("build", help="Rebuild the trust graph")
    build_parser.set_defaults(func=cmd_build)

    # history
    history_parser = subparsers.add_parser("history", help="List graph builds")
    history_parser.add_argument("--limit", type=int, default=10, help="Number of builds")
    history_parser.set_defaults(func=cmd_history)

    # stats
    stats_parser = subparsers.add_parser("stats", help="Show statistics")
    stats_parser.add_argument("--json", action="store_true", help="Output JSON")
    stats_parser.set_defaults(func=cmd_stats)

    # score
    score_parser = subparsers.add_parser("score", help="Show trust scores")
    score_parser.add_argument("identifiers", nargs="+", help="Hex pubkeys or npubs")
    score_parser.set_defaults(func=cmd_score)

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the API server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port")
    serve_parser.set_defaults(func=cmd_serve)

    # cache
    cache_parser = subparsers.add_parser("cache-clear", help="Clear cached follow lists")
    cache_parser.add_argument("--expired", action="store_true", help="Only expired entries")
    cache_parser.set_defaults(func=cmd_cache_clear)

    args = parser.parse_args()

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    return args.func(args) or 0


if __name__ == "__main__":
    sys.exit(main())
