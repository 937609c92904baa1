"""
Command-line interface for Context-Engine.

Maintenance commands for a database-backed deployment: inspect
configuration, create tables, sweep expired records, and serve per-user
compliance requests.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

import structlog
from pydantic import ValidationError

from .config import Settings, get_settings
from .engine import ContextEngine
from .errors import ContextEngineError
from .models import init_database

logger = structlog.get_logger()

ENV_TEMPLATE = """# Context-Engine Configuration

# Model used for token counting
CONTEXT_ENGINE_MODEL=claude-sonnet-4-20250514

# Input budget (defaults to the model's context window) and response reserve
# CONTEXT_ENGINE_MAX_TOKENS=200000
CONTEXT_ENGINE_RESERVE_TOKENS=4096

# Optimization
CONTEXT_ENGINE_SUMMARY_RATIO=0.25
CONTEXT_ENGINE_PROACTIVE_COMPACTION=false
CONTEXT_ENGINE_RELEVANCE_PRUNING=false

# Sessions
CONTEXT_ENGINE_SESSION_TIMEOUT_MINUTES=30

# Durable tiers (leave empty to keep everything in-process)
CONTEXT_ENGINE_DATABASE_URL=sqlite+aiosqlite:///./data/context.db
# CONTEXT_ENGINE_SHORT_TERM_BACKEND=database

CONTEXT_ENGINE_LOG_LEVEL=INFO
"""


def configure_logging(level: str = "INFO") -> None:
    """Route structlog through stdlib logging on stderr."""
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level.upper(), force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="context-engine",
        description="Context-Engine - context and memory management for LLM applications",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.add_argument("--check", action="store_true", help="Check configuration validity")

    subparsers.add_parser("init", help="Create .env and the database tables")
    subparsers.add_parser("purge", help="Delete expired records from every tier")

    export_parser = subparsers.add_parser("export", help="Export everything stored about a user")
    export_parser.add_argument("user_id", help="User to export")
    export_parser.add_argument("--output", "-o", type=Path, help="Write JSON here instead of stdout")

    forget_parser = subparsers.add_parser("forget", help="Delete everything stored about a user")
    forget_parser.add_argument("user_id", help="User to delete")

    anonymize_parser = subparsers.add_parser("anonymize", help="Detach a user's profile from their identity")
    anonymize_parser.add_argument("user_id", help="User to anonymize")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"❌ Invalid configuration:\n{e}")
        sys.exit(1)

    configure_logging(settings.log_level)

    if args.command == "config":
        show_config(settings, args.check)
        return
    if args.command == "init":
        asyncio.run(init_storage(settings))
        return

    if not settings.uses_database:
        print("❌ CONTEXT_ENGINE_DATABASE_URL is required for this command")
        sys.exit(1)

    try:
        if args.command == "purge":
            asyncio.run(purge(settings))
        elif args.command == "export":
            asyncio.run(export_user(settings, args.user_id, args.output))
        elif args.command == "forget":
            asyncio.run(forget_user(settings, args.user_id))
        elif args.command == "anonymize":
            asyncio.run(anonymize_user(settings, args.user_id))
    except ContextEngineError as e:
        logger.error("Command failed", command=args.command, kind=e.kind, error=str(e))
        sys.exit(1)


def show_config(settings: Settings, check: bool) -> None:
    """Show current configuration."""
    print("\n=== Context-Engine Configuration ===\n")

    print("Budget:")
    print(f"  Model: {settings.model}")
    print(f"  Max Tokens: {settings.max_tokens or '(model context window)'}")
    print(f"  Reserve Tokens: {settings.reserve_tokens}")

    print("\nOptimization:")
    print(f"  Summary Ratio: {settings.summary_ratio}")
    print(f"  Proactive Compaction: {settings.proactive_compaction} (threshold {settings.optimize_threshold})")
    print(f"  Relevance Pruning: {settings.relevance_pruning}")
    print(f"  Recent Turns: {settings.recent_turns}")

    print("\nMemory:")
    print(f"  Short-term TTL: {settings.short_term_ttl_seconds}s")
    print(f"  Working TTL: {settings.working_ttl_seconds}s")
    print(f"  Session Timeout: {settings.session_timeout_minutes} min")
    print(f"  Database: {settings.database_url or '(in-process only)'}")
    print(f"  Short-term Backend: {settings.short_term_backend}")

    if check:
        print("\n=== Configuration Check ===\n")
        warnings = []

        if not settings.uses_database:
            warnings.append("No database configured - long-term memory is lost on restart")
        if settings.short_term_backend == "database" and not settings.uses_database:
            warnings.append("short_term_backend=database has no effect without a database URL")
        if settings.max_tokens is None:
            warnings.append("max_tokens not set - the model's full context window is used")

        if warnings:
            print("⚠️  Warnings:")
            for w in warnings:
                print(f"   - {w}")
            print("\n✅ Configuration is valid (with warnings)")
        else:
            print("✅ Configuration looks good!")


async def init_storage(settings: Settings) -> None:
    """Create a default .env and the database tables."""
    env_file = Path(".env")
    data_dir = Path("data")

    data_dir.mkdir(exist_ok=True)

    if not env_file.exists():
        env_file.write_text(ENV_TEMPLATE)
        print(f"✅ Created {env_file}")
    else:
        print(f"ℹ️  {env_file} already exists")

    if settings.uses_database:
        session_maker = await init_database(settings.database_url)
        await session_maker.kw["bind"].dispose()
        print(f"✅ Database ready at {settings.database_url}")
    else:
        print("ℹ️  No database configured; set CONTEXT_ENGINE_DATABASE_URL and run init again")


async def purge(settings: Settings) -> None:
    """Sweep expired records."""
    engine = await ContextEngine.from_settings(settings)
    try:
        removed = await engine.purge_expired()
    finally:
        await engine.close()
    for tier, count in removed.items():
        print(f"{tier.value}: {count} expired records removed")


async def export_user(settings: Settings, user_id: str, output: Path | None) -> None:
    """Export a user's data as JSON."""
    engine = await ContextEngine.from_settings(settings)
    try:
        bundle = await engine.export_user(user_id)
    finally:
        await engine.close()
    text = json.dumps(bundle.to_dict(), indent=2, ensure_ascii=False, default=str)

    if output is None:
        print(text)
    else:
        output.write_text(text)
        print(f"✅ Exported user {user_id} to {output}")


async def forget_user(settings: Settings, user_id: str) -> None:
    engine = await ContextEngine.from_settings(settings)
    try:
        await engine.forget_user(user_id)
    finally:
        await engine.close()
    print(f"✅ Deleted all data for user {user_id}")


async def anonymize_user(settings: Settings, user_id: str) -> None:
    engine = await ContextEngine.from_settings(settings)
    try:
        anon_id = await engine.anonymize_user(user_id)
    finally:
        await engine.close()
    if anon_id is None:
        print(f"ℹ️  User {user_id} had no profile; all records deleted")
    else:
        print(f"✅ User {user_id} anonymized as {anon_id}")


if __name__ == "__main__":
    main()
