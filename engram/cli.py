"""Command-line entry point.

Usage::

    engram ask "What did we decide about the launch?" --recording 42
    engram ask "Summarize" --recording 42 --backend hosted_gemini
    engram search "budget" --limit 10
    engram reindex
    engram status
    engram serve --port 8000
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import uvicorn

from engram.config import get_settings
from engram.errors import EngramError
from engram.ingestion.models import format_time
from engram.pipeline_config import BackendKind
from engram.service.factory import build_manager, hosted_config_from_settings
from engram.service.lifecycle import ResourceLifecycleManager


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="engram", description="Ask questions about your meeting transcripts.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    commands = parser.add_subparsers(dest="command", required=True)

    ask = commands.add_parser("ask", help="Answer a question, streaming the reply.")
    ask.add_argument("query")
    ask.add_argument("--recording", type=int, default=None, help="Scope the question to one recording.")
    ask.add_argument("--session", default="cli", help="Chat session id (default: cli).")
    ask.add_argument(
        "--backend",
        choices=[kind.value for kind in BackendKind],
        default=BackendKind.LOCAL.value,
        help="Generation backend (default: local).",
    )
    ask.add_argument("--model", default=None, help="Model id for the selected backend.")

    search = commands.add_parser("search", help="Semantic search over indexed segments.")
    search.add_argument("query")
    search.add_argument("--limit", type=int, default=5)
    search.add_argument("--recording", type=int, default=None)

    commands.add_parser("reindex", help="Clear and rebuild the vector index.")
    commands.add_parser("status", help="Show backend status and index counts.")

    serve = commands.add_parser("serve", help="Run the HTTP API.")
    serve.add_argument("--host", default=None, help="Bind address (default: API_HOST setting).")
    serve.add_argument("--port", type=int, default=None, help="Port (default: API_PORT setting).")
    return parser


async def _select_backend(manager: ResourceLifecycleManager, kind: BackendKind, model: str | None) -> None:
    settings = get_settings()
    if kind is BackendKind.LOCAL:
        await manager.select_local_backend(model or settings.local_model_id)
    else:
        await manager.select_hosted_backend(hosted_config_from_settings(kind, settings, model=model))


async def _run(args: argparse.Namespace) -> None:
    manager = build_manager()
    try:
        if args.command == "ask":
            await _select_backend(manager, BackendKind(args.backend), args.model)
            async for piece in manager.chat(args.query, args.recording, args.session):
                print(piece, end="", flush=True)
            print()
        elif args.command == "search":
            results = await manager.search(args.query, limit=args.limit, recording_id=args.recording)
            if not results:
                print("No matches.")
            for r in results:
                stamp = format_time(r.segment.start_time)
                print(f"{r.score:.3f}  {r.recording.title} [{stamp}] {r.segment.speaker}: {r.segment.text}")
        elif args.command == "reindex":
            count = await manager.rebuild_index()
            print(f"Indexed {count} recording(s).")
        elif args.command == "status":
            await manager.ensure_initialized()
            total = await manager.total_indexable_recordings()
            print(f"Backend: {manager.status.description}")
            print(f"Indexed recordings: {manager.indexed_recordings_count}/{total}")
    finally:
        await manager.shutdown()


def main(argv: list[str] | None = None) -> int:
    args = _build_arg_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO if args.command == "serve" else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.command == "serve":
        settings = get_settings()
        uvicorn.run("engram.api.main:app", host=args.host or settings.api_host, port=args.port or settings.api_port)
        return 0
    try:
        asyncio.run(_run(args))
    except EngramError as exc:
        print(f"ERROR: {exc.user_message}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
