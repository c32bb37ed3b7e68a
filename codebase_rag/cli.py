"""
Command-line entry point.

    codebase-rag index PATH [--include GLOB ...] [--exclude GLOB ...]
    codebase-rag search QUERY [--strategy S] [--top-k N] [--min-score X]
                              [--language L ...] [--type T ...] [--path P ...]
    codebase-rag stats
    codebase-rag clear

Every command prints a JSON document on stdout. Configuration comes from
--config / $CODEBASE_RAG_CONFIG and CODEBASE_RAG_* environment variables.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from codebase_rag.config import LOG_LEVEL, STRATEGIES, load_config
from codebase_rag.context import RAGContext, build_context
from codebase_rag.errors import CodebaseRAGError
from codebase_rag.rag.models import QueryFilters
from codebase_rag.schemas import IndexResponse, SearchResponse, StatsResponse

LOG = logging.getLogger("codebase_rag.cli")


def _json_payload(model) -> dict:
    return model.model_dump(mode="json")


def _print(model) -> None:
    print(json.dumps(_json_payload(model), indent=2))


def _stats_response(ctx: RAGContext) -> StatsResponse:
    return StatsResponse.from_stats(
        ctx.index.get_stats(),
        vector_store=ctx.config.vector_store,
        index_path=ctx.config.index_path or None,
    )


async def _cmd_index(ctx: RAGContext, args: argparse.Namespace) -> int:
    failures: dict[str, str] = {}
    processed = 0

    def on_file(_event: str, payload: dict) -> None:
        nonlocal processed
        processed += 1
        if not payload["success"]:
            failures[payload["filePath"]] = payload["error"] or "unknown error"

    ctx.events.subscribe("index:file_processed", on_file)
    try:
        await ctx.index.index_codebase(
            args.path,
            include_patterns=args.include or ctx.config.include_patterns,
            exclude_patterns=ctx.config.exclude_patterns + (args.exclude or []),
        )
    finally:
        ctx.events.unsubscribe("index:file_processed", on_file)

    _print(
        IndexResponse(
            rootPath=args.path,
            filesProcessed=processed,
            filesFailed=len(failures),
            failures=failures,
            stats=_stats_response(ctx),
        )
    )
    return 0


async def _cmd_search(ctx: RAGContext, args: argparse.Namespace) -> int:
    filters = QueryFilters(
        languages=args.language or [],
        chunk_types=args.type or [],
        file_paths=args.path or [],
    )
    result = await ctx.orchestrator.retrieve(
        args.query,
        top_k=args.top_k,
        min_score=args.min_score,
        filters=None if filters.is_empty() else filters,
        strategy=args.strategy,
    )
    _print(SearchResponse.from_result(result, include_content=args.content))
    return 0


async def _cmd_stats(ctx: RAGContext, args: argparse.Namespace) -> int:
    _print(_stats_response(ctx))
    return 0


async def _cmd_clear(ctx: RAGContext, args: argparse.Namespace) -> int:
    ctx.index.clear()
    _print(_stats_response(ctx))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="codebase-rag", description="Semantic code search over a source tree")
    parser.add_argument("--config", help="JSON config file (default: $CODEBASE_RAG_CONFIG)")
    parser.add_argument("--index-path", help="Directory holding the persisted index")
    sub = parser.add_subparsers(dest="command", required=True)

    p_index = sub.add_parser("index", help="Index a directory tree")
    p_index.add_argument("path")
    p_index.add_argument("--include", action="append", help="Glob to include (repeatable)")
    p_index.add_argument("--exclude", action="append", help="Extra glob to exclude (repeatable)")
    p_index.set_defaults(handler=_cmd_index)

    p_search = sub.add_parser("search", help="Query the index")
    p_search.add_argument("query")
    p_search.add_argument("--strategy", choices=STRATEGIES)
    p_search.add_argument("--top-k", type=int)
    p_search.add_argument("--min-score", type=float)
    p_search.add_argument("--language", action="append")
    p_search.add_argument("--type", action="append")
    p_search.add_argument("--path", action="append", help="Only files whose path contains this text")
    p_search.add_argument("--content", action="store_true", help="Include chunk content in the output")
    p_search.set_defaults(handler=_cmd_search)

    sub.add_parser("stats", help="Show index statistics").set_defaults(handler=_cmd_stats)
    sub.add_parser("clear", help="Drop the whole index").set_defaults(handler=_cmd_clear)
    return parser


async def _run(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    if args.index_path:
        config.index_path = args.index_path
    ctx = build_context(config)
    try:
        return await args.handler(ctx, args)
    finally:
        ctx.close()


def main(argv: Optional[list[str]] = None) -> None:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )
    args = build_parser().parse_args(argv)
    try:
        code = asyncio.run(_run(args))
    except CodebaseRAGError as exc:
        LOG.error("%s", exc)
        code = 2
    raise SystemExit(code)


if __name__ == "__main__":
    main()
