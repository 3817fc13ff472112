"""
Command line interface.

Usage:
    fieldrank index docs/ --output index.json
    fieldrank search index.json "quick fox" --top-k 10
    fieldrank search index.json "quick fox" --json --k1 0.9 --b 0.4
    fieldrank evaluate index.json judgments.json --grid
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Mapping, Sequence

from fieldrank.engine import SearchEngine
from fieldrank.errors import FieldRankError
from fieldrank.evaluation import evaluate, grid_search
from fieldrank.logging_config import setup_logging
from fieldrank.schema import Config, FieldSchema

logger = logging.getLogger("fieldrank")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fieldrank", description="BM25F file search")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    subcommands = parser.add_subparsers(dest="command", required=True)

    index = subcommands.add_parser("index", help="index every supported file in a directory")
    index.add_argument("directory")
    index.add_argument("--output", default="index.json", help="snapshot to write (default: index.json)")
    index.add_argument("--schema", help="field schema JSON file")

    search = subcommands.add_parser("search", help="query an index snapshot")
    search.add_argument("index")
    search.add_argument("query")
    search.add_argument("--top-k", type=int, default=Config.default_top_k)
    search.add_argument("--k1", type=float)
    search.add_argument("--b", type=float)
    search.add_argument("--json", action="store_true", help="print a JSON array of [path, score]")

    ev = subcommands.add_parser("evaluate", help="score an index against relevance judgments")
    ev.add_argument("index")
    ev.add_argument("judgments", help='JSON object {"query": ["relevant/path", ...]}')
    ev.add_argument("-k", type=int, default=10)
    ev.add_argument("--grid", action="store_true", help="search the k1 x b grid")
    return parser


def run_index(args: argparse.Namespace) -> int:
    schema = FieldSchema.from_json(args.schema) if args.schema else None
    engine = SearchEngine(schema)
    report = engine.index_directory(args.directory)
    engine.save(args.output)
    print(f"Indexed {report.indexed} files, skipped {report.skipped}.")
    return 0


def run_search(args: argparse.Namespace) -> int:
    engine = SearchEngine.load(args.index)
    results = engine.search(args.query, top_k=args.top_k, k1=args.k1, b=args.b)
    if args.json:
        print(results.to_json())
    else:
        for path, score in results:
            print(f"{path} {score:.6f}")
    return 0


def _valid_judgments(judgments: object) -> bool:
    return isinstance(judgments, Mapping) and all(
        isinstance(query, str) and isinstance(paths, list) and all(isinstance(p, str) for p in paths)
        for query, paths in judgments.items()
    )


def run_evaluate(args: argparse.Namespace) -> int:
    engine = SearchEngine.load(args.index)
    try:
        with open(args.judgments, encoding="utf-8") as f:
            judgments = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise FieldRankError(f"could not read judgments {args.judgments}: {exc}") from exc
    if not _valid_judgments(judgments):
        raise FieldRankError(f"invalid judgments {args.judgments}: expected {{query: [relevant path, ...]}}")
    if args.grid:
        for row in grid_search(engine, judgments, k=args.k):
            print(json.dumps(row))
    else:
        print(json.dumps(evaluate(engine, judgments, k=args.k)))
    return 0


COMMANDS = {"index": run_index, "search": run_search, "evaluate": run_evaluate}


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    try:
        return COMMANDS[args.command](args)
    except (FieldRankError, OSError) as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
