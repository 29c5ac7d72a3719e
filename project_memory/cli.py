"""
`project-memory` command line interface.

Commands
--------
project-memory record-decision "<decision>" --context "..." --alternative A --impact "..."
project-memory track-progress "<milestone>" --status in_progress --notes "..."
project-memory add-pattern <file_path> [--content "..."] [--language python]
project-memory query ["<text>"] [--category decisions] [--limit 10]
project-memory search "<text>" [--table decisions] [--min-similarity 0.3] [--strategy auto]
project-memory duplicates "<description>" --table decisions [--threshold 0.7]
project-memory classify "<text>"
project-memory migrate <table> <to_model> [--from-model M] --yes
project-memory projects
project-memory delete <table> <id>
project-memory health [--json]

Global options (before the command): --config, --data-dir, --project, --model.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from datetime import datetime
from typing import Optional

from .api import MemoryService
from .config import Config
from .errors import MemoryStoreError, StorageError
from .health import format_health, to_json
from .retrieval.query_analyzer import classify

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def setup_logging(config: Config) -> Optional[str]:
    """Attach a timestamped file handler under ``config.LOG_DIR``.

    Returns the log file path, or ``None`` if the directory is not writable.
    """
    if not logging.root.handlers:
        logging.basicConfig(
            level=getattr(logging, config.LOG_LEVEL, logging.WARNING),
            format="%(levelname)s  %(name)s  %(message)s",
        )

    try:
        os.makedirs(config.LOG_DIR, exist_ok=True)
    except OSError:
        return None
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(config.LOG_DIR, f"memory_{timestamp}.log")

    pkg_logger = logging.getLogger("project_memory")
    pkg_logger.setLevel(logging.DEBUG)
    for handler in pkg_logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == \
                os.path.abspath(log_file):
            return log_file

    # File handler: captures everything
    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%H:%M:%S"
    ))
    pkg_logger.addHandler(fh)
    return log_file


def _load_config(args: argparse.Namespace) -> Config:
    """Config file + env, then CLI overrides."""
    config = Config.load(args.config)
    if args.data_dir:
        default_log_dir = os.path.join(config.DATA_DIR, "logs")
        config.DATA_DIR = args.data_dir
        if config.LOG_DIR == default_log_dir:
            config.LOG_DIR = os.path.join(args.data_dir, "logs")
    if args.project:
        config.DEFAULT_PROJECT = args.project
    if args.model:
        config.EMBEDDING_MODEL = args.model
    return config


def _open(args: argparse.Namespace) -> MemoryService:
    return MemoryService(args.config_obj)


def _print_write(result, what: str) -> None:
    verb = "Recorded" if result.created else "Updated"
    if what == "pattern" and not result.created:
        verb = "Already stored"
    print(f"{verb} {what} #{result.fact_id} ({result.embedding_ref}) "
          f"in project '{result.project}'")


def _describe(fact) -> str:
    if fact.kind.value == "decision":
        return fact.decision
    if fact.kind.value == "progress":
        return f"{fact.milestone} [{fact.status.value}]"
    return f"{fact.file_path}" + (f" ({fact.language})" if fact.language else "")


def _print_results(results, title: str) -> None:
    if not results:
        print(f"No results found for: {title!r}")
        return
    print(f"\nResults for: {title!r}  [{len(results)} result(s)]")
    print("-" * 70)
    for i, r in enumerate(results, 1):
        print(f"\n  [{i}] {r.kind.value} #{r.fact_id}: {_describe(r.fact)}")
        print(f"       Score  : {r.score:.4f}  ({r.strategy.value}"
              f"{', dual match' if r.dual_match else ''})")
        if r.match_reason is not None:
            print(f"       Reason : {r.match_reason.field}: {r.match_reason.excerpt}")
        excerpt = r.excerpt.splitlines()[0] if r.excerpt else ""
        if excerpt:
            print(f"       Text   : {excerpt[:100]}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _cmd_record_decision(args: argparse.Namespace) -> int:
    with _open(args) as memory:
        result = memory.record_decision(args.decision, context=args.context,
                                        alternatives=args.alternative, impact=args.impact)
    _print_write(result, "decision")
    return 0


def _cmd_track_progress(args: argparse.Namespace) -> int:
    with _open(args) as memory:
        result = memory.track_progress(args.milestone, status=args.status, notes=args.notes,
                                       blockers=args.blocker)
    _print_write(result, "progress")
    return 0


def _cmd_add_pattern(args: argparse.Namespace) -> int:
    content = args.content
    if content is None:
        try:
            with open(args.file_path, encoding="utf-8", errors="replace") as fh:
                content = fh.read()
        except OSError as exc:
            print(f"Cannot read {args.file_path}: {exc}. Pass --content instead.",
                  file=sys.stderr)
            return 1
    with _open(args) as memory:
        result = memory.add_code_pattern(args.file_path, content, language=args.language)
    _print_write(result, "pattern")
    return 0


def _cmd_query(args: argparse.Namespace) -> int:
    with _open(args) as memory:
        facts = memory.query_memory(args.text or "", category=args.category, limit=args.limit)
    if not facts:
        print("No facts found.")
        return 0
    for fact in facts:
        print(f"  {fact.kind.value:<9} #{fact.id:<4} {fact.updated_at[:19]}  {_describe(fact)}")
    return 0


def _cmd_search(args: argparse.Namespace) -> int:
    strategy = None if args.strategy == "auto" else args.strategy
    t0 = time.perf_counter()
    with _open(args) as memory:
        response = memory.semantic_search(args.text, tables=args.table,
                                          min_similarity=args.min_similarity,
                                          limit=args.limit, strategy=strategy)
    elapsed_ms = (time.perf_counter() - t0) * 1000

    if args.json:
        print(json.dumps(response.to_dict(), indent=2))
        return 0
    _print_results(response.results, args.text)
    print(f"\n  Strategy: {response.strategy.value}"
          f"{' (degraded to keyword)' if response.degraded else ''}"
          f"  Search time: {elapsed_ms:.1f}ms")
    for warning in response.warnings:
        print(f"  Warning: {warning}", file=sys.stderr)
    return 0


def _cmd_duplicates(args: argparse.Namespace) -> int:
    with _open(args) as memory:
        results = memory.find_duplicates(args.description, table=args.table,
                                         threshold=args.threshold, limit=args.limit)
    if args.json:
        print(json.dumps([r.to_dict() for r in results], indent=2))
        return 0
    _print_results(results, args.description)
    return 0


def _cmd_classify(args: argparse.Namespace) -> int:
    analysis = classify(args.text)
    if args.json:
        print(json.dumps(analysis.to_dict(), indent=2))
    else:
        print(f"{analysis.strategy.value}  (confidence {analysis.confidence:.2f}, "
              f"rule: {analysis.rule})")
    return 0


def _cmd_migrate(args: argparse.Namespace) -> int:
    with _open(args) as memory:
        pointer = memory.coordinator.active_pointer(args.table)
        count = memory.relational.count(pointer.table)
        print(f"{pointer.table}: {count} fact(s) embedded with {pointer.model_id} "
              f"({pointer.dimension}d) -> {args.to_model}")
        if not args.yes:
            print("Re-run with --yes to re-embed them.", file=sys.stderr)
            return 1
        report = memory.migrate_embeddings(args.table, args.to_model,
                                           from_model=args.from_model, show_progress=True)
    print(f"  State     : {report.state.value}")
    print(f"  Succeeded : {report.succeeded}/{report.total}")
    for failure in report.failed[:20]:
        print(f"  Failed    : {failure.reference}: {failure.error}", file=sys.stderr)
    report.raise_for_failures()
    return 0


def _cmd_projects(args: argparse.Namespace) -> int:
    with _open(args) as memory:
        projects = memory.list_projects()
    if not projects:
        print("No projects yet.")
        return 0
    for project in projects:
        print(f"  {project.name:<30} last accessed {project.last_accessed[:19]}")
    return 0


def _cmd_delete(args: argparse.Namespace) -> int:
    with _open(args) as memory:
        deleted = memory.delete_fact(args.table, args.id)
    if not deleted:
        print(f"No {args.table} fact #{args.id} in this project.", file=sys.stderr)
        return 1
    print(f"Deleted {args.table} #{args.id}")
    return 0


def _cmd_health(args: argparse.Namespace) -> int:
    with _open(args) as memory:
        health = memory.health()
    if args.json:
        print(to_json(health))
    else:
        print(format_health(health))
    return 0 if health.healthy else 1


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="project-memory",
        description="Project-scoped memory of decisions, progress and code patterns",
    )
    parser.add_argument("--config", default=None, help="Path to a .project_memory.yaml")
    parser.add_argument("--data-dir", default=None, help="Override the data directory")
    parser.add_argument("--project", default=None, help="Project name (default from config)")
    parser.add_argument("--model", default=None,
                        help="Embedding model for tables not yet initialised")
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    # --- record-decision ---
    dec_p = subparsers.add_parser("record-decision", help="Record an architectural decision")
    dec_p.add_argument("decision")
    dec_p.add_argument("--context", default="")
    dec_p.add_argument("--alternative", action="append", default=[],
                       help="A rejected alternative (repeatable)")
    dec_p.add_argument("--impact", default="")
    dec_p.set_defaults(func=_cmd_record_decision)

    # --- track-progress ---
    prog_p = subparsers.add_parser("track-progress", help="Create or update a milestone")
    prog_p.add_argument("milestone")
    prog_p.add_argument("--status", default="in_progress",
                        help="not_started | in_progress | testing | completed | blocked")
    prog_p.add_argument("--notes", default="")
    prog_p.add_argument("--blocker", action="append", default=[],
                        help="A blocker (repeatable)")
    prog_p.set_defaults(func=_cmd_track_progress)

    # --- add-pattern ---
    pat_p = subparsers.add_parser("add-pattern", help="Store a code or text pattern")
    pat_p.add_argument("file_path")
    pat_p.add_argument("--content", default=None,
                       help="Pattern text (default: the contents of file_path)")
    pat_p.add_argument("--language", default="")
    pat_p.set_defaults(func=_cmd_add_pattern)

    # --- query ---
    query_p = subparsers.add_parser("query", help="Hybrid search, or recent facts without text")
    query_p.add_argument("text", nargs="?", default="")
    query_p.add_argument("--category", default=None,
                         help="decisions | progress | code_patterns | all")
    query_p.add_argument("--limit", type=int, default=None)
    query_p.set_defaults(func=_cmd_query)

    # --- search ---
    search_p = subparsers.add_parser("search", help="Search by meaning")
    search_p.add_argument("text")
    search_p.add_argument("--table", action="append", default=None,
                          help="Table to search (repeatable, default all)")
    search_p.add_argument("--min-similarity", type=float, default=None)
    search_p.add_argument("--limit", type=int, default=None)
    search_p.add_argument("--strategy", default="vector",
                          choices=["auto", "keyword", "vector", "keyword_boost", "hybrid"])
    search_p.add_argument("--json", action="store_true", help="Output as JSON")
    search_p.set_defaults(func=_cmd_search)

    # --- duplicates ---
    dup_p = subparsers.add_parser("duplicates", help="Find facts similar to a description")
    dup_p.add_argument("description")
    dup_p.add_argument("--table", default="decisions")
    dup_p.add_argument("--threshold", type=float, default=None)
    dup_p.add_argument("--limit", type=int, default=None)
    dup_p.add_argument("--json", action="store_true", help="Output as JSON")
    dup_p.set_defaults(func=_cmd_duplicates)

    # --- classify ---
    cls_p = subparsers.add_parser("classify", help="Show the strategy chosen for a query")
    cls_p.add_argument("text")
    cls_p.add_argument("--json", action="store_true", help="Output as JSON")
    cls_p.set_defaults(func=_cmd_classify)

    # --- migrate ---
    mig_p = subparsers.add_parser("migrate", help="Re-embed a table under another model")
    mig_p.add_argument("table")
    mig_p.add_argument("to_model")
    mig_p.add_argument("--from-model", default=None)
    mig_p.add_argument("--yes", action="store_true", help="Confirm the migration")
    mig_p.set_defaults(func=_cmd_migrate)

    # --- projects ---
    proj_p = subparsers.add_parser("projects", help="List all projects")
    proj_p.set_defaults(func=_cmd_projects)

    # --- delete ---
    del_p = subparsers.add_parser("delete", help="Delete a fact and its vector")
    del_p.add_argument("table")
    del_p.add_argument("id", type=int)
    del_p.set_defaults(func=_cmd_delete)

    # --- health ---
    health_p = subparsers.add_parser("health", help="Show store health and consistency")
    health_p.add_argument("--json", action="store_true", help="Output as JSON")
    health_p.set_defaults(func=_cmd_health)

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point for ``project-memory``.

    Parameters
    ----------
    argv:
        Argument list.  Defaults to sys.argv if None.

    Returns
    -------
    int
        Process exit code: 0 on success, 1 on a request error, 2 on a
        storage failure.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        args.config_obj = _load_config(args)
        setup_logging(args.config_obj)
        return args.func(args)
    except StorageError as exc:
        logger.error("Storage failure: %s", exc)
        print(f"Storage failure: {exc}", file=sys.stderr)
        return 2
    except MemoryStoreError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
