"""CLI commands for inspecting and maintaining stored memory.

Every command opens the SQLite store under the configured data directory,
runs one operation for one principal and closes the store again.
"""

import argparse
import asyncio
import json
import os
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

from groq import AsyncGroq

from .config import CortexConfig, load_config
from .errors import CortexError, NotFoundError
from .llm import GroqLLMClient
from .memory.manager import MemoryManager
from .memory.models import Fact, FactFilter


def _load_config(args: argparse.Namespace) -> CortexConfig:
    config = load_config(Path(args.config) if args.config else None)
    if args.data_dir:
        config.data_dir = Path(args.data_dir).expanduser()
    return config


def _get_manager(args: argparse.Namespace, with_llm: bool = False) -> MemoryManager:
    """Create a MemoryManager from config, with an LLM client if requested."""
    config = _load_config(args)
    config.data_dir.mkdir(parents=True, exist_ok=True)

    llm = None
    if with_llm:
        api_key = os.environ.get("GROQ_API_KEY")
        if not api_key:
            raise CortexError("GROQ_API_KEY is not set")
        llm = GroqLLMClient(AsyncGroq(api_key=api_key), model=config.llm_model, json_mode=True)

    return MemoryManager.from_config(config, llm_client=llm)


def _run(
    args: argparse.Namespace,
    action: Callable[[MemoryManager], Awaitable[int]],
    with_llm: bool = False,
) -> int:
    """Run one async action against a fresh manager and close it afterwards."""

    async def runner() -> int:
        manager = _get_manager(args, with_llm=with_llm)
        try:
            return await action(manager)
        finally:
            await manager.close()

    try:
        return asyncio.run(runner())
    except CortexError as e:
        print(f"Error: {e}")
        return 1


def _format_fact(fact: Fact) -> str:
    status = "" if fact.is_valid else " \033[31m(invalidated)\033[0m"
    critical = " \033[33m!\033[0m" if fact.is_critical else ""
    return (
        f"{fact.id}  {fact.subject} {fact.predicate}: {fact.object}"
        f"  [{fact.memory_stage.value}, conf {fact.confidence:.2f},"
        f" imp {fact.importance}]{critical}{status}"
    )


def cmd_facts(args: argparse.Namespace) -> int:
    """List the facts of a principal."""

    async def action(manager: MemoryManager) -> int:
        facts = await manager.get_facts(
            args.principal, FactFilter(valid_only=not args.all, order_by="created_at")
        )
        if not facts:
            print("No facts found.")
            return 0
        for fact in facts:
            print(_format_fact(fact))
        print(f"\nTotal: {len(facts)} fact(s)")
        return 0

    return _run(args, action)


def cmd_add(args: argparse.Namespace) -> int:
    """Add a fact directly."""

    async def action(manager: MemoryManager) -> int:
        fact = await manager.add_fact(
            args.principal,
            args.subject,
            args.predicate,
            args.object,
            confidence=args.confidence,
            importance=args.importance,
        )
        print(f"Stored: {_format_fact(fact)}")
        return 0

    return _run(args, action)


def cmd_forget(args: argparse.Namespace) -> int:
    """Soft-delete a fact by id."""

    async def action(manager: MemoryManager) -> int:
        try:
            await manager.delete_fact(args.principal, args.fact_id, args.reason)
        except NotFoundError:
            print(f"Error: Fact '{args.fact_id}' not found.")
            return 1
        print(f"Forgot fact: {args.fact_id}")
        return 0

    return _run(args, action)


def cmd_digest(args: argparse.Namespace) -> int:
    """Extract facts from one exchange and apply them."""

    async def action(manager: MemoryManager) -> int:
        result = await manager.digest_now(args.principal, args.user, args.assistant)
        if not result.operations:
            print("No operations applied.")
        for op in result.operations:
            print(f"{op.op.value:<7} {op.subject} {op.predicate}: {op.object}")
        if result.reasoning:
            print(f"\nReasoning: {result.reasoning}")
        return 0

    return _run(args, action, with_llm=True)


def cmd_consolidate(args: argparse.Namespace) -> int:
    """Reclassify facts into memory stages."""

    async def action(manager: MemoryManager) -> int:
        report = await manager.consolidate(args.principal)
        print(
            f"Promoted: {report.promoted}  Demoted: {report.demoted}"
            f"  Unchanged: {report.unchanged}"
        )
        if report.regressions:
            print(f"Regressed facts: {', '.join(report.regressions)}")
        return 0

    return _run(args, action)


def cmd_prune(args: argparse.Namespace) -> int:
    """Soft-delete decayed facts."""

    async def action(manager: MemoryManager) -> int:
        pruned = await manager.prune(args.principal)
        for fact in pruned:
            print(f"Pruned: {_format_fact(fact)}")
        print(f"\nPruned {len(pruned)} fact(s)")
        return 0

    return _run(args, action)


def cmd_stats(args: argparse.Namespace) -> int:
    """Show storage statistics for a principal."""

    async def action(manager: MemoryManager) -> int:
        store = manager.store
        stats = await store.storage_stats(args.principal)
        valid = await manager.get_facts(args.principal)
        print(f"\nPrincipal: {args.principal}")
        print("-" * 40)
        print(f"Valid facts: {len(valid)}")
        for name, value in stats.items():
            print(f"{name.replace('_', ' ').capitalize()}: {value}")
        return 0

    return _run(args, action)


def cmd_export(args: argparse.Namespace) -> int:
    """Dump everything stored for a principal as JSON."""

    async def action(manager: MemoryManager) -> int:
        data = await manager.export_principal(args.principal)
        text = json.dumps(data, indent=2, ensure_ascii=False)
        if args.output:
            Path(args.output).write_text(text, encoding="utf-8")
            print(f"Exported to {args.output}")
        else:
            print(text)
        return 0

    return _run(args, action)


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the cortex CLI."""
    parser = argparse.ArgumentParser(
        prog="cortex",
        description="Inspect and maintain agent memory",
    )
    parser.add_argument("--config", help="Path to config.json")
    parser.add_argument("--data-dir", help="Override the data directory")

    subparsers = parser.add_subparsers(dest="command", help="Sub-command help")

    facts_parser = subparsers.add_parser("facts", help="List facts of a principal")
    facts_parser.add_argument("principal")
    facts_parser.add_argument(
        "-a", "--all",
        action="store_true",
        help="Include invalidated facts",
    )

    add_parser = subparsers.add_parser("add", help="Add a fact directly")
    add_parser.add_argument("principal")
    add_parser.add_argument("subject")
    add_parser.add_argument("predicate")
    add_parser.add_argument("object")
    add_parser.add_argument("--confidence", type=float, default=1.0)
    add_parser.add_argument("--importance", type=int, default=5)

    forget_parser = subparsers.add_parser("forget", help="Soft-delete a fact")
    forget_parser.add_argument("principal")
    forget_parser.add_argument("fact_id")
    forget_parser.add_argument("-r", "--reason", help="Why the fact is forgotten")

    digest_parser = subparsers.add_parser("digest", help="Extract facts from an exchange")
    digest_parser.add_argument("principal")
    digest_parser.add_argument("user", help="What the user said")
    digest_parser.add_argument("assistant", help="What the assistant answered")

    consolidate_parser = subparsers.add_parser(
        "consolidate", help="Reclassify facts into memory stages"
    )
    consolidate_parser.add_argument("principal")

    prune_parser = subparsers.add_parser("prune", help="Soft-delete decayed facts")
    prune_parser.add_argument("principal")

    stats_parser = subparsers.add_parser("stats", help="Show storage statistics")
    stats_parser.add_argument("principal")

    export_parser = subparsers.add_parser("export", help="Export a principal as JSON")
    export_parser.add_argument("principal")
    export_parser.add_argument("-o", "--output", help="Write to a file instead of stdout")

    return parser


def run_cli(argv: list[str] | None = None) -> int:
    """Run the CLI with given arguments.

    Args:
        argv: Command-line arguments. Uses sys.argv[1:] if None.

    Returns:
        Exit code (0 for success, non-zero for error).
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "facts": cmd_facts,
        "add": cmd_add,
        "forget": cmd_forget,
        "digest": cmd_digest,
        "consolidate": cmd_consolidate,
        "prune": cmd_prune,
        "stats": cmd_stats,
        "export": cmd_export,
    }

    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    return handler(args)


if __name__ == "__main__":
    sys.exit(run_cli())
