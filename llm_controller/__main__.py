"""Inspection CLI over a tool-output store.

Usage:
    python -m llm_controller list                                # newest 20 outputs
    python -m llm_controller list --tool-name search --format table
    python -m llm_controller stats ID --schema
    python -m llm_controller extract ID '$.items[*].id' '$.total'
    python -m llm_controller count ID items='$.items' open='$.items:@.status == "open"'
    python -m llm_controller sample ID --path '$.items' --size 5 --strategy random --seed 7
    python -m llm_controller read ID

Every command accepts --root (default: $LLM_CONTROLLER_STORE_ROOT or
~/.llm_controller/tool_outputs) and prints JSON.
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime, timezone
from typing import Any

from llm_controller.config import ControllerConfig
from llm_controller.errors import StoreError, TraversalError
from llm_controller.output_store import OutputStore
from llm_controller.traversal import TraversalSuite


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _format_ts(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _parse_count_spec(raw: str) -> dict[str, Any]:
    """``name=path`` or ``name=path:filter``."""
    name, sep, rest = raw.partition("=")
    if not sep or not name.strip() or not rest.strip():
        raise argparse.ArgumentTypeError(f"count spec must look like name=path[:filter], got {raw!r}")
    path, sep, flt = rest.partition(":")
    spec: dict[str, Any] = {"name": name.strip(), "path": path.strip()}
    if sep and flt.strip():
        spec["filter"] = flt.strip()
    return spec


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def cmd_list(suite: TraversalSuite, args: argparse.Namespace) -> None:
    response = suite.list_outputs({
        "conversation_id": args.conversation_id,
        "tool_name": args.tool_name,
        "limit": args.limit,
        "offset": args.offset,
        "sort_by": args.sort_by,
        "sort_order": args.sort_order,
    })
    if args.format == "json":
        _print_json(response.model_dump(mode="json"))
        return

    if not response.outputs:
        print("No stored outputs.")
        return
    headers = ["ID", "Tool", "Size", "Type", "Created"]
    rows = [
        (entry.id, entry.tool_name, str(entry.size_bytes), entry.summary.type, _format_ts(entry.created_at))
        for entry in response.outputs
    ]
    widths = [max(len(h), *(len(r[i]) for r in rows)) for i, h in enumerate(headers)]
    fmt = "  ".join(f"{{:<{w}}}" for w in widths)
    print(fmt.format(*headers))
    print("─" * (sum(widths) + 2 * (len(widths) - 1)))
    for row in rows:
        print(fmt.format(*row))
    print(f"\n{len(rows)} of {response.total} outputs")


def cmd_stats(suite: TraversalSuite, args: argparse.Namespace) -> None:
    response = suite.stats({
        "id": args.id,
        "include_schema": args.schema,
        "max_depth": args.max_depth,
        "paths": args.paths or None,
    })
    _print_json(response.model_dump(mode="json", by_alias=True))


def cmd_extract(suite: TraversalSuite, args: argparse.Namespace) -> None:
    response = suite.extract({"id": args.id, "paths": args.paths, "flatten": args.flatten})
    _print_json(response.model_dump(mode="json"))


def cmd_count(suite: TraversalSuite, args: argparse.Namespace) -> None:
    counts = [dict(spec, mode=args.mode) for spec in args.specs]
    response = suite.count({"id": args.id, "counts": counts})
    _print_json(response.model_dump(mode="json"))


def cmd_sample(suite: TraversalSuite, args: argparse.Namespace) -> None:
    request: dict[str, Any] = {
        "id": args.id,
        "path": args.path,
        "size": args.size,
        "strategy": args.strategy,
    }
    if args.seed is not None:
        request["seed"] = args.seed
    if args.group_by:
        request["group_by"] = args.group_by
    response = suite.sample(request)
    _print_json(response.model_dump(mode="json"))


def cmd_read(suite: TraversalSuite, args: argparse.Namespace) -> None:
    response = suite.read({"id": args.id})
    _print_json(response.model_dump(mode="json"))


_COMMANDS = {
    "list": cmd_list,
    "stats": cmd_stats,
    "extract": cmd_extract,
    "count": cmd_count,
    "sample": cmd_sample,
    "read": cmd_read,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="llm_controller",
        description="Inspect persisted tool outputs",
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--root", help="Store root directory (default: LLM_CONTROLLER_STORE_ROOT)")
    sub = parser.add_subparsers(dest="command", help="Available commands")

    list_p = sub.add_parser("list", parents=[common], help="List stored outputs")
    list_p.add_argument("--conversation-id", help="Filter to one conversation")
    list_p.add_argument("--tool-name", help="Filter to one tool")
    list_p.add_argument("--limit", type=int, default=20, help="Page size (1-100)")
    list_p.add_argument("--offset", type=int, default=0, help="Rows to skip")
    list_p.add_argument("--sort-by", choices=["created_at", "size", "tool_name"], default="created_at")
    list_p.add_argument("--sort-order", choices=["asc", "desc"], default="desc")
    list_p.add_argument("--format", choices=["table", "json"], default="json", help="Output format")

    stats_p = sub.add_parser("stats", parents=[common], help="Structure and size of one output")
    stats_p.add_argument("id")
    stats_p.add_argument("--schema", action="store_true", help="Include an inferred schema")
    stats_p.add_argument("--max-depth", type=int, default=5)
    stats_p.add_argument("--paths", nargs="+", help="Restrict stats to these paths")

    extract_p = sub.add_parser("extract", parents=[common], help="Pull values out by path")
    extract_p.add_argument("id")
    extract_p.add_argument("paths", nargs="+")
    extract_p.add_argument("--flatten", action="store_true", help="Return one flat list")

    count_p = sub.add_parser("count", parents=[common], help="Count items at paths")
    count_p.add_argument("id")
    count_p.add_argument("specs", nargs="+", type=_parse_count_spec, metavar="NAME=PATH[:FILTER]")
    count_p.add_argument(
        "--mode",
        choices=["array_length", "object_keys", "matches", "nested_total"],
        default="array_length",
    )

    sample_p = sub.add_parser("sample", parents=[common], help="Sample items from an array")
    sample_p.add_argument("id")
    sample_p.add_argument("--path", default="$")
    sample_p.add_argument("--size", type=int, default=10)
    sample_p.add_argument(
        "--strategy",
        choices=["first", "last", "random", "systematic", "stratified"],
        default="random",
    )
    sample_p.add_argument("--seed", type=int)
    sample_p.add_argument("--group-by", help="Path (relative to each item) for stratified sampling")

    read_p = sub.add_parser("read", parents=[common], help="Print one full record")
    read_p.add_argument("id")

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    root = args.root or ControllerConfig.from_env().store_root
    with OutputStore(root) as store:
        try:
            _COMMANDS[args.command](TraversalSuite(store), args)
        except TraversalError as exc:
            print(f"{args.command} failed ({exc.code}): {exc}", file=sys.stderr)
            sys.exit(1)
        except StoreError as exc:
            print(f"{args.command} failed: {exc}", file=sys.stderr)
            sys.exit(1)


if __name__ == "__main__":
    main()
