import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

import httpx

from toolselect.db import Database


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_selection(data: dict) -> None:
    tools = data.get("tools") or []
    if tools:
        print(f"Selected {len(tools)} tool(s):")
        for tool in tools:
            print(f"- {tool.get('slug')}  {tool.get('http_verb')} {tool.get('path')}")
    else:
        print("No tools selected.")
    reasoning = data.get("reasoning")
    if reasoning:
        print(f"Reasoning: {reasoning}")
    debug = data.get("debug") or {}
    steps = debug.get("execution_history") or []
    if steps:
        finish_step = debug.get("finish_step")
        suffix = f", finished at step {finish_step}" if finish_step else ""
        print(f"Steps: {len(steps)}{suffix}")


def run_select(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload: dict = {"query": args.query}
    if args.max_steps:
        payload["max_steps"] = args.max_steps
    with httpx.Client() as client:
        try:
            resp = client.post(_join_url(base, "/api/tools/select"), json=payload, timeout=args.timeout)
        except httpx.RequestError as exc:
            print(f"Request failed: {exc}")
            return 1
        if resp.status_code >= 400:
            print(f"Selection failed: HTTP {resp.status_code} {resp.text[:300]}")
            return 1
        data = resp.json()
    if args.json:
        print(json.dumps(data, indent=2))
    else:
        _print_selection(data)
    return 0


def run_seed(args: argparse.Namespace) -> int:
    path = Path(args.file)
    if not path.exists():
        print(f"Catalog file not found: {path}")
        return 1
    payload = json.loads(path.read_text())

    async def _seed() -> dict:
        db = Database(args.database)
        await db.init()
        return await db.seed_catalog(payload)

    counts = asyncio.run(_seed())
    print(", ".join(f"{key}: {value}" for key, value in counts.items()))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="toolselect CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    select = subparsers.add_parser("select", help="Select tools for a query")
    select.add_argument("query", help="User query")
    select.add_argument("--max-steps", type=int, default=None, help="Step ceiling for this run")
    select.add_argument("--timeout", type=float, default=600.0, help="Request timeout seconds")
    select.add_argument("--json", action="store_true", help="Print the full result payload")

    seed = subparsers.add_parser("seed", help="Load a catalog JSON document into the database")
    seed.add_argument("file", help="Catalog JSON file")
    seed.add_argument("--database", default="catalog.db", help="SQLite database path")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "select":
        return run_select(args)
    if args.command == "seed":
        return run_seed(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
