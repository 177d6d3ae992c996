#!/usr/bin/env python3
"""CLI: python main.py mcp | serve | check | recompute."""
import argparse
import logging
import sys

from core.config import settings

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)


def cmd_check(args: argparse.Namespace) -> int:
    from core.consistency import print_report, run_consistency_checks

    results = run_consistency_checks()
    print_report(results)
    return 1 if any(r.error_count for r in results) else 0


def cmd_recompute(args: argparse.Namespace) -> int:
    from core.consistency import recompute_all

    n = recompute_all(account_id=args.account)
    print(f"Recompute done: {n} contacts updated.")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="WhatsApp CRM")
    parser.add_argument("command", nargs="?", default="mcp", help="mcp | serve | check | recompute")
    parser.add_argument("--account", default=None, help="Limit recompute to one account id")
    parser.add_argument("--port", type=int, default=None, help=f"HTTP port for serve (default {settings.MCP_PORT})")
    args = parser.parse_args()

    if args.command == "check":
        return cmd_check(args)
    if args.command == "recompute":
        return cmd_recompute(args)
    if args.command == "serve":
        from mcp_server.__main__ import serve_http
        return serve_http(args.port)
    # default: stdio MCP
    from mcp_server.__main__ import main as mcp_main
    return mcp_main()


if __name__ == "__main__":
    sys.exit(main())
