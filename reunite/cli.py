"""
Reunite — CLI entry point
Usage: reunite [--host HOST] [--port PORT] [--items FILE] [--reload]

Starts the relevance relay. --items seeds the relay's in-memory store so that
find_matches has candidates to choose from.
"""

import argparse
import os
import sys

from . import config
from .store import read_items_file


def _startup_summary(host: str, port: int, items: int | None) -> list[str]:
    lines = [
        f"Reunite relay {config.VERSION} on http://{host}:{port}{config.ORACLE_PATH}",
        f"LLM gateway: {config.LLM_URL} (model {config.LLM_MODEL})",
    ]
    if items is not None:
        lines.append(f"Item store: {items} records from {config.ITEMS_FILE}")
    if not config.LLM_API_KEY:
        lines.append("Warning: REUNITE_LLM_API_KEY is not set, every action will answer 500")
    return lines


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="reunite",
        description="Reunite relevance relay: scores lost and found item matches with a language model.",
    )
    parser.add_argument("--host", default=config.HOST, help=f"Bind host (default: {config.HOST})")
    parser.add_argument("--port", type=int, default=config.PORT, help=f"Bind port (default: {config.PORT})")
    parser.add_argument("--items", metavar="FILE", help="JSON file of item records to serve find_matches from")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload (dev mode)")
    parser.add_argument("--log-level", default="warning", choices=["debug", "info", "warning", "error"])
    args = parser.parse_args()

    items = None
    if args.items:
        try:
            items = len(read_items_file(args.items))
        except (OSError, ValueError) as exc:
            parser.error(f"--items: {exc}")
        # The relay reads it on startup; reload workers re-import config from the env
        config.ITEMS_FILE = args.items
        os.environ["REUNITE_ITEMS_FILE"] = args.items

    try:
        import uvicorn
    except ImportError:
        print("Error: uvicorn not found. Run: pip install reunite", file=sys.stderr)
        sys.exit(1)

    for line in _startup_summary(args.host, args.port, items):
        print(line, file=sys.stderr)

    uvicorn.run(
        "reunite.relay:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
