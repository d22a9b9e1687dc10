#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

# Ensure project root is on sys.path when running from scripts/
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from banquet_tracker.api.routes import app


def render_schema() -> str:
    """Return the OpenAPI schema of the banquet API as stable JSON text."""
    return json.dumps(app.openapi(), indent=2, ensure_ascii=False, sort_keys=True) + "\n"


def main() -> int:
    parser = argparse.ArgumentParser(description="Export the banquet tracker OpenAPI schema.")
    parser.add_argument(
        "--out",
        type=Path,
        default=Path("openapi.json"),
        help="Output file path (default: openapi.json)",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Exit non-zero if the file on disk differs from the current schema instead of writing it",
    )
    args = parser.parse_args()

    text = render_schema()
    if args.check:
        current = args.out.read_text(encoding="utf-8") if args.out.exists() else ""
        if current != text:
            print(f"{args.out} is out of date; rerun without --check", file=sys.stderr)
            return 1
        print(f"{args.out} is up to date")
        return 0
    args.out.parent.mkdir(parents=True, exist_ok=True)
    args.out.write_text(text, encoding="utf-8")
    print(f"OpenAPI schema written to {args.out}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
