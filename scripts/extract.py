#!/usr/bin/env python3
"""CLI: Run one thematic extraction over a JSON file of sources and excerpts."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path

# Ensure the package is importable when running as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from thematica import config
from thematica.engine import ExtractionRequest, create_engine
from thematica.errors import ThematicaError
from thematica.models import Purpose


def _print_progress(event: dict) -> None:
    status = f" {event['status']}" if event.get("status") else ""
    print(f"  [{event['stage']:<12}] {event['percent']:5.1f}%{status}", file=sys.stderr)


def main() -> None:
    parser = argparse.ArgumentParser(description="Extract themes from a JSON excerpt file")
    parser.add_argument("input", type=Path, help="JSON file with 'sources' and 'excerpts' (and optionally 'purpose')")
    parser.add_argument(
        "--purpose",
        choices=[p.value for p in Purpose],
        default=None,
        help="Research purpose (overrides the file's 'purpose')",
    )
    parser.add_argument("--user", default="cli", help="User id for bulkhead accounting (default: cli)")
    parser.add_argument("--budget", type=int, default=None, help=f"AI-call budget (default: {config.AI_CALL_BUDGET})")
    parser.add_argument(
        "--deadline", type=float, default=None,
        help=f"Wall-clock deadline in seconds (default: {config.RUN_DEADLINE_SECONDS})",
    )
    parser.add_argument("--seed", type=int, default=None, help=f"Random seed (default: {config.RANDOM_SEED})")
    parser.add_argument("--no-cache", action="store_true", help="Bypass the semantic result cache")
    parser.add_argument("--output", "-o", type=Path, default=None, help="Write the result JSON here instead of stdout")
    parser.add_argument("--quiet", "-q", action="store_true", help="Suppress progress output")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)-5s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    if not args.input.is_file():
        print(f"Error: {args.input} is not a file.", file=sys.stderr)
        sys.exit(1)
    data = json.loads(args.input.read_text())
    if args.purpose:
        data["purpose"] = args.purpose
    if args.seed is not None:
        data.setdefault("options", {})["seed"] = args.seed
    if args.no_cache:
        data["use_cache"] = False

    try:
        request = ExtractionRequest.from_dict(data)
    except ThematicaError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(
        f"Extracting {request.purpose.value} themes: {len(request.excerpts)} excerpts "
        f"from {len(request.sources)} sources",
        file=sys.stderr,
    )
    t0 = time.perf_counter()
    engine = create_engine()
    try:
        result = engine.extract(
            args.user, request,
            on_progress=None if args.quiet else _print_progress,
            ai_call_budget=args.budget,
            deadline_seconds=args.deadline,
        )
    except ThematicaError as e:
        print(f"Error: {e.user_message} ({e})", file=sys.stderr)
        sys.exit(1)

    print(f"\nExtraction complete in {time.perf_counter() - t0:.1f}s:", file=sys.stderr)
    print(f"  Themes:    {len(result.themes)}", file=sys.stderr)
    print(f"  AI calls:  {result.budget.ai_calls_used}/{result.budget.ai_call_budget}", file=sys.stderr)
    if result.cached:
        print("  Served from semantic cache", file=sys.stderr)
    if result.truncated:
        print(f"  Truncated: {result.budget.truncation_reason}", file=sys.stderr)
    for w in result.warnings:
        print(f"  Warning:   {w}", file=sys.stderr)

    payload = json.dumps(result.to_dict(), indent=2)
    if args.output:
        args.output.write_text(payload)
        print(f"  Written to {args.output}", file=sys.stderr)
    else:
        print(payload)


if __name__ == "__main__":
    main()
