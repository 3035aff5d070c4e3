"""laneforge -- command-line entry point.

Usage:
    laneforge build "<prompt>" [--lane LANE] [--model MODEL] [--output-dir DIR]
    laneforge route "<prompt>" [--lane LANE]
    laneforge constraints <lane> [--limit N]
    laneforge history [--limit N]

Configuration comes from the environment / ``.env`` (see ``app.config``).
``build`` needs DATABASE_URL and the provider API key; ``route`` needs
nothing.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from lanekit.lanes import Lane, parse_lane

from app.config import VERSION, missing_required_vars, resolve_provider, settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


class _ColorFormatter(logging.Formatter):
    """ANSI-colored log formatter for terminal output."""

    _COLORS = {
        logging.DEBUG:    "\033[36m",     # cyan
        logging.INFO:     "\033[32m",     # green
        logging.WARNING:  "\033[33m",     # yellow
        logging.ERROR:    "\033[31m",     # red
        logging.CRITICAL: "\033[1;31m",   # bold red
    }
    _RESET = "\033[0m"
    _DIM = "\033[2m"

    def format(self, record: logging.LogRecord) -> str:
        color = self._COLORS.get(record.levelno, "")
        ts = self.formatTime(record, "%H:%M:%S")
        name = record.name.split(".")[-1][:18]
        return (
            f"{self._DIM}{ts}{self._RESET} "
            f"{color}{record.levelname:<8s}{self._RESET} "
            f"{self._DIM}[{name:>18s}]{self._RESET} "
            f"{color}{record.getMessage()}{self._RESET}"
        )


class _PlainFormatter(logging.Formatter):
    """Plain-text formatter for file logs (no ANSI codes)."""

    def format(self, record: logging.LogRecord) -> str:
        ts = self.formatTime(record, "%Y-%m-%d %H:%M:%S")
        name = record.name.split(".")[-1][:18]
        return f"{ts} {record.levelname:<8s} [{name:>18s}] {record.getMessage()}"


def configure_logging(level: str | None = None) -> None:
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_ColorFormatter() if sys.stderr.isatty() else _PlainFormatter())
    handlers: list[logging.Handler] = [handler]

    if settings.LOG_FILE:
        from logging.handlers import RotatingFileHandler

        log_path = Path(settings.LOG_FILE)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            str(log_path),
            maxBytes=10 * 1024 * 1024,  # 10 MB per file
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(_PlainFormatter())
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _print_result(result) -> None:
    if result.status == "success":
        print(f"\n[LANEFORGE] BUILD SUCCEEDED: {result.app_name} ({result.lane.value})")
        print(f"[LANEFORGE]   Artifact:   {result.artifact_path} {result.size_label}".rstrip())
        print(f"[LANEFORGE]   Sources:    {result.source_dir}")
        print(f"[LANEFORGE]   Time:       {result.build_time_seconds:.1f}s")
        for feature in result.deferred_features:
            print(f"[LANEFORGE]   Deferred:   {feature}")
        for gap in result.scope_gaps:
            print(f"[LANEFORGE]   Scope gap:  {gap}")
        for defect in result.unresolved_defects:
            print(f"[LANEFORGE]   Unresolved: {defect}")
        for warning in result.warnings:
            print(f"[LANEFORGE]   Warning:    {warning}")
        return
    print(f"\n[LANEFORGE] BUILD FAILED ({result.kind})")
    print(f"[LANEFORGE]   {result.diagnostic_text}")
    for err in result.partial_errors:
        print(f"[LANEFORGE]   - {err}")


async def _cmd_build(args: argparse.Namespace) -> int:
    from app.clients.llm_client import LLMClient, close_client
    from app.repos.build_record_repo import BuildRecordRepo
    from app.repos.constraint_repo import ConstraintRepo
    from app.repos.db import close_pool, ensure_schema
    from app.services.pipeline.constraint_memory import ConstraintMemory
    from app.services.pipeline.orchestrator import BuildPipeline, PipelineDeps

    provider = resolve_provider()
    llm = LLMClient(
        provider=provider,
        api_key=settings.OPENAI_API_KEY if provider == "openai" else settings.ANTHROPIC_API_KEY,
        temperature=settings.LLM_TEMPERATURE,
        timeout_base_s=settings.LLM_TIMEOUT_BASE_S,
        timeout_per_1k_tokens_s=settings.LLM_TIMEOUT_PER_1K_TOKENS_S,
        max_retries=settings.LLM_MAX_RETRIES,
    )
    memory = ConstraintMemory(
        ConstraintRepo(),
        similarity=settings.CONSTRAINT_SIMILARITY,
        decay_days=settings.CONSTRAINT_DECAY_DAYS,
        lane_cap=settings.CONSTRAINT_LANE_CAP,
    )
    deps = PipelineDeps(
        llm=llm,
        memory=memory,
        records=BuildRecordRepo(),
        output_dir=Path(args.output_dir or settings.OUTPUT_DIR),
    )
    try:
        await ensure_schema()
        result = await BuildPipeline(deps).run(args.prompt, lane_override=args.lane, model=args.model)
    finally:
        await close_client()
        await close_pool()
    _print_result(result)
    return 0 if result.status == "success" else 1


def _cmd_route(args: argparse.Namespace) -> int:
    from app.services.pipeline.router import explain_route

    decision = explain_route(args.prompt, args.lane)
    print(f"{decision.lane.value}\t{decision.reason}")
    if decision.ambiguous:
        print(f"ambiguous: {', '.join(l.value for l in decision.matched)}")
    return 0


async def _cmd_constraints(args: argparse.Namespace) -> int:
    from app.repos.constraint_repo import ConstraintRepo
    from app.repos.db import close_pool, ensure_schema
    from app.services.pipeline.constraint_memory import ConstraintMemory

    lane = parse_lane(args.lane)
    if lane is None:
        print(f"unknown lane '{args.lane}' (choose from: {', '.join(l.value for l in Lane)})", file=sys.stderr)
        return 2
    memory = ConstraintMemory(
        ConstraintRepo(),
        similarity=settings.CONSTRAINT_SIMILARITY,
        decay_days=settings.CONSTRAINT_DECAY_DAYS,
        lane_cap=settings.CONSTRAINT_LANE_CAP,
    )
    try:
        await ensure_schema()
        constraints = await memory.get(lane, args.limit)
    finally:
        await close_pool()
    for c in constraints:
        print(f"{c.hit_count:>4}  {c.text}")
    if not constraints:
        print(f"no constraints learned for {lane.value}")
    return 0


async def _cmd_history(args: argparse.Namespace) -> int:
    from app.repos.build_record_repo import BuildRecordRepo
    from app.repos.db import close_pool, ensure_schema

    try:
        await ensure_schema()
        rows = await BuildRecordRepo().recent(args.limit)
    finally:
        await close_pool()
    for row in rows:
        print(json.dumps(row, default=str))
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="laneforge", description="Prompt-to-artifact build pipeline")
    parser.add_argument("--version", action="version", version=f"laneforge {VERSION}")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    lanes = ", ".join(l.value for l in Lane)

    p = sub.add_parser("build", help="Build an app from a prompt")
    p.add_argument("prompt")
    p.add_argument("--lane", default=None, help=f"Force a lane ({lanes})")
    p.add_argument("--model", default=None, help="Code-generation model id")
    p.add_argument("--output-dir", default=None, help="Where build directories are created")

    p = sub.add_parser("route", help="Show which lane a prompt routes to")
    p.add_argument("prompt")
    p.add_argument("--lane", default=None, help="Override to test")

    p = sub.add_parser("constraints", help="List learned constraints for a lane")
    p.add_argument("lane", help=lanes)
    p.add_argument("--limit", type=int, default=settings.CONSTRAINT_PROMPT_LIMIT)

    p = sub.add_parser("history", help="Show recent build records")
    p.add_argument("--limit", type=int, default=20)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    missing = missing_required_vars(args.command)
    if missing:
        print(f"missing required configuration: {', '.join(missing)}", file=sys.stderr)
        return 2

    if args.command == "route":
        return _cmd_route(args)
    if args.command == "build":
        return asyncio.run(_cmd_build(args))
    if args.command == "constraints":
        return asyncio.run(_cmd_constraints(args))
    return asyncio.run(_cmd_history(args))


if __name__ == "__main__":
    sys.exit(main())
