"""CLI entry point for the imsload harness.

Speed-first design:
- Uses uvloop for faster event loop when available
- GC disabled during the run for consistent latency
- Exit status reflects the SLA verdict so CI can gate on it
"""

from __future__ import annotations

import argparse
import asyncio
import gc
import sys
from pathlib import Path
from typing import Any, Coroutine

_HAS_UVLOOP = False
try:
    import uvloop
    _HAS_UVLOOP = True
except ImportError:
    pass

from . import __version__
from .config import resolve_settings
from .environments import ENVIRONMENTS, resolve_environment
from .exceptions import ImsLoadError
from .logging_config import get_logger
from .profiles import PROFILE_FACTORIES, audit_thresholds, get_profile
from .runner import run_load_test

logger = get_logger("cli")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_NOT_COMPLIANT = 2
EXIT_INTERRUPTED = 130


def _run_async(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run async coroutine with uvloop when installed; GC paused for the duration."""
    gc_was_enabled = gc.isenabled()
    gc.disable()
    try:
        if _HAS_UVLOOP:
            return uvloop.run(coro)
        return asyncio.run(coro)
    finally:
        if gc_was_enabled:
            gc.enable()
        gc.collect()


def _print_error(e: ImsLoadError) -> None:
    """Message, then its structured details and the operator hint."""
    print(f"Error: {e.message}", file=sys.stderr)
    for line in e.details():
        print(f"  {line}", file=sys.stderr)
    if e.hint:
        print(f"Hint: {e.hint}", file=sys.stderr)


def _print_audit() -> int:
    """Print every built-in profile's divergence from the documented SLA. Exit 2 if any is undeclared."""
    undeclared = 0
    for name in PROFILE_FACTORIES:
        divergences = audit_thresholds(get_profile(name))
        if not divergences:
            print(f"{name}: matches documented SLA")
            continue
        for d in divergences:
            print(d.describe(name))
            if not d.declared:
                undeclared += 1
    return EXIT_NOT_COMPLIANT if undeclared else EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="imsload",
        description="Synthetic load generation and SLA verification for the IMS back office. "
        "Weighted workflow mixes at a constant or staged arrival rate over async HTTP/2.",
    )
    parser.add_argument(
        "-p",
        "--profile",
        choices=sorted(PROFILE_FACTORIES),
        default=None,
        help="Built-in load profile (default: IMSLOAD_PROFILE or normal)",
    )
    parser.add_argument(
        "-f",
        "--config",
        default=None,
        help="Path to YAML profile config (overrides --profile; may name a base profile itself)",
    )
    parser.add_argument(
        "-e",
        "--env",
        choices=sorted(ENVIRONMENTS),
        default=None,
        help="Target environment (default: IMSLOAD_ENV or staging)",
    )
    parser.add_argument("--rate", type=float, default=None, metavar="IT/S", help="Override peak arrival rate (ramping stages are scaled)")
    parser.add_argument("--duration", type=float, default=None, metavar="SEC", help="Override total duration (ramping stages are scaled)")
    parser.add_argument("--reference-data", default=None, metavar="PATH", dest="reference_data", help="YAML/JSON reference data (default: bundled)")
    parser.add_argument("--seed", type=int, default=None, help="Seed for scenario selection and payloads (reproducible mixes)")
    parser.add_argument(
        "-o",
        "--output",
        default="report.html",
        help="Output path for HTML report (file or directory; default: report.html)",
    )
    parser.add_argument("--junit", metavar="PATH", dest="junit_path", help="Also write JUnit XML report to PATH (for CI)")
    parser.add_argument("--json", metavar="PATH", dest="json_path", help="Also write JSON report to PATH")
    parser.add_argument("--no-live", action="store_true", help="Disable live Rich dashboard (headless mode)")
    parser.add_argument("--no-http2", action="store_true", help="Use HTTP/1.1 only")
    parser.add_argument(
        "--audit-thresholds",
        action="store_true",
        dest="audit",
        help="Print each profile's divergence from the documented SLA and exit",
    )
    parser.add_argument("-v", "--version", action="version", version=f"imsload {__version__}")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    def handle_error(e: BaseException) -> int:
        if isinstance(e, ImsLoadError):
            logger.debug("%s: %s", type(e).__name__, e.message, extra={"error_context": e.context})
            _print_error(e)
            return EXIT_ERROR
        if isinstance(e, (FileNotFoundError, ValueError)):
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_ERROR
        logger.exception("Unexpected error")
        print("Error: An unexpected error occurred. Check logs for details.", file=sys.stderr)
        return EXIT_ERROR

    if args.audit:
        return _print_audit()

    try:
        settings = resolve_settings(
            profile=args.profile,
            config_path=Path(args.config) if args.config else None,
            rate=args.rate,
            duration_seconds=args.duration,
        )
        environment = resolve_environment(args.env)
    except (ImsLoadError, FileNotFoundError) as e:
        return handle_error(e)

    try:
        outcome = _run_async(
            run_load_test(
                settings,
                report_path=args.output,
                environment=environment,
                reference_path=args.reference_data,
                live=not args.no_live,
                junit_path=args.junit_path,
                json_path=args.json_path,
                seed=args.seed,
                http2=not args.no_http2,
            )
        )
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_INTERRUPTED
    except Exception as e:  # noqa: BLE001
        return handle_error(e)

    if not outcome.verdict.compliant:
        for v in outcome.verdict.violations:
            print(f"SLA violation: {v}", file=sys.stderr)
        return EXIT_NOT_COMPLIANT
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
