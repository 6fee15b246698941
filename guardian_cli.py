#!/usr/bin/env python3
"""
Guardian Gateway - Command Line Interface

Usage:
    guardian check <tool> [--params JSON]   Run one tool call through the gate
    guardian approve <nonce> [--reason R]   Approve a pending escalation
    guardian status                         Show pending escalations and approvals
    guardian cleanup                        Remove expired records
    guardian config                         Show effective configuration
    guardian serve [--host H] [--port P]    Run the HTTP sidecar

Exit codes (check): 0 allow, 2 block, 3 escalate. 1 on errors or a failed approval.
"""

import argparse
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from guardian_gateway.approval import approve_escalation
from guardian_gateway.config import GuardConfig
from guardian_gateway.diagnostics import run_startup_diagnostics
from guardian_gateway.errors import GuardianError
from guardian_gateway.evaluator import Decision
from guardian_gateway.gate import GuardianGate
from guardian_gateway.store import _now_ms, build_store

EXIT_CODES = {Decision.ALLOW: 0, Decision.BLOCK: 2, Decision.ESCALATE: 3}


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    logging.getLogger("guardian_gateway").setLevel(level)


def load_config(args) -> GuardConfig:
    """Config file if given, else GA_* environment; --store overrides the path."""
    if args.config:
        config = GuardConfig.from_file(args.config)
    else:
        config = GuardConfig.from_env()
    if args.store:
        config = dataclasses.replace(config, store_path=args.store)
    return config


def _fail(message: str) -> None:
    print(f"ERROR: {message}", file=sys.stderr)
    sys.exit(1)


def cmd_check(args):
    """Run one tool call through the gate."""
    try:
        params = json.loads(args.params) if args.params else {}
    except json.JSONDecodeError as e:
        _fail(f"--params is not valid JSON: {e}")
    if not isinstance(params, dict):
        _fail("--params must be a JSON object")

    gate = GuardianGate(load_config(args))
    result = gate.decide(args.tool, params)

    print(f"Decision: {result.decision.value.upper()}")
    if result.block_reason:
        print(f"Reason:   {result.block_reason}")
    if result.decision == Decision.ESCALATE:
        print(f"\nTo approve: guardian approve {result.nonce}")
    sys.exit(EXIT_CODES[result.decision])


def cmd_approve(args):
    """Approve a pending escalation."""
    store = build_store(load_config(args))
    result = approve_escalation(store, args.nonce, args.reason)
    print(result.to_text())
    sys.exit(0 if result.ok else 1)


def cmd_status(args):
    """Show pending escalations and live approvals."""
    config = load_config(args)
    state = build_store(config).snapshot()
    now = _now_ms()

    print(f"\n{'=' * 60}")
    print("ESCALATION STORE STATUS")
    print(f"{'=' * 60}")
    print(f"Store: {config.resolved_store_path} ({config.store_backend})")
    print(f"Pending escalations: {len(state.pending)}")
    for nonce, rec in sorted(state.pending.items(), key=lambda kv: kv[1].created_at):
        remaining = max(0, (rec.expires_at - now) // 1000)
        print(f"  {nonce}  {rec.tool_name:<16} expires in {remaining}s")
    print(f"Approved actions: {len(state.approved)}")
    for fp, rec in sorted(state.approved.items(), key=lambda kv: kv[1].approved_at):
        remaining = max(0, (rec.expires_at - now) // 1000)
        print(f"  {rec.nonce}  {rec.tool_name:<16} {fp[:16]}  expires in {remaining}s")
    print(f"{'=' * 60}\n")


def cmd_cleanup(args):
    """Remove expired records."""
    store = build_store(load_config(args))
    removed = store.removed_at_startup + store.cleanup()
    print(f"Removed {removed} expired record(s)")


def cmd_config(args):
    """Show effective configuration."""
    config = load_config(args)
    print(json.dumps(config.to_dict(), indent=2))
    warnings = run_startup_diagnostics(config)
    if warnings:
        print("\nConfiguration warnings:")
        for w in warnings:
            print(f"  - {w}")


def cmd_serve(args):
    """Run the HTTP sidecar."""
    import uvicorn

    from guardian_gateway.server import create_app

    config = load_config(args)
    run_startup_diagnostics(config)
    app = create_app(GuardianGate(config))
    uvicorn.run(app, host=args.host, port=args.port)


def main(argv: Optional[list] = None):
    parser = argparse.ArgumentParser(
        description="Guardian Gateway CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--config", type=Path, help="Path to config JSON file (default: GA_* env vars)")
    parser.add_argument("--store", help="Override the escalation store path")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    check_parser = subparsers.add_parser("check", help="Run one tool call through the gate")
    check_parser.add_argument("tool", help="Tool name, e.g. exec")
    check_parser.add_argument("--params", help="Tool parameters as a JSON object")
    check_parser.set_defaults(func=cmd_check)

    approve_parser = subparsers.add_parser("approve", help="Approve a pending escalation")
    approve_parser.add_argument("nonce", help="Nonce from the GUARDIAN_ANGEL_ESCALATE reason")
    approve_parser.add_argument("--reason", help="Why the action was approved")
    approve_parser.set_defaults(func=cmd_approve)

    status_parser = subparsers.add_parser("status", help="Show pending escalations and approvals")
    status_parser.set_defaults(func=cmd_status)

    cleanup_parser = subparsers.add_parser("cleanup", help="Remove expired records")
    cleanup_parser.set_defaults(func=cmd_cleanup)

    config_parser = subparsers.add_parser("config", help="Show effective configuration")
    config_parser.set_defaults(func=cmd_config)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP sidecar")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind (default: 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    serve_parser.set_defaults(func=cmd_serve)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    setup_logging(args.verbose)
    try:
        args.func(args)
    except GuardianError as e:
        _fail(str(e))


if __name__ == "__main__":
    main()
