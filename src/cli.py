#!/usr/bin/env python3
"""
RiftSettle Command Line Interface.

Provides commands for running and operating the settlement service:
    - serve: Start the API server
    - record-earnings: Record owed earnings (the scheduled job)
    - distribute: Legacy direct-pay distribution of a fixed amount
    - claimable: Show a wallet's claimable breakdown
    - reconcile: Resolve open claims and flush the audit retry queue
    - check: Verify installation and configuration
    - info: Display system information

Usage:
    riftsettle serve [--host HOST] [--port PORT] [--debug] [--production]
    riftsettle record-earnings [--recipient-type all|lp|team]
    riftsettle distribute --amount 1.5 [--recipient-type all|lp|team]
    riftsettle claimable --wallet WALLET [--rift RIFT] [--type lp|team]
    riftsettle reconcile
    riftsettle check
    riftsettle --version
"""

import argparse
import json
import os
import sys

from dotenv import load_dotenv

from monitoring import configure_logging
from settlement_errors import SettlementError
from storage.base import StorageError


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _services():
    from api.state import init_services

    return init_services()


def cmd_serve(args):
    """Start the RiftSettle API server."""
    host = args.host or os.getenv("HOST", "0.0.0.0")
    port = args.port or int(os.getenv("PORT", 5000))
    debug = args.debug or os.getenv("FLASK_DEBUG", "").lower() == "true"

    print(f"Starting RiftSettle API server on {host}:{port}")

    from api import create_app

    flask_app = create_app()

    if args.production:
        try:
            import gunicorn.app.base
        except ImportError:
            print("Error: gunicorn not installed. Install with: pip install riftsettle[production]")
            sys.exit(1)

        class StandaloneApplication(gunicorn.app.base.BaseApplication):
            """Gunicorn wrapper serving an already-built Flask app."""

            def __init__(self, app, options=None):
                self.options = options or {}
                self.application = app
                super().__init__()

            def load_config(self):
                for key, value in self.options.items():
                    if key in self.cfg.settings and value is not None:
                        self.cfg.set(key.lower(), value)

            def load(self):
                return self.application

        options = {
            "bind": f"{host}:{port}",
            "workers": args.workers or int(os.getenv("WORKERS", 4)),
            "worker_class": "sync",
            "timeout": 120,
            "accesslog": "-",
            "errorlog": "-",
        }
        StandaloneApplication(flask_app, options).run()
    else:
        flask_app.run(host=host, port=port, debug=debug)


def cmd_record_earnings(args):
    services = _services()
    report = services.distribution.record_earnings(args.recipient_type)
    _print_json(report.to_dict())
    return 0


def cmd_distribute(args):
    services = _services()
    report = services.distribution.distribute(args.amount, args.recipient_type)
    _print_json(report.to_dict())
    return 0 if report.summary["failed"] == 0 else 2


def cmd_claimable(args):
    from settlement_models import EarningType

    services = _services()
    earning_type = EarningType(args.type) if args.type else None
    _print_json(services.ledger.breakdown(args.wallet, args.rift, earning_type))
    return 0


def cmd_reconcile(args):
    services = _services()
    _print_json(
        {
            "claims": services.claims.reconcile_pending(),
            "audit_queue": services.audit_log.flush_retry_queue(),
        }
    )
    return 0


def cmd_check(args):
    """Check installation and configuration."""
    print("RiftSettle Installation Check")
    print("=" * 40)

    checks = []

    try:
        from settings import SettlementSettings

        settings = SettlementSettings.from_env()
        checks.append(("Settings", "OK"))
        checks.append(
            ("Treasury wallet", "OK" if settings.treasury_wallet else "WARN (TREASURY_WALLET not set)")
        )
        checks.append(("Cron secret", "OK" if settings.cron_secret else "WARN (CRON_SECRET not set)"))
    except SettlementError as e:
        checks.append(("Settings", f"FAIL: {e}"))

    try:
        from storage import get_ledger_store

        store = get_ledger_store()
        status = "OK" if store.is_available() else "WARN (not available)"
        checks.append((f"Storage ({store.__class__.__name__})", status))
    except StorageError as e:
        checks.append(("Storage", f"FAIL: {e}"))

    try:
        from chain_client import get_chain_client

        health = get_chain_client().health_check()
        status = "OK" if health.get("status") == "ok" else f"WARN ({health.get('error', 'unavailable')})"
        checks.append((f"Chain ({health.get('backend')})", status))
    except SettlementError as e:
        checks.append(("Chain", f"FAIL: {e}"))

    from scaling import get_cache, get_lock_manager

    checks.append((f"Locks ({get_lock_manager().__class__.__name__})", "OK"))
    checks.append((f"Cache ({get_cache().__class__.__name__})", "OK"))

    from access_policy import AccessPolicy

    policy = AccessPolicy.from_env()
    checks.append(
        ("Admin wallets", "OK" if policy.admin_wallets else "WARN (ADMIN_WALLETS not set)")
    )

    print()
    all_ok = True
    for name, status in checks:
        icon = "✓" if status == "OK" else ("○" if "WARN" in status else "✗")
        print(f"  {icon} {name}: {status}")
        if "FAIL" in status:
            all_ok = False

    print()
    if all_ok:
        print("All checks passed!")
        return 0
    print("Some checks failed. See above for details.")
    return 1


def cmd_info(args):
    """Display system information."""
    import platform

    from api.monitoring import _get_version

    print("RiftSettle System Information")
    print("=" * 40)
    print(f"Version: {_get_version()}")
    print(f"Python: {platform.python_version()}")
    print(f"Platform: {platform.platform()}")

    print()
    print("Configuration:")
    print(f"  STORAGE_BACKEND: {os.getenv('STORAGE_BACKEND', 'json (default)')}")
    print(f"  CHAIN_BACKEND: {os.getenv('CHAIN_BACKEND', 'http (default)')}")
    print(f"  REDIS_URL: {'configured' if os.getenv('REDIS_URL') else 'not set'}")
    print(f"  DATABASE_URL: {'configured' if os.getenv('DATABASE_URL') else 'not set'}")
    print(f"  LOG_LEVEL: {os.getenv('LOG_LEVEL', 'INFO (default)')}")
    print(f"  LOG_FORMAT: {os.getenv('LOG_FORMAT', 'console (default)')}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="riftsettle",
        description="RiftSettle - Rift profit accounting and settlement",
    )
    parser.add_argument("--version", "-v", action="version", version="%(prog)s 0.1.0")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", help="Host to bind to (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, help="Port to bind to (default: 5000)")
    serve_parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    serve_parser.add_argument("--production", action="store_true", help="Use gunicorn for production")
    serve_parser.add_argument("--workers", type=int, help="Number of workers (production mode)")

    record_parser = subparsers.add_parser("record-earnings", help="Record owed earnings")
    record_parser.add_argument("--recipient-type", default="all", choices=["all", "lp", "team"])

    distribute_parser = subparsers.add_parser("distribute", help="Legacy direct-pay distribution")
    distribute_parser.add_argument("--amount", required=True, help="Total SOL to distribute")
    distribute_parser.add_argument("--recipient-type", default="all", choices=["all", "lp", "team"])

    claimable_parser = subparsers.add_parser("claimable", help="Show a wallet's claimable breakdown")
    claimable_parser.add_argument("--wallet", required=True)
    claimable_parser.add_argument("--rift", help="Narrow to one rift")
    claimable_parser.add_argument("--type", choices=["lp", "team"])

    subparsers.add_parser("reconcile", help="Resolve open claims and flush the audit queue")
    subparsers.add_parser("check", help="Check installation and configuration")
    subparsers.add_parser("info", help="Display system information")

    return parser


COMMANDS = {
    "record-earnings": cmd_record_earnings,
    "distribute": cmd_distribute,
    "claimable": cmd_claimable,
    "reconcile": cmd_reconcile,
    "check": cmd_check,
    "info": cmd_info,
}


def main(argv=None):
    """Main CLI entry point."""
    load_dotenv()
    configure_logging(os.getenv("LOG_LEVEL", "INFO"), log_file=os.getenv("LOG_FILE"))

    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "serve":
        cmd_serve(args)
        return

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(1)

    try:
        sys.exit(handler(args))
    except SettlementError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
