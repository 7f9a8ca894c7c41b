#!/usr/bin/env python3
"""
SwitchVault CLI - operator tool for kill switches

Usage:
    switchvault get <key>
    switchvault toggle <key> --principal=<id>
    switchvault list
    switchvault audit <check> [<check> ...]
    switchvault verify-ledger
    switchvault serve [--host=127.0.0.1] [--port=8000]

Commands other than `serve` default to the SQLite store so state persists
between invocations.
"""

import argparse
import json
import logging
import sys
from dataclasses import replace
from typing import Optional

from switchvault.config import ServiceConfig, build_service, configure_logging, load_config
from switchvault.core.failures import SwitchVaultError

logger = logging.getLogger(__name__)


def _emit(payload) -> None:
    print(json.dumps(payload, indent=2))


def _resolve_config(args: argparse.Namespace) -> ServiceConfig:
    config = load_config(args.env_file)
    overrides = {}
    if args.store:
        overrides["store"] = args.store
    elif args.command != "serve":
        overrides["store"] = "sqlite"
    if args.db:
        overrides["db_path"] = args.db
    if args.ledger:
        overrides["ledger_path"] = args.ledger
    if args.policy:
        overrides["policy_path"] = args.policy
    if args.root_principal:
        overrides["root_principal"] = args.root_principal
    return replace(config, **overrides)


def cmd_get(service, args) -> int:
    _emit(service.get(args.key).to_dict())
    return 0


def cmd_toggle(service, args) -> int:
    _emit(service.toggle(args.key, args.principal).to_dict())
    return 0


def cmd_list(service, args) -> int:
    _emit([r.to_dict() for r in service.list_switches()])
    return 0


def cmd_audit(service, args) -> int:
    names = args.checks or service.checks.names()
    report = service.run_audit(names)
    _emit(report.to_dict())
    return 0 if report.passed else 2


def cmd_verify_ledger(service, args) -> int:
    service.ledger.verify_integrity()
    _emit({"ledger": str(service.ledger.storage_path), "entries": len(service.ledger), "intact": True})
    return 0


def cmd_serve(config: ServiceConfig, args) -> int:
    import uvicorn

    from switchvault.api.main import create_app

    app = create_app(build_service(config))
    uvicorn.run(app, host=args.host, port=args.port, log_level=config.log_level.lower())
    return 0


COMMANDS = {
    "get": cmd_get,
    "toggle": cmd_toggle,
    "list": cmd_list,
    "audit": cmd_audit,
    "verify-ledger": cmd_verify_ledger,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='switchvault',
        description='SwitchVault - kill-switch coordination service',
    )
    parser.add_argument('--env-file', help='Path to .env file (default: ./.env)')
    parser.add_argument('--store', choices=['memory', 'sqlite'], help='Store backend override')
    parser.add_argument('--db', help='SQLite database path')
    parser.add_argument('--ledger', help='Toggle ledger path')
    parser.add_argument('--policy', help='Authorization policy JSON')
    parser.add_argument('--root-principal', help='Root authority principal (when no policy file)')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    get_parser = subparsers.add_parser('get', help='Show a switch')
    get_parser.add_argument('key')

    toggle_parser = subparsers.add_parser('toggle', help='Flip a switch')
    toggle_parser.add_argument('key')
    toggle_parser.add_argument('--principal', required=True, help='Verified principal ID of the operator')

    subparsers.add_parser('list', help='List all switches')

    audit_parser = subparsers.add_parser('audit', help='Run audit checks (all registered if none given)')
    audit_parser.add_argument('checks', nargs='*')

    subparsers.add_parser('verify-ledger', help='Verify toggle ledger chain')

    serve_parser = subparsers.add_parser('serve', help='Run the HTTP API')
    serve_parser.add_argument('--host', default='127.0.0.1')
    serve_parser.add_argument('--port', type=int, default=8000)

    return parser


def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    config = _resolve_config(args)
    configure_logging(config.log_level)

    if args.command == 'serve':
        return cmd_serve(config, args)

    try:
        service = build_service(config)
    except SwitchVaultError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        return COMMANDS[args.command](service, args)
    except SwitchVaultError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        service.close()


if __name__ == '__main__':
    sys.exit(main())
