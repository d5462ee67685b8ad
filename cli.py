# cli.py -- Command-line interface for secret provisioning.
# Thin wrapper: parses arguments, applies overrides to the host config,
# dispatches to Provisioner methods and prints one line per outcome.

import argparse
import sys

import audit
from errors import ProvisionError
from hostconfig import load_config
from placement import State
from provision import Provisioner, Report


def build_parser() -> argparse.ArgumentParser:
    """Build and return the argparse parser with all subcommands.

    Subcommands: plan, provision, place, remove, teardown, status, audit-log.

    Returns:
        Configured ArgumentParser instance.
    """
    parser = argparse.ArgumentParser(
        prog="aegis-provision",
        description="Decrypt and place host, role and user secrets in phases",
    )
    parser.add_argument("--config", default="/etc/aegis/host.toml", help="Host config (TOML)")
    parser.add_argument("--dry-run", action="store_true", default=None,
                        help="Decrypt into the sandbox instead of production paths")
    parser.add_argument("--dry-run-path", default=None)
    parser.add_argument("--audit-file", default=None)
    parser.add_argument("--backend", choices=["age", "sealed"], default=None)
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("plan", help="Show phase batches and dependencies")

    p_prov = subparsers.add_parser("provision", help="Decrypt all secrets phase by phase")
    p_prov.add_argument("--phase", type=int, default=None, help="Run only this phase")

    p_place = subparsers.add_parser("place", help="Decrypt a single unit")
    p_place.add_argument("name")

    p_remove = subparsers.add_parser("remove", help="Remove a single unit's plaintext")
    p_remove.add_argument("name")

    subparsers.add_parser("teardown", help="Remove every placed secret")
    subparsers.add_parser("status", help="Show which targets are present")

    p_audit = subparsers.add_parser("audit-log", help="View audit log entries")
    p_audit.add_argument("--last", type=int, default=None)
    p_audit.add_argument("--unit", default=None, help="Only entries for this descriptor")

    return parser


def print_report(report: Report) -> None:
    for r in report.results:
        if r.state == State.PLACED:
            print(f"placed {r.name} -> {r.target}")
        elif r.state == State.REMOVED:
            print(f"removed {r.name} -> {r.target}")
        elif r.state == State.FAILED:
            print(f"failed {r.name}: {r.error_kind}: {r.message}", file=sys.stderr)
        elif r.state == State.SKIPPED:
            for w in r.warnings:
                print(f"skipped {r.name}: {w}", file=sys.stderr)
        if r.state != State.SKIPPED:
            for w in r.warnings:
                print(f"warning {r.name}: {w}", file=sys.stderr)


def main(argv: list[str] | None = None) -> None:
    """Entry point. Parse arguments, dispatch to Provisioner methods, format output."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        config = load_config(args.config)
        if args.dry_run:
            config.dry_run = True
        if args.dry_run_path:
            config.dry_run_path = args.dry_run_path
        if args.audit_file:
            config.audit_file = args.audit_file
        if args.backend:
            config.decrypt_backend = args.backend

        if args.command == "audit-log":
            if not config.audit_file:
                raise ProvisionError("No audit file configured")
            try:
                lines = audit.read_log(config.audit_file, args.last, args.unit)
            except FileNotFoundError as e:
                raise ProvisionError(str(e))
            for line in lines:
                print(line)
            return

        p = Provisioner(config)

        if args.command == "plan":
            for batch in p.plan():
                print(f"Phase {batch.phase}:")
                for d in batch.descriptors:
                    dep = f" (identity from {d.identity_from})" if d.identity_from else ""
                    print(f"  {d.name} [{d.kind}] -> {p.mode.effective(d.target)}{dep}")

        elif args.command == "provision":
            report = p.run(args.phase)
            print_report(report)
            if report.exit_code:
                sys.exit(report.exit_code)

        elif args.command == "place":
            report = p.place_unit(args.name)
            print_report(report)
            if report.exit_code:
                sys.exit(report.exit_code)

        elif args.command in ("remove", "teardown"):
            report = p.remove_unit(args.name) if args.command == "remove" else p.teardown()
            print_report(report)
            if report.exit_code:
                sys.exit(report.exit_code)

        elif args.command == "status":
            for d, target, present in p.status():
                print(f"{'present' if present else 'absent '} phase {d.phase} {d.name} -> {target}")

    except ProvisionError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
