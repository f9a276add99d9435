from __future__ import annotations

import argparse
import signal
import sys
import threading
from pathlib import Path

from packledger import (
    InstallSide,
    PackLedgerError,
    Profile,
    ProfileStore,
    SourceResolver,
    export_report,
    load_ledger,
    load_program_config,
    plan_reconciliation,
    print_plan,
    print_summary,
    reconcile,
)
from packledger.ledger import ledger_path
from packledger.load_config import CONFIG_FILENAME
from packledger.logging_utils import log_error, log_info, set_quiet


def _add_target_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--profile", help="Name of a saved profile to use.")
    parser.add_argument("--pack", type=Path, help="Pack directory holding modpack.toml and modpack.lock.")
    parser.add_argument("--instance", type=Path, help="Install directory to reconcile.")
    parser.add_argument(
        "--side",
        choices=[side.value for side in InstallSide],
        default=None,
        help="Which side to install for (client, server, or both).",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Install a locked mod pack into an instance directory, merging config files "
            "and never deleting files you edited."
        )
    )
    parser.add_argument(
        "--config-path",
        type=Path,
        default=Path(CONFIG_FILENAME),
        help="Path to the program configuration TOML file.",
    )
    parser.add_argument(
        "--profiles-dir",
        type=Path,
        default=None,
        help="Directory holding profiles.toml (defaults to ~/.config/packledger).",
    )
    parser.add_argument("--quiet", action="store_true", help="Only print warnings and errors.")
    commands = parser.add_subparsers(dest="command", required=True)

    install = commands.add_parser("install", help="Bring an instance directory in line with the lock.")
    _add_target_arguments(install)
    install.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the actions that would be taken.",
    )
    install.add_argument("--workers", type=int, default=None, help="Concurrent fetch/apply workers.")
    install.add_argument(
        "--export-path",
        type=Path,
        default=None,
        help="Path to save the run report Excel file.",
    )

    plan = commands.add_parser("plan", help="Show what an install would do.")
    _add_target_arguments(plan)

    profile = commands.add_parser("profile", help="Manage saved profiles.")
    profile_commands = profile.add_subparsers(dest="profile_command", required=True)
    profile_add = profile_commands.add_parser("add", help="Add or overwrite a profile.")
    profile_add.add_argument("name")
    profile_add.add_argument("--pack", type=Path, required=True)
    profile_add.add_argument("--instance", type=Path, required=True)
    profile_add.add_argument(
        "--side", choices=[side.value for side in InstallSide], default=InstallSide.BOTH.value
    )
    profile_commands.add_parser("list", help="List profiles.")
    profile_show = profile_commands.add_parser("show", help="Show one profile.")
    profile_show.add_argument("name")
    profile_remove = profile_commands.add_parser("remove", help="Delete a profile.")
    profile_remove.add_argument("name")
    return parser.parse_args(argv)


def _resolve_profile(args: argparse.Namespace, store: ProfileStore) -> Profile:
    if args.profile:
        profile = store.get(args.profile)
    elif args.pack and args.instance:
        profile = Profile(
            name="<adhoc>",
            pack_dir=args.pack.expanduser().resolve(),
            install_dir=args.instance.expanduser().resolve(),
        )
    else:
        raise SystemExit("Either --profile or both --pack and --instance are required.")
    if args.side:
        profile.side = InstallSide(args.side)
    if not profile.pack_dir.exists():
        raise SystemExit(f"Pack directory {profile.pack_dir} does not exist.")
    return profile


def _run_profile_command(args: argparse.Namespace, store: ProfileStore) -> int:
    if args.profile_command == "add":
        store.add(
            Profile(
                name=args.name,
                pack_dir=args.pack.expanduser().resolve(),
                install_dir=args.instance.expanduser().resolve(),
                side=InstallSide(args.side),
            )
        )
        store.save()
        log_info(f"Saved profile '{args.name}'")
    elif args.profile_command == "list":
        for name in store.names():
            print(name)
    elif args.profile_command == "show":
        profile = store.get(args.name)
        print(f"name:     {profile.name}")
        print(f"pack:     {profile.pack_dir}")
        print(f"instance: {profile.install_dir}")
        print(f"side:     {profile.side.value}")
    elif args.profile_command == "remove":
        store.remove(args.name)
        store.save()
        log_info(f"Removed profile '{args.name}'")
    return 0


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    set_quiet(args.quiet)
    store = ProfileStore.load(args.profiles_dir)

    if args.command == "profile":
        return _run_profile_command(args, store)

    profile = _resolve_profile(args, store)
    state = profile.load_state()

    if args.command == "plan":
        ledger = load_ledger(ledger_path(profile.install_dir))
        print_plan(plan_reconciliation(state.lock, ledger, profile.side))
        return 0

    config = load_program_config(args.config_path.expanduser())
    if args.workers:
        config.workers = args.workers

    cancel_event = threading.Event()

    def _cancel(signum, frame) -> None:
        log_error("Interrupt received; finishing in-flight placements and saving the ledger.")
        cancel_event.set()

    previous_handler = signal.signal(signal.SIGINT, _cancel)
    try:
        summary = reconcile(
            profile.install_dir,
            state.lock,
            SourceResolver.for_pack(profile.pack_dir),
            config=config,
            side=profile.side,
            dry_run=args.dry_run,
            cancel_event=cancel_event,
        )
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    print_summary(summary)

    export_path = args.export_path or config.export_report
    if export_path:
        if export_path.suffix.lower() != ".xlsx":
            export_path = export_path / "packledger_report.xlsx"
        export_report(export_path, summary, load_ledger(ledger_path(profile.install_dir)))
        log_info(f"Report saved to {export_path}")
    return summary.exit_code


def main(argv: list[str] | None = None) -> int:
    try:
        return run(argv)
    except PackLedgerError as exc:
        log_error(str(exc))
        return 2


if __name__ == "__main__":
    sys.exit(main())
