import argparse
import json
import sys
import threading
from pathlib import Path

from disk_provisioner.config import settings
from disk_provisioner.config.layout import load_layout
from disk_provisioner.logging import LoggerFactory, setup_logging
from disk_provisioner.orchestrator import Orchestrator
from disk_provisioner.storage.exceptions import ProvisionError


EXIT_COMPLETED = 0
EXIT_HALTED = 1
EXIT_INVALID = 2
EXIT_DECLINED = 3

CONFIRMATION_WORD = "yes"


def _positive_int(value):
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return number


def build_parser():
    parser = argparse.ArgumentParser(
        prog="disk-provisioner",
        description="Wipe, partition, format, label and mount disks from a declarative layout",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Also log every command's output")
    parser.add_argument("--log-dir", type=Path, default=None, help="Directory for log files")
    parser.add_argument("--settings", type=Path, default=None, help="Settings JSON file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    apply_parser = subparsers.add_parser("apply", help="Provision disks according to a layout")
    apply_parser.add_argument("--layout", type=Path, required=True, help="Layout file (.json or .toml)")
    apply_parser.add_argument(
        "--dry-run", action="store_true", help="Validate and print the ordered steps only"
    )
    apply_parser.add_argument("--workers", type=_positive_int, default=None, help="Parallel disk chains")
    apply_parser.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    apply_parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    apply_parser.add_argument(
        "--no-preflight",
        action="store_true",
        help="Skip the device presence and in-use checks",
    )
    apply_parser.add_argument(
        "--continue-on-failure",
        action="store_true",
        help="Keep running steps on disks unaffected by a failure",
    )
    return parser


def confirm_destruction(layout, input_fn=None, out=None):
    input_fn = input_fn or input
    out = out or sys.stdout
    print("The following disks will be ERASED:", file=out)
    for disk in layout.disks:
        action = "wipe + repartition" if disk.wipe else "repartition"
        if not layout.partitions_on(disk.id):
            action = "wipe" if disk.wipe else "no changes"
        print(f"  {disk.id:<10} {disk.device:<18} {disk.role.value:<12} {action}", file=out)
    try:
        answer = input_fn(f"Type '{CONFIRMATION_WORD}' to continue: ")
    except EOFError:
        return False
    return answer.strip().lower() == CONFIRMATION_WORD


def run_interruptible(orchestrator, layout):
    """Run in a worker thread so Ctrl-C becomes a cancellation, not an abort."""
    outcome = {}

    def target():
        try:
            outcome["report"] = orchestrator.run(layout)
        except BaseException as error:  # re-raised in the calling thread
            outcome["error"] = error

    thread = threading.Thread(target=target, name="apply")
    thread.start()
    while thread.is_alive():
        try:
            thread.join(0.5)
        except KeyboardInterrupt:
            print("Cancelling: waiting for running destructive steps to finish...", file=sys.stderr)
            orchestrator.cancel()
    if "error" in outcome:
        raise outcome["error"]
    return outcome["report"]


def apply(args):
    log = LoggerFactory.for_system()
    try:
        layout = load_layout(args.layout)
    except ProvisionError as error:
        log.error("{}", error)
        print(f"ERROR: {error}", file=sys.stderr)
        return EXIT_INVALID

    orchestrator = Orchestrator(
        workers=args.workers,
        preflight=False if args.no_preflight else None,
        stop_on_any_failure=False if args.continue_on_failure else None,
    )

    try:
        plan = orchestrator.plan(layout)
    except ProvisionError as error:
        log.error("{}", error)
        print(f"ERROR: {error}", file=sys.stderr)
        return EXIT_INVALID

    if args.dry_run:
        if args.json:
            steps = [
                {
                    "step_id": step.step_id,
                    "kind": step.kind.value,
                    "disks": list(step.disks),
                    "depends_on": list(step.depends_on),
                    "description": step.description,
                }
                for step in plan.steps
            ]
            print(json.dumps({"layout": layout.name, "steps": steps}, indent=2))
        else:
            print(f"Plan for {layout.name} ({len(plan)} steps):")
            for line in plan.describe():
                print(line)
        return EXIT_COMPLETED

    if not args.yes and not confirm_destruction(layout):
        log.warning("Operator declined confirmation")
        print("Aborted: confirmation declined.", file=sys.stderr)
        return EXIT_DECLINED

    report = run_interruptible(orchestrator, layout)

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(report.format_table())

    if report.success:
        return EXIT_COMPLETED
    if report.error is not None:
        return EXIT_INVALID
    return EXIT_HALTED


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.settings is not None:
        settings.load_settings(args.settings)
    log_dir = args.log_dir or settings.get_setting("log_dir")
    setup_logging(
        debug=args.debug,
        trace=args.trace,
        log_dir=Path(log_dir) if log_dir else None,
    )

    if args.command == "apply":
        return apply(args)
    parser.error(f"unknown command {args.command}")
    return EXIT_INVALID


if __name__ == "__main__":
    sys.exit(main())
