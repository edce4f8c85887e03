#!/usr/bin/env python3
"""CLI entry point for node-reconciler.

Commands:
- join: Bring the node to the joined state (prerequisites + kubeadm join)
- reset: Tear the node down to its pre-Kubernetes state
- plan <target>: Print the ordered actions for a target without running them

Exit codes:
- 0: every action succeeded or was already satisfied
- 1: run completed with failures
- 2: run aborted early (halt policy, cancellation, planning error, declined prompt)
- 3: invalid invocation (bad options, bad config, failed preflight)
"""

import argparse
import logging
import signal
import socket
import subprocess
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

from catalog import build_registry
from common import Target
from config import ConfigError, load_config
from host import Host
from reconcile.executor import Reconciler
from reconcile.graph import PlanningError
from reconcile.state import RunReport, RunStatus
from reporting import EXIT_ABORTED, EXIT_USAGE, Reporter
from validation import detect_node_role, format_preflight_results, run_preflight_checks

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

TARGETS = [t.value for t in Target]


class UsageParser(argparse.ArgumentParser):
    """ArgumentParser that exits with the invalid-invocation code."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")


def get_version():
    """Get version from git tags (do not use hardcoded VERSION constant)."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except Exception:
        return 'dev'


def _positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: '{value}'") from None
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive: '{value}'")
    return number


def _common_options() -> argparse.ArgumentParser:
    """Options shared by every command."""
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument(
        '--halt-on-failure',
        action='store_true',
        help='Stop at the first failed action (default: continue and report)'
    )
    parser.add_argument(
        '--action-timeout',
        type=_positive_float,
        metavar='SECONDS',
        help='Timeout for each command an action runs (default: 600)'
    )
    parser.add_argument(
        '--probe-timeout',
        type=_positive_float,
        metavar='SECONDS',
        help='Timeout for each state probe command (default: 5)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Show the plan without probing or changing anything'
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)'
    )
    parser.add_argument(
        '--config', '-c',
        type=Path,
        help='Config file (default: $NODE_RECONCILER_CONFIG or /etc/node-reconciler/config.yaml)'
    )
    parser.add_argument(
        '--report-dir', '-r',
        type=Path,
        help='Directory for timestamped JSON and markdown run reports'
    )
    parser.add_argument(
        '--skip-preflight',
        action='store_true',
        help='Skip preflight checks'
    )
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt for reset'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging'
    )
    parser.add_argument(
        '--root',
        type=Path,
        default=Path('/'),
        help=argparse.SUPPRESS  # Filesystem prefix, for testing against a scratch tree
    )
    return parser


def build_parser() -> argparse.ArgumentParser:
    common = _common_options()
    parser = UsageParser(
        prog='node-reconciler',
        description='Idempotent Kubernetes node reconciler - converges a node to joined or reset state'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'node-reconciler {get_version()}'
    )
    commands = parser.add_subparsers(dest='command', metavar='{join,reset,plan}')
    commands.add_parser('join', parents=[common], help='Reconcile to the joined state')
    commands.add_parser('reset', parents=[common], help='Reconcile to the pristine pre-Kubernetes state')
    plan = commands.add_parser('plan', parents=[common], help='Print the ordered plan for a target')
    plan.add_argument('target', choices=TARGETS, help='Target state')
    return parser


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _confirm_reset(role: str) -> bool:
    print("\nWARNING: This will tear down all Kubernetes state on this node.")
    print(f"Host: {socket.gethostname()} (role: {role})")
    print("Container images are preserved. Everything else Kubernetes created is removed.")
    try:
        response = input("Continue? [y/N] ").strip().lower()
    except EOFError:
        response = ''
    return response == 'y'


def _aborted_report(target: Target, dry_run: bool, error: str) -> RunReport:
    report = RunReport(target=target.value, dry_run=dry_run)
    report.start()
    report.finalize(RunStatus.ABORTED_EARLY, error=error)
    return report


def _emit(reporter: Reporter, report: RunReport, json_output: bool) -> int:
    """Print the report, write report files, return the exit code."""
    if json_output:
        print(reporter.to_json(report))
    else:
        print(reporter.render_summary(report))

    if reporter.report_dir is not None:
        try:
            paths = reporter.write(report)
            logger.info(f"Reports written: {', '.join(str(p) for p in paths)}")
        except OSError as e:
            logger.warning(f"Failed to write reports to {reporter.report_dir}: {e}")

    return reporter.exit_code(report)


def _closing_advice(report: RunReport, role: str) -> None:
    if report.dry_run or report.status == RunStatus.ABORTED_EARLY:
        return
    if report.target == Target.RESET.value:
        print("Node has been reset. Container images were preserved.")
        print("A reboot is recommended to clear any leftover kernel state.")
        if role == 'control-plane':
            print("Next: kubeadm init on the control plane, then 'node-reconciler join' on workers.")
        else:
            print("Next: run 'node-reconciler join' once the control plane is ready.")
    elif report.target == Target.JOIN.value and report.status == RunStatus.ALL_SUCCEEDED:
        print("Node is joined. Check with: kubectl get nodes")


def main(argv: Optional[list] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_USAGE

    _setup_logging(args.verbose, args.json_output)

    if args.command == 'plan':
        target = Target(args.target)
        dry_run = True
    else:
        target = Target(args.command)
        dry_run = args.dry_run

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_USAGE
    if config.source:
        logger.info(f"Using config: {config.source}")

    overrides = {}
    if args.halt_on_failure:
        overrides['on_error'] = 'halt'
    if args.action_timeout:
        overrides['action_timeout'] = args.action_timeout
    if args.probe_timeout:
        overrides['probe_timeout'] = args.probe_timeout
    config = replace(config, **overrides)

    reporter = Reporter(report_dir=args.report_dir, host=socket.gethostname())

    try:
        registry = build_registry(config)
    except PlanningError as e:
        logger.error(f"Action catalog is invalid: {e}")
        return _emit(reporter, _aborted_report(target, dry_run, str(e)), args.json_output)

    role = detect_node_role(args.root)
    logger.info(f"Detected node role: {role}")

    if not dry_run and not args.skip_preflight:
        try:
            plan = registry.build_plan(target)
        except PlanningError:
            plan = None  # reported by the run itself
        if plan is not None:
            success, results = run_preflight_checks(
                target, plan,
                control_plane=config.join.control_plane(),
                root=args.root,
            )
            print(format_preflight_results(results), file=sys.stderr if args.json_output else sys.stdout)
            if not success:
                logger.error("Preflight checks failed")
                return EXIT_USAGE

    if target == Target.RESET and not dry_run and not args.yes and not args.json_output:
        if not _confirm_reset(role):
            print("Aborted.")
            return EXIT_ABORTED

    reconciler = Reconciler(
        registry,
        host=Host(root=args.root),
        on_error=config.on_error,
        probe_timeout=config.probe_timeout,
        action_timeout=config.action_timeout,
        nonfatal=config.nonfatal_types(),
        dry_run=dry_run,
    )

    def handle_signal(signum, frame):
        """Stop after the current action."""
        logger.warning(f"Received {signal.Signals(signum).name}")
        reconciler.cancel()

    previous = {sig: signal.signal(sig, handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        report = reconciler.run(target)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    exit_code = _emit(reporter, report, args.json_output)
    if not args.json_output:
        _closing_advice(report, role)
    return exit_code


if __name__ == '__main__':
    sys.exit(main())
