"""Command-line entry point for the identity sanitizer."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

from .config import ConfigurationError, load_config
from .constants import DEFAULT_COMMAND_TIMEOUT_SECONDS, DEFAULT_WORKDIR_NAME, ExitCode
from .controller import FleetReport, PipelinePhase, build_tasks, run_phase, write_report
from .framework import WorkPaths, utc_now
from .locking import LockContentionError, acquire_lock, release_lock
from .process import reset_cancellation
from .stages import StageContext

LOGGER = logging.getLogger("scrubber")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scrub-identities",
        description="Rewrite author and committer identities across the history of many repositories",
    )
    parser.add_argument(
        "config",
        type=Path,
        help="Configuration file (JSON, JSONC or YAML) listing repositories and substitutions",
    )
    parser.add_argument(
        "--commit",
        action="store_true",
        help="Force-push every previously prepared repository. Run without it first and inspect the result.",
    )
    parser.add_argument(
        "--sign",
        action="store_true",
        help="Re-sign every commit with your default signing key (single-branch repositories only). "
        "WARNING: this signs commits not made by you.",
    )
    parser.add_argument(
        "--workdir",
        type=Path,
        default=None,
        help=f"Working directory for mirrors, backups and state (default: ./{DEFAULT_WORKDIR_NAME})",
    )
    parser.add_argument("--jobs", type=int, default=1, help="Repositories processed in parallel")
    parser.add_argument(
        "--command-timeout",
        type=float,
        default=DEFAULT_COMMAND_TIMEOUT_SECONDS,
        help="Seconds before an external command is killed; 0 disables the timeout",
    )
    parser.add_argument("--run-id", default="", help="Run identifier (default: UTC timestamp)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log external commands")
    return parser


def configure_logging(run_log: Path, verbose: bool = False) -> None:
    run_log.parent.mkdir(parents=True, exist_ok=True)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(logging.Formatter("%(levelname)s %(message)s"))

    file_handler = logging.FileHandler(run_log, encoding="utf-8")
    file_formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s %(message)s", datefmt="%Y-%m-%dT%H:%M:%SZ"
    )
    file_formatter.converter = time.gmtime
    file_handler.setFormatter(file_formatter)

    LOGGER.handlers[:] = [console, file_handler]
    LOGGER.setLevel(logging.DEBUG if verbose else logging.INFO)
    LOGGER.propagate = False


def _print_summary(report: FleetReport, report_path: Path) -> None:
    print(f"phase={report.phase.value}")
    print(f"run_id={report.run_id}")
    for task in report.tasks:
        result = task.result
        line = f"repo={task.repository} status={result.status} branches={result.branch_count}"
        if result.failed_stage:
            line += f" failed_stage={result.failed_stage}"
        print(line)
        if result.last_error:
            print(f"  error={result.last_error}")
    for warning in report.warnings:
        print(f"warning={warning}")
    print(f"report={report_path}")


def _exit_code(report: FleetReport) -> int:
    if report.cancelled:
        return ExitCode.CANCELLED
    if report.halted_by_backup_failure:
        return ExitCode.BACKUP
    if report.failed:
        return ExitCode.REPOSITORY_FAILURES
    return ExitCode.SUCCESS


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.jobs < 1:
        parser.error("--jobs must be at least 1")

    workdir = (args.workdir or Path.cwd() / DEFAULT_WORKDIR_NAME).resolve()
    paths = WorkPaths(workdir=workdir)
    configure_logging(paths.run_log, args.verbose)

    run_id = args.run_id or utc_now().replace(":", "").replace("-", "")
    phase = PipelinePhase.PUBLISH if args.commit else PipelinePhase.PREPARE

    try:
        config = load_config(args.config)
    except ConfigurationError as exc:
        LOGGER.error("configuration_error %s", exc)
        return ExitCode.CONFIGURATION

    if phase is PipelinePhase.PREPARE and config.policy.is_empty:
        LOGGER.warning("empty_policy no substitutions configured; histories are rewritten unchanged")

    try:
        acquire_lock(paths.lock_file, run_id, phase.value)
    except LockContentionError as exc:
        LOGGER.error("lock_active %s", exc)
        return ExitCode.LOCK_ACTIVE

    try:
        reset_cancellation()
        ctx = StageContext(
            run_id=run_id,
            paths=paths,
            policy=config.policy,
            sign=args.sign,
            command_timeout=args.command_timeout or None,
        )
        LOGGER.info(
            "run_start run_id=%s phase=%s repositories=%s workdir=%s",
            run_id,
            phase.value,
            len(config.repositories),
            workdir,
        )
        report = run_phase(ctx, build_tasks(config, paths), phase, jobs=args.jobs)
        report_path = write_report(paths, report)
    finally:
        release_lock(paths.lock_file, run_id)

    _print_summary(report, report_path)
    if phase is PipelinePhase.PREPARE and not report.failed and not report.cancelled:
        print("next=inspect the mirrors, then rerun with --commit to force-push")
    return _exit_code(report)


if __name__ == "__main__":
    raise SystemExit(main())
