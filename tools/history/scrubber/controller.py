"""Phase selection and fleet-wide scheduling of repository pipelines."""

from __future__ import annotations

import enum
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

from .backup import BackupError
from .config import RunConfig
from .framework import WorkPaths, canonical_json_checksum, utc_now, write_json
from .process import CommandCancelled, cancel_all
from .stages import RepositoryTask, StageContext, TaskResult, run_prepare, run_publish

LOGGER = logging.getLogger(__name__)


class PipelinePhase(enum.Enum):
    PREPARE = "prepare"
    PUBLISH = "publish"


@dataclass
class FleetReport:
    run_id: str
    phase: PipelinePhase
    tasks: list[RepositoryTask]
    started_at_utc: str
    finished_at_utc: str = ""
    halted_by_backup_failure: bool = False
    cancelled: bool = False

    @property
    def failed(self) -> list[RepositoryTask]:
        return [task for task in self.tasks if task.result.status == "failed"]

    @property
    def warnings(self) -> list[str]:
        return [warning for task in self.tasks for warning in task.result.warnings]

    @property
    def skipped(self) -> list[RepositoryTask]:
        return [task for task in self.tasks if task.result.status in {"pending", "skipped"}]

    def to_dict(self) -> dict[str, object]:
        payload = {
            "run_id": self.run_id,
            "phase": self.phase.value,
            "started_at_utc": self.started_at_utc,
            "finished_at_utc": self.finished_at_utc,
            "halted_by_backup_failure": self.halted_by_backup_failure,
            "cancelled": self.cancelled,
            "repositories": {task.repository: task.result.to_dict() for task in self.tasks},
        }
        return {**payload, "canonical_checksum": canonical_json_checksum(payload)}


def build_tasks(config: RunConfig, paths: WorkPaths) -> list[RepositoryTask]:
    return [
        RepositoryTask(
            repository=repository,
            mirror_path=paths.mirror_path(repository),
            remote_url=config.remote_url(repository),
            state_path=paths.state_file(repository),
        )
        for repository in config.repositories
    ]


def _pipeline_for(phase: PipelinePhase) -> Callable[[StageContext, RepositoryTask], TaskResult]:
    return run_prepare if phase is PipelinePhase.PREPARE else run_publish


def run_phase(
    ctx: StageContext,
    tasks: Iterable[RepositoryTask],
    phase: PipelinePhase,
    *,
    jobs: int = 1,
) -> FleetReport:
    """Run one phase over every repository on a bounded worker pool.

    A failing repository never cancels the others. A backup failure stops
    new repositories from being scheduled while in-flight ones finish.
    """
    tasks = list(tasks)
    report = FleetReport(run_id=ctx.run_id, phase=phase, tasks=tasks, started_at_utc=utc_now())
    pipeline = _pipeline_for(phase)
    halt = threading.Event()

    def _run(task: RepositoryTask) -> None:
        if halt.is_set():
            task.result.status = "skipped"
            task.result.last_error = "not started: run halted after a backup failure"
            return
        LOGGER.info("repository_start repo=%s phase=%s", task.repository, phase.value)
        try:
            pipeline(ctx, task)
        except BackupError as exc:
            if task.result.status != "failed":
                task.fail("backup", exc)
            halt.set()
            LOGGER.error("backup_failure_halt repo=%s error=%s", task.repository, exc)
        except CommandCancelled as exc:
            task.result.status = "skipped"
            task.result.last_error = str(exc)
        except Exception as exc:
            if task.result.status != "failed":
                task.fail("setup", exc)
            LOGGER.error("repository_failed repo=%s error=%s", task.repository, exc)
        else:
            LOGGER.info("repository_done repo=%s status=%s", task.repository, task.result.status)

    executor = ThreadPoolExecutor(max_workers=max(1, jobs), thread_name_prefix="scrub")
    pending: set[Future] = set()
    try:
        for task in tasks:
            pending.add(executor.submit(_run, task))
        while pending:
            done, pending = wait(pending, return_when=FIRST_COMPLETED)
            for future in done:
                future.result()
    except KeyboardInterrupt:
        report.cancelled = True
        LOGGER.warning("run_cancelled run_id=%s", ctx.run_id)
        cancel_all()
        for future in pending:
            future.cancel()
    finally:
        executor.shutdown(wait=True)

    for task in tasks:
        if task.result.status == "pending":
            task.result.status = "skipped"

    report.halted_by_backup_failure = halt.is_set()
    report.finished_at_utc = utc_now()
    return report


def write_report(paths: WorkPaths, report: FleetReport) -> Path:
    out_path = paths.report_path(report.run_id, report.phase.value)
    write_json(out_path, report.to_dict())
    return out_path
