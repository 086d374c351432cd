"""
Drives update -> analyze -> persist -> render for a batch of projects.

Projects run on a bounded thread pool. Each one is isolated: whatever goes
wrong is caught at the project boundary and recorded in the run report, and
the rest of the batch carries on. Only a run that cannot start at all (no
projects, store unreachable) raises.
"""
import datetime
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from .cloc import ClocAnalyzer
from .config import Settings
from .errors import (
    Cancelled,
    EmptySnapshot,
    OutputFailed,
    RunFailed,
    StatsError,
    StoreUnavailable,
    is_transient,
)
from .models import Failure, Project, ProjectOutcome, RunReport, StatSnapshot, Success
from .render import SvgRenderer, write_svg
from .store import SnapshotStore
from .workspace import WorkingTreeManager

logger = logging.getLogger(__name__)


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class PipelineCoordinator:
    """Runs the statistics pipeline over many projects with bounded concurrency."""

    def __init__(self,
                 workspace: WorkingTreeManager,
                 analyzer: ClocAnalyzer,
                 store: SnapshotStore,
                 renderer: SvgRenderer,
                 output_dir: Union[str, Path],
                 workers: int = 4,
                 max_attempts: int = 3,
                 retry_backoff: float = 2.0,
                 clock: Callable[[], datetime.datetime] = utcnow):
        """
        Args:
            workspace: Owner of the scratch working trees
            analyzer: Line-counting analyzer wrapper
            store: Snapshot storage
            renderer: SVG card renderer
            output_dir: Root folder for {owner}/{name}.svg cards
            workers: Size of the worker pool
            max_attempts: Tries per step for transient errors
            retry_backoff: First retry delay in seconds, doubled each attempt
            clock: Source of capture timestamps
        """
        if workers < 1:
            raise ValueError("workers must be >= 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.workspace = workspace
        self.analyzer = analyzer
        self.store = store
        self.renderer = renderer
        self.output_dir = Path(output_dir)
        self.workers = workers
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "PipelineCoordinator":
        return cls(
            workspace=WorkingTreeManager(settings.temp_folder, timeout=settings.clone_timeout,
                                         keep_trees=settings.keep_trees),
            analyzer=ClocAnalyzer(settings.cloc, timeout=settings.analyze_timeout),
            store=SnapshotStore(settings.db_url),
            renderer=SvgRenderer(),
            output_dir=settings.svg_folder,
            workers=settings.workers,
            max_attempts=settings.max_attempts,
            retry_backoff=settings.retry_backoff,
            **kwargs,
        )

    def run(self, projects: Iterable[Project], cancel: Optional[threading.Event] = None) -> RunReport:
        """
        Process every project and report one outcome per project, in input order.

        Setting `cancel` stops new projects from starting; projects already in
        flight stop at their next step boundary and release their locks.

        Raises:
            RunFailed: no projects were given or the store is unreachable
        """
        projects = list(projects)
        if not projects:
            raise RunFailed("no projects supplied")
        try:
            self.store.init_db()
        except StoreUnavailable as exc:
            raise RunFailed(f"snapshot store unreachable: {exc}") from exc

        cancel = cancel or threading.Event()
        logger.info("Processing %d projects with %d workers", len(projects), self.workers)
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="loc-sweeper") as pool:
            futures = [pool.submit(self.process, project, cancel) for project in projects]
            outcomes = [f.result() for f in futures]

        report = RunReport(outcomes=outcomes, cancelled=cancel.is_set())
        logger.info("Run finished: %d succeeded, %d failed%s", len(report.succeeded),
                    len(report.failed), " (cancelled)" if report.cancelled else "")
        return report

    def process(self, project: Project, cancel: Optional[threading.Event] = None) -> ProjectOutcome:
        """Run one project end to end. Never raises; failures become a Failure outcome."""
        cancel = cancel or threading.Event()
        try:
            outcome = self._process(project, cancel)
        except StatsError as exc:
            logger.warning("%s failed: %s: %s", project.slug, exc.kind, exc)
            outcome = Failure(exc.kind, str(exc))
        except Exception as exc:
            logger.exception("%s failed unexpectedly", project.slug)
            outcome = Failure("Unexpected", f"{type(exc).__name__}: {exc}")
        return ProjectOutcome(project=project, outcome=outcome)

    def _process(self, project: Project, cancel: threading.Event) -> Success:
        self._check_cancel(cancel, "before start")
        project_id = self._retry(cancel, self.store.ensure_project, project)

        with self.workspace.lock(project, cancel):
            try:
                tree = self._retry(cancel, self.workspace.ensure_up_to_date, project)
                latest = self._retry(cancel, self.store.latest, project_id)
                if latest is not None and latest.commit_hash == tree.commit_hash:
                    logger.info("%s unchanged at %s", project.slug, latest.short_hash)
                    snapshot, analyzed = latest, False
                else:
                    self._check_cancel(cancel, "before analysis")
                    breakdown = self._retry(cancel, self.analyzer.analyze, tree.path, project)
                    candidate = StatSnapshot.create(project_id, tree.commit_hash, breakdown, self.clock())
                    snapshot_id = self._retry(cancel, self.store.put, candidate)
                    # a concurrent run may have stored this commit first; use the stored record
                    snapshot = self._retry(cancel, self.store.get, snapshot_id) or candidate.with_id(snapshot_id)
                    analyzed = True
            finally:
                self.workspace.release(project)

        try:
            data = self.renderer.render(project, snapshot)
        except EmptySnapshot as exc:
            logger.warning("%s: %s; card not rendered", project.slug, exc)
            return Success(snapshot_id=snapshot.id, rendered=False, analyzed=analyzed)
        try:
            path = write_svg(self.output_dir, project, data)
        except OSError as exc:
            raise OutputFailed(f"could not write card for {project.slug}: {exc}") from exc
        return Success(snapshot_id=snapshot.id, rendered=True, output_path=path, analyzed=analyzed)

    def _retry(self, cancel: threading.Event, fn, *args):
        """Call `fn(*args)`, retrying transient StatsErrors with exponential backoff."""
        attempt = 1
        while True:
            try:
                return fn(*args)
            except StatsError as exc:
                if not is_transient(exc) or attempt >= self.max_attempts:
                    raise
                delay = self.retry_backoff * (2 ** (attempt - 1))
                logger.info("%s: %s, retry %d/%d in %.1fs", exc.kind, exc, attempt,
                            self.max_attempts - 1, delay)
                if cancel.wait(delay):
                    raise Cancelled("run cancelled while waiting to retry") from exc
                attempt += 1

    @staticmethod
    def _check_cancel(cancel: threading.Event, where: str):
        if cancel.is_set():
            raise Cancelled(f"run cancelled {where}")
