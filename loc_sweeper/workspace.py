"""
Local working trees for tracked repositories.

Each project gets its own scratch directory `{scratch_root}/trees/{owner}/{name}`
holding a depth-1 copy of the tracked branch. Trees are disposable: anything
that looks wrong (missing HEAD, different remote, failed fetch) is wiped and
fetched again. `{scratch_root}/locks/{owner}/{name}.lock` is the per-project
advisory lock so two runs never touch the same tree at once. Trees and locks
live in separate subtrees so a repo called `foo.lock` cannot collide with the
lock of `foo`.
"""
import contextlib
import fcntl
import logging
import os
import shutil
import subprocess
import threading
from pathlib import Path
from typing import Iterator, List, Optional, Union

from .errors import Cancelled, CorruptWorkingTree, SourceUnavailable, StepTimeout
from .models import Project, WorkingTree

logger = logging.getLogger(__name__)

DEFAULT_GIT_TIMEOUT = 300
LOCK_POLL_INTERVAL = 0.2


def _stderr_tail(exc: subprocess.CalledProcessError, limit: int = 400) -> str:
    text = (exc.stderr or "").strip() or str(exc)
    return text[-limit:]


class WorkingTreeManager:
    """Creates, updates and locks per-project working trees."""

    def __init__(self,
                 scratch_root: Union[str, Path],
                 timeout: float = DEFAULT_GIT_TIMEOUT,
                 keep_trees: bool = True,
                 git: str = "git"):
        """
        Args:
            scratch_root: Directory owning every working tree
            timeout: Seconds allowed for each git invocation
            keep_trees: Keep trees between runs (False wipes them after use)
            git: git executable
        """
        self.scratch_root = Path(scratch_root)
        self.timeout = timeout
        self.keep_trees = keep_trees
        self.git = git
        self._env = dict(os.environ, GIT_TERMINAL_PROMPT="0", LC_ALL="C")

    def tree_path(self, project: Project) -> Path:
        return self.scratch_root / "trees" / project.owner / project.name

    def lock_path(self, project: Project) -> Path:
        return self.scratch_root / "locks" / project.owner / f"{project.name}.lock"

    @contextlib.contextmanager
    def lock(self, project: Project, cancel: Optional[threading.Event] = None) -> Iterator[Path]:
        """
        Hold the project's advisory lock for the duration of the block.

        Waits until any other holder (thread or process) releases it. With a
        `cancel` event the wait polls and raises Cancelled once the event is
        set; without one it blocks. The lock file lives outside the tree, so
        wiping the tree while locked is safe.
        """
        path = self.lock_path(project)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a") as fh:
            if cancel is None:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            else:
                while True:
                    try:
                        fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                        break
                    except BlockingIOError:
                        logger.debug("%s is locked by another run, waiting", project.slug)
                        if cancel.wait(LOCK_POLL_INTERVAL):
                            raise Cancelled(f"run cancelled while waiting for the lock on {project.slug}")
            logger.debug("Locked %s", project.slug)
            try:
                yield self.tree_path(project)
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
                logger.debug("Unlocked %s", project.slug)

    def ensure_up_to_date(self, project: Project) -> WorkingTree:
        """
        Make sure a shallow, current copy of `project` exists locally.

        Returns the tree's path, its HEAD commit and whether HEAD moved since
        the previous run. A fresh clone always counts as changed.

        Raises:
            SourceUnavailable: remote unreachable or ref missing
            CorruptWorkingTree: the tree could not be re-created
            StepTimeout: a git command exceeded the timeout
        """
        path = self.tree_path(project)
        previous = self._head(path, project)

        if previous is not None:
            try:
                self._fetch_and_reset(path, project)
                head = self._head(path, project)
            except subprocess.CalledProcessError as exc:
                logger.warning("Update of %s failed, re-cloning: %s", project.slug, _stderr_tail(exc))
                head = None
            if head is not None:
                if head != previous:
                    logger.info("%s moved %s -> %s", project.slug, previous[:7], head[:7])
                return WorkingTree(path=path, commit_hash=head, changed=head != previous)
        elif path.exists():
            logger.warning("Discarding unusable working tree %s", path)

        head = self._recreate(path, project)
        return WorkingTree(path=path, commit_hash=head, changed=head != previous)

    def discard(self, project: Project):
        """Remove the project's working tree if present."""
        path = self.tree_path(project)
        if path.exists():
            shutil.rmtree(path)
            logger.debug("Removed working tree %s", path)

    def release(self, project: Project):
        """Called after a project's run; wipes the tree unless trees are kept."""
        if not self.keep_trees:
            self.discard(project)

    # ---------------------------
    # git helpers
    # ---------------------------
    def _git(self, args: List[str], cwd: Path) -> subprocess.CompletedProcess:
        cmd = [self.git, "-C", str(cwd)] + args
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                check=True,
                timeout=self.timeout,
                env=self._env,
            )
        except subprocess.TimeoutExpired as exc:
            raise StepTimeout(f"git {args[0]} timed out after {self.timeout}s") from exc
        except FileNotFoundError as exc:
            raise SourceUnavailable(f"git executable not found: {self.git}") from exc

    def _head(self, path: Path, project: Project) -> Optional[str]:
        """HEAD commit of a usable tree at `path`, or None if there is no usable tree."""
        if not (path / ".git").is_dir():
            return None
        try:
            remote = self._git(["config", "--get", "remote.origin.url"], path).stdout.strip()
            if remote != project.url:
                logger.info("%s remote changed (%s != %s)", project.slug, remote, project.url)
                return None
            head = self._git(["rev-parse", "--verify", "--quiet", "HEAD^{commit}"], path).stdout.strip()
        except subprocess.CalledProcessError:
            return None
        return head or None

    def _fetch_and_reset(self, path: Path, project: Project):
        ref = project.branch or "HEAD"
        self._git(["fetch", "--quiet", "--depth", "1", "--no-tags", "origin", ref], path)
        self._git(["reset", "--quiet", "--hard", "FETCH_HEAD"], path)
        self._git(["clean", "-qfdx"], path)

    def _recreate(self, path: Path, project: Project) -> str:
        try:
            if path.exists():
                shutil.rmtree(path)
            path.mkdir(parents=True)
        except OSError as exc:
            raise CorruptWorkingTree(f"could not reset {path}: {exc}") from exc

        logger.info("Cloning %s (depth 1, %s)", project.url, project.branch or "default branch")
        try:
            self._git(["init", "--quiet"], path)
            self._git(["remote", "add", "origin", project.url], path)
            self._fetch_and_reset(path, project)
        except subprocess.CalledProcessError as exc:
            shutil.rmtree(path, ignore_errors=True)
            raise SourceUnavailable(f"could not fetch {project.url}: {_stderr_tail(exc)}") from exc
        except (StepTimeout, SourceUnavailable):
            shutil.rmtree(path, ignore_errors=True)
            raise

        head = self._head(path, project)
        if head is None:
            raise CorruptWorkingTree(f"fresh clone of {project.slug} has no usable HEAD")
        return head
