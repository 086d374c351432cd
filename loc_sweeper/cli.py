"""
Command-line entrypoint.

  loc-sweeper run [--project owner/name ...]
  loc-sweeper add owner/name [--title T] [--branch B] [--ignored-dirs a,b] [--ignored-langs X,Y]
  loc-sweeper discover OWNER [--include-forks]

Database, output and scratch folders come from flags or the DB_URL,
SVG_FOLDER and TEMP_FOLDER environment variables.
"""
import argparse
import contextlib
import logging
import signal
import sys
import threading
from typing import List, Optional

from .config import Settings
from .errors import RunFailed, StatsError
from .github import discover_projects
from .models import Project
from .pipeline import PipelineCoordinator
from .store import SnapshotStore

logger = logging.getLogger("loc_sweeper")

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_FATAL = 2
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="loc-sweeper",
                                     description="Track per-language line counts of repositories and render SVG cards.")
    parser.add_argument("--db-url", help="SQLite path or sqlite:/// URL (env DB_URL)")
    parser.add_argument("--svg-folder", help="Folder for rendered cards (env SVG_FOLDER)")
    parser.add_argument("--temp-folder", help="Scratch folder for working trees (env TEMP_FOLDER)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Update, analyze and render projects")
    run.add_argument("--project", action="append", default=[], metavar="OWNER/NAME",
                     help="Only process this project (repeatable); default: all registered")
    run.add_argument("--workers", type=int, help="Worker pool size (env WORKERS)")
    run.add_argument("--discard-trees", action="store_true", help="Remove working trees after each project")

    add = sub.add_parser("add", help="Register or update a project")
    add.add_argument("slug", metavar="OWNER/NAME")
    add.add_argument("--title", help="Title shown on the card")
    add.add_argument("--remote-url", help="Clone URL (default: GitHub)")
    add.add_argument("--branch", help="Tracked branch (default: remote HEAD)")
    add.add_argument("--ignored-dirs", help="Extra directories to skip, comma-separated")
    add.add_argument("--ignored-langs", help="Extra languages to skip, comma-separated")

    disc = sub.add_parser("discover", help="Register the public repositories of a GitHub owner")
    disc.add_argument("owner")
    disc.add_argument("--include-forks", action="store_true")
    disc.add_argument("--token-env", default="TOKEN", help="Environment variable holding a GitHub token")
    return parser


def configure_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s [%(threadName)s] %(message)s",
    )


@contextlib.contextmanager
def cancel_on_signals(cancel: threading.Event):
    """Turn SIGINT/SIGTERM into `cancel.set()` for the duration of the block."""
    def handler(signum, frame):
        logger.warning("Received signal %d, finishing in-flight projects", signum)
        cancel.set()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield cancel
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def cmd_run(args, settings: Settings) -> int:
    store = SnapshotStore(settings.db_url)
    try:
        store.init_db()
        if args.project:
            projects = []
            for slug in args.project:
                wanted = Project.from_slug(slug)
                projects.append(store.get_project(wanted.owner, wanted.name) or wanted)
        else:
            projects = store.all_projects()
    except StatsError as exc:
        print(f"Cannot load projects: {exc}", file=sys.stderr)
        return EXIT_FATAL

    coordinator = PipelineCoordinator.from_settings(settings)
    try:
        with cancel_on_signals(threading.Event()) as cancel:
            report = coordinator.run(projects, cancel=cancel)
    except RunFailed as exc:
        print(f"Run failed: {exc}", file=sys.stderr)
        return EXIT_FATAL

    print("\n".join(report.summary_lines()))
    if report.cancelled:
        return EXIT_CANCELLED
    return EXIT_OK if not report.failed else EXIT_PARTIAL


def cmd_add(args, settings: Settings) -> int:
    project = Project.from_slug(
        args.slug,
        title=args.title,
        remote_url=args.remote_url,
        branch=args.branch,
        ignored_dirs=args.ignored_dirs,
        ignored_langs=args.ignored_langs,
    )
    store = SnapshotStore(settings.db_url)
    store.init_db()
    stored = store.upsert_project(project)
    print(f"Registered {stored.slug} (id {stored.id})")
    return EXIT_OK


def cmd_discover(args, settings: Settings) -> int:
    settings.token_env = args.token_env
    projects = discover_projects(args.owner, token=settings.token, include_forks=args.include_forks)
    store = SnapshotStore(settings.db_url)
    store.init_db()
    for project in projects:
        store.ensure_project(project)
        print(f"Registered {project.slug}")
    print(f"{len(projects)} projects registered for {args.owner}")
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return EXIT_FATAL
    configure_logging(args.verbose)

    try:
        settings = Settings.from_env(
            db_url=args.db_url,
            svg_folder=args.svg_folder,
            temp_folder=args.temp_folder,
            workers=getattr(args, "workers", None),
            keep_trees=False if getattr(args, "discard_trees", False) else None,
        )
    except ValueError as exc:
        parser.error(str(exc))

    handlers = {"run": cmd_run, "add": cmd_add, "discover": cmd_discover}
    try:
        return handlers[args.command](args, settings)
    except ValueError as exc:
        parser.error(str(exc))
    except StatsError as exc:
        print(f"{exc.kind}: {exc}", file=sys.stderr)
        return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
