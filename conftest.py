import datetime
import json
import subprocess
from pathlib import Path

import pytest

from loc_sweeper.models import LanguageBreakdown, LanguageMetric, Project, StatSnapshot
from loc_sweeper.store import SnapshotStore

T0 = datetime.datetime(2024, 5, 1, 12, 0, 0, tzinfo=datetime.timezone.utc)


def git(repo, *args):
    return subprocess.run(["git", "-C", str(repo)] + list(args),
                          check=True, capture_output=True, text=True).stdout.strip()


def commit_files(repo, files, message):
    """Write `files` ({relative path: content}) into `repo` and commit them. Returns the new HEAD."""
    for rel, content in files.items():
        path = Path(repo) / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    git(repo, "add", ".")
    git(repo, "commit", "-q", "-m", message)
    return git(repo, "rev-parse", "HEAD")


@pytest.fixture
def upstream_repo(tmp_path):
    """A small non-bare repository standing in for the remote."""
    repo = tmp_path / "upstream"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "config", "user.email", "tester@test.com")
    git(repo, "config", "user.name", "Tester")
    commit_files(repo, {
        "src/main.rs": "fn main() {\n    println!(\"hi\");\n}\n",
        "build.sh": "#!/bin/sh\ncargo build\n",
    }, "initial")
    return repo


@pytest.fixture
def upstream_project(upstream_repo):
    return Project(owner="acme", name="widget", title="Widget",
                   remote_url=f"file://{upstream_repo}")


@pytest.fixture
def store(tmp_path):
    s = SnapshotStore(tmp_path / "db" / "stats.db")
    s.init_db()
    return s


@pytest.fixture
def scenario_a_breakdown():
    """Rust 500/10/20 and Shell 5/0/1 (code/comment/blank), listed smallest first on purpose."""
    return LanguageBreakdown.from_metrics([
        LanguageMetric("Shell", files=1, blank=1, comment=0, code=5),
        LanguageMetric("Rust", files=4, blank=20, comment=10, code=500),
    ])


@pytest.fixture
def make_snapshot():
    def make(metrics, project_id=1, commit_hash="abc123", captured_at=T0, snapshot_id=None):
        breakdown = LanguageBreakdown.from_metrics(metrics)
        snap = StatSnapshot.create(project_id, commit_hash, breakdown, captured_at)
        return snap.with_id(snapshot_id) if snapshot_id is not None else snap
    return make


@pytest.fixture
def fake_cloc(tmp_path):
    """
    Factory for a stand-in `cloc` executable.

    The script records its arguments next to itself, optionally sleeps,
    prints the given report (dict -> JSON, str/bytes -> verbatim) and exits with
    `exit_code`.
    """
    counter = {"n": 0}

    def make(report=None, exit_code=0, stderr="", sleep=0):
        counter["n"] += 1
        base = tmp_path / f"fake_cloc_{counter['n']}"
        base.mkdir()
        payload = base / "report.out"
        if isinstance(report, dict):
            payload.write_text(json.dumps(report), encoding="utf-8")
        elif isinstance(report, bytes):
            payload.write_bytes(report)
        else:
            payload.write_text(report or "", encoding="utf-8")
        script = base / "cloc"
        lines = ["#!/bin/sh", f"echo \"$@\" > '{base / 'args.txt'}'"]
        if sleep:
            lines.append(f"sleep {sleep}")
        lines.append(f"cat '{payload}'")
        if stderr:
            lines.append(f"echo '{stderr}' >&2")
        lines.append(f"exit {exit_code}")
        script.write_text("\n".join(lines) + "\n", encoding="utf-8")
        script.chmod(0o755)
        return script

    return make


def cloc_report(**languages):
    """Build a cloc --json style report; each language is (files, blank, comment, code)."""
    report = {"header": {"cloc_version": "1.98", "elapsed_seconds": 0.0123, "n_files": 0}}
    total = [0, 0, 0, 0]
    for name, (files, blank, comment, code) in languages.items():
        report[name] = {"nFiles": files, "blank": blank, "comment": comment, "code": code}
        total = [a + b for a, b in zip(total, (files, blank, comment, code))]
    report["SUM"] = {"nFiles": total[0], "blank": total[1], "comment": total[2], "code": total[3]}
    return report
