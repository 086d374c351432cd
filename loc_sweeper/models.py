"""
Data models shared by the pipeline components.

All of these are frozen value objects: components hand copies to each other
and never hold references into another component's storage.
"""
import datetime
import json
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

GITHUB_URL = "https://github.com/{owner}/{name}.git"
TOTALS_LABEL = "Total"

_IDENT_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def parse_list(value: Optional[str]) -> List[str]:
    """Split a comma-separated setting into trimmed, non-empty items."""
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _check_ident(label: str, value: str) -> str:
    if not value or not _IDENT_RE.match(value) or value in (".", ".."):
        raise ValueError(f"invalid project {label}: {value!r}")
    return value


@dataclass(frozen=True)
class Project:
    """
    A tracked repository. Identity is `(owner, name)`; everything else is
    configuration that may change between runs.

    `owner` and `name` end up in scratch and output paths, so they are
    restricted to the characters GitHub allows in account and repo names.
    """
    owner: str
    name: str
    title: Optional[str] = None
    remote_url: Optional[str] = None
    branch: Optional[str] = None
    ignored_dirs: Optional[str] = None
    ignored_langs: Optional[str] = None
    id: Optional[int] = None
    last_snapshot_id: Optional[int] = None

    def __post_init__(self):
        _check_ident("owner", self.owner)
        _check_ident("name", self.name)

    @classmethod
    def from_slug(cls, slug: str, **kwargs) -> "Project":
        """Build a project from an `owner/name` string."""
        owner, sep, name = slug.strip().strip("/").partition("/")
        if not sep:
            raise ValueError(f"expected owner/name, got {slug!r}")
        return cls(owner=owner, name=name, **kwargs)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.owner, self.name)

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def url(self) -> str:
        return self.remote_url or GITHUB_URL.format(owner=self.owner, name=self.name)

    @property
    def display_title(self) -> str:
        return self.title or self.name


@dataclass(frozen=True)
class LanguageMetric:
    """Per-language counts as reported by the line-counting analyzer."""
    language: str
    files: int = 0
    blank: int = 0
    comment: int = 0
    code: int = 0

    def __post_init__(self):
        if not isinstance(self.language, str) or not self.language:
            raise ValueError(f"language name must be a non-empty string, got {self.language!r}")
        for name in ("files", "blank", "comment", "code"):
            value = getattr(self, name)
            # bool is an int subclass; a report saying `"code": true` is garbage
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"{self.language}: {name} must be a non-negative integer, got {value!r}")

    @property
    def total_lines(self) -> int:
        return self.blank + self.comment + self.code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "language": self.language,
            "files": self.files,
            "blank": self.blank,
            "comment": self.comment,
            "code": self.code,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LanguageMetric":
        return cls(
            language=data["language"],
            files=data["files"],
            blank=data["blank"],
            comment=data["comment"],
            code=data["code"],
        )


def sum_metrics(metrics: Iterable[LanguageMetric], label: str = TOTALS_LABEL) -> LanguageMetric:
    """Element-wise sum of `metrics` as a single LanguageMetric named `label`."""
    files = blank = comment = code = 0
    for m in metrics:
        files += m.files
        blank += m.blank
        comment += m.comment
        code += m.code
    return LanguageMetric(label, files=files, blank=blank, comment=comment, code=code)


def order_metrics(metrics: Iterable[LanguageMetric]) -> Tuple[LanguageMetric, ...]:
    """Descending code lines; ties broken by language name so the order is total."""
    return tuple(sorted(metrics, key=lambda m: (-m.code, m.language)))


@dataclass(frozen=True)
class LanguageBreakdown:
    """Normalized analyzer output: ordered metrics plus locally computed totals."""
    metrics: Tuple[LanguageMetric, ...] = ()
    totals: LanguageMetric = field(default_factory=lambda: LanguageMetric(TOTALS_LABEL))

    @classmethod
    def from_metrics(cls, metrics: Iterable[LanguageMetric]) -> "LanguageBreakdown":
        ordered = order_metrics(metrics)
        return cls(metrics=ordered, totals=sum_metrics(ordered))


def _utc(dt: datetime.datetime) -> datetime.datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=datetime.timezone.utc)
    return dt.astimezone(datetime.timezone.utc)


def format_timestamp(dt: datetime.datetime) -> str:
    """Fixed-width UTC timestamp; lexical order equals chronological order."""
    return _utc(dt).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: str) -> datetime.datetime:
    return datetime.datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(
        tzinfo=datetime.timezone.utc)


@dataclass(frozen=True)
class StatSnapshot:
    """
    Code composition of one project at one analyzed commit.

    Invariants (checked on construction):
      - `totals` is the element-wise sum of `metrics`
      - `metrics` is ordered by descending code lines
    """
    project_id: int
    captured_at: datetime.datetime
    commit_hash: str
    metrics: Tuple[LanguageMetric, ...]
    totals: LanguageMetric
    id: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "metrics", tuple(self.metrics))
        object.__setattr__(self, "captured_at", _utc(self.captured_at))
        if not self.commit_hash:
            raise ValueError("snapshot needs a commit hash")
        if self.metrics != order_metrics(self.metrics):
            raise ValueError("snapshot metrics must be ordered by descending code lines")
        if self.totals != sum_metrics(self.metrics, self.totals.language):
            raise ValueError("snapshot totals do not match the sum of its metrics")

    @classmethod
    def create(cls, project_id: int, commit_hash: str, breakdown: LanguageBreakdown,
               captured_at: datetime.datetime) -> "StatSnapshot":
        return cls(
            project_id=project_id,
            captured_at=captured_at,
            commit_hash=commit_hash,
            metrics=breakdown.metrics,
            totals=breakdown.totals,
        )

    def with_id(self, snapshot_id: int) -> "StatSnapshot":
        return replace(self, id=snapshot_id)

    @property
    def short_hash(self) -> str:
        return self.commit_hash[:7]

    def metrics_json(self) -> str:
        """Canonical JSON of the metrics list (totals are always recomputed on load)."""
        return json.dumps([m.to_dict() for m in self.metrics], sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_record(cls, snapshot_id: int, project_id: int, captured_at: str,
                    commit_hash: str, metrics_json: str) -> "StatSnapshot":
        metrics = [LanguageMetric.from_dict(d) for d in json.loads(metrics_json)]
        breakdown = LanguageBreakdown.from_metrics(metrics)
        return cls(
            id=snapshot_id,
            project_id=project_id,
            captured_at=parse_timestamp(captured_at),
            commit_hash=commit_hash,
            metrics=breakdown.metrics,
            totals=breakdown.totals,
        )


@dataclass(frozen=True)
class WorkingTree:
    """Result of bringing a project's local copy up to date."""
    path: Path
    commit_hash: str
    changed: bool


# ---------------------------
# Run outcomes
# ---------------------------
@dataclass(frozen=True)
class Success:
    snapshot_id: int
    rendered: bool
    output_path: Optional[Path] = None
    analyzed: bool = True


@dataclass(frozen=True)
class Failure:
    kind: str
    message: str


Outcome = Union[Success, Failure]


@dataclass(frozen=True)
class ProjectOutcome:
    project: Project
    outcome: Outcome

    @property
    def ok(self) -> bool:
        return isinstance(self.outcome, Success)


@dataclass
class RunReport:
    """One outcome per input project, in input order."""
    outcomes: List[ProjectOutcome] = field(default_factory=list)
    cancelled: bool = False

    @property
    def succeeded(self) -> List[ProjectOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> List[ProjectOutcome]:
        return [o for o in self.outcomes if not o.ok]

    def summary_lines(self) -> List[str]:
        lines = []
        for item in self.outcomes:
            out = item.outcome
            if isinstance(out, Success):
                state = "rendered" if out.rendered else "not rendered"
                reused = "" if out.analyzed else ", unchanged"
                lines.append(f"  ok    {item.project.slug}: snapshot {out.snapshot_id} ({state}{reused})")
            else:
                lines.append(f"  FAIL  {item.project.slug}: {out.kind}: {out.message}")
        head = f"{len(self.succeeded)} succeeded, {len(self.failed)} failed"
        if self.cancelled:
            head += " (run cancelled)"
        return [head] + lines
