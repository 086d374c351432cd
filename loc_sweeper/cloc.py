"""
Runs the `cloc` line counter against a working tree and turns its JSON report
into a LanguageBreakdown.

The report is parsed strictly: anything other than the expected per-language
objects raises MalformedReport. The analyzer's own SUM entry and header are
ignored; totals are always recomputed from the language entries.
"""
import json
import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import AnalyzerFailed, AnalyzerUnavailable, MalformedReport, StepTimeout
from .models import LanguageBreakdown, LanguageMetric, Project, parse_list

logger = logging.getLogger(__name__)

DEFAULT_IGNORED_DIRS = ["target", ".idea", ".git", ".build"]
DEFAULT_IGNORED_LANGS = [
    "JSON",
    "Markdown",
    "Maven",
    "Properties",
    "SVG",
    "TOML",
    "XML",
    "YAML",
]
DEFAULT_ANALYZE_TIMEOUT = 600

# keys cloc emits next to the per-language entries
_NON_LANGUAGE_KEYS = {"header", "sum"}
_COUNT_FIELDS = (("files", "nFiles"), ("blank", "blank"), ("comment", "comment"), ("code", "code"))


def _merge(base: List[str], extra: List[str]) -> List[str]:
    """Concatenate and drop duplicates, keeping first occurrence order."""
    seen = set()
    out = []
    for item in base + extra:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


@dataclass
class ClocConfig:
    """What to count and what to skip for one invocation."""
    path: Path
    ignored_dirs: List[str] = field(default_factory=lambda: list(DEFAULT_IGNORED_DIRS))
    ignored_langs: List[str] = field(default_factory=lambda: list(DEFAULT_IGNORED_LANGS))

    @classmethod
    def for_project(cls, project: Optional[Project], path: Union[str, Path]) -> "ClocConfig":
        """Default exclusions extended with the project's own comma-separated lists."""
        if project is None:
            return cls(path=Path(path))
        return cls(
            path=Path(path),
            ignored_dirs=_merge(DEFAULT_IGNORED_DIRS, parse_list(project.ignored_dirs)),
            ignored_langs=_merge(DEFAULT_IGNORED_LANGS, parse_list(project.ignored_langs)),
        )


def parse_report(raw: Union[str, bytes]) -> LanguageBreakdown:
    """
    Parse cloc's `--json` output (raw bytes are decoded as UTF-8).

    Expected shape:
      {"header": {...}, "Python": {"nFiles": 3, "blank": 1, "comment": 2, "code": 10}, ..., "SUM": {...}}

    Empty output (cloc prints nothing when no files are counted) yields an
    empty breakdown. Languages cloc reports that we have never heard of are
    kept as-is.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedReport(f"analyzer output is not valid UTF-8: {exc}") from exc
    if not raw.strip():
        return LanguageBreakdown()
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise MalformedReport(f"analyzer output is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedReport(f"analyzer report must be a JSON object, got {type(data).__name__}")

    metrics = []
    for language, entry in data.items():
        if language.lower() in _NON_LANGUAGE_KEYS:
            continue
        if not isinstance(entry, dict):
            raise MalformedReport(f"entry for {language!r} is not an object")
        counts: Dict[str, Any] = {}
        for attr, key in _COUNT_FIELDS:
            if key not in entry:
                raise MalformedReport(f"entry for {language!r} lacks {key!r}")
            counts[attr] = entry[key]
        try:
            metrics.append(LanguageMetric(language, **counts))
        except ValueError as exc:
            raise MalformedReport(str(exc)) from exc
    return LanguageBreakdown.from_metrics(metrics)


class ClocAnalyzer:
    """Wraps the `cloc` executable behind a typed `analyze` call."""

    def __init__(self, executable: str = "cloc", timeout: float = DEFAULT_ANALYZE_TIMEOUT):
        self.executable = executable
        self.timeout = timeout

    def build_command(self, config: ClocConfig) -> List[str]:
        cmd = [self.executable, "--json", "--quiet"]
        if config.ignored_langs:
            cmd.append("--exclude-lang=" + ",".join(config.ignored_langs))
        if config.ignored_dirs:
            cmd.append("--exclude-dir=" + ",".join(config.ignored_dirs))
        cmd.append(str(config.path))
        return cmd

    def analyze(self, path: Union[str, Path], project: Optional[Project] = None) -> LanguageBreakdown:
        """
        Count lines under `path` and return the normalized breakdown.

        Raises:
            AnalyzerUnavailable: the executable could not be started
            AnalyzerFailed: it exited non-zero
            MalformedReport: its output could not be parsed
            StepTimeout: it ran longer than `timeout` seconds (the process is killed)
        """
        config = ClocConfig.for_project(project, path)
        cmd = self.build_command(config)
        logger.debug("Running %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise StepTimeout(f"{self.executable} timed out after {self.timeout}s") from exc
        except OSError as exc:
            raise AnalyzerUnavailable(f"could not start {self.executable}: {exc}") from exc

        if result.returncode != 0:
            err = result.stderr.decode("utf-8", errors="replace").strip()[-400:]
            raise AnalyzerFailed(f"{self.executable} exited with status {result.returncode}: {err}")

        breakdown = parse_report(result.stdout)
        logger.debug("%s: %d languages, %d code lines", config.path, len(breakdown.metrics),
                     breakdown.totals.code)
        return breakdown
