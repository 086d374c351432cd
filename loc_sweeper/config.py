"""
Runtime settings. Command-line flags win; environment variables fill the gaps.
"""
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .cloc import DEFAULT_ANALYZE_TIMEOUT
from .store import DEFAULT_DB_URL
from .workspace import DEFAULT_GIT_TIMEOUT


def default_temp_folder() -> Path:
    return Path(tempfile.gettempdir()) / "loc-sweeper"


@dataclass
class Settings:
    db_url: str = DEFAULT_DB_URL
    svg_folder: Path = Path("svg")
    temp_folder: Path = default_temp_folder()
    workers: int = 4
    clone_timeout: float = DEFAULT_GIT_TIMEOUT
    analyze_timeout: float = DEFAULT_ANALYZE_TIMEOUT
    max_attempts: int = 3
    retry_backoff: float = 2.0
    keep_trees: bool = True
    cloc: str = "cloc"
    token_env: str = "TOKEN"

    def __post_init__(self):
        self.svg_folder = Path(self.svg_folder)
        self.temp_folder = Path(self.temp_folder)
        if self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.clone_timeout <= 0 or self.analyze_timeout <= 0:
            raise ValueError("timeouts must be positive")
        if self.retry_backoff < 0:
            raise ValueError("retry_backoff must not be negative")

    @property
    def token(self) -> Optional[str]:
        return os.environ.get(self.token_env)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **overrides) -> "Settings":
        """
        Build settings from `env` (default: os.environ). Keyword overrides
        that are None are ignored, so argparse results can be passed straight in.

        Recognized variables: DB_URL, SVG_FOLDER, TEMP_FOLDER, WORKERS,
        CLONE_TIMEOUT, ANALYZE_TIMEOUT, MAX_ATTEMPTS, RETRY_BACKOFF, KEEP_TREES, CLOC.
        """
        env = os.environ if env is None else env
        values = {}
        for key, conv in (
            ("db_url", str),
            ("svg_folder", Path),
            ("temp_folder", Path),
            ("workers", int),
            ("clone_timeout", float),
            ("analyze_timeout", float),
            ("max_attempts", int),
            ("retry_backoff", float),
            ("cloc", str),
        ):
            raw = env.get(key.upper())
            if raw:
                try:
                    values[key] = conv(raw)
                except ValueError as exc:
                    raise ValueError(f"invalid {key.upper()}={raw!r}: {exc}") from exc
        keep = env.get("KEEP_TREES")
        if keep:
            values["keep_trees"] = keep.lower() not in ("0", "false", "no")
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
