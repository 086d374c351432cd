"""
Error taxonomy for the statistics pipeline.

Every error carries a `kind` (the name recorded in a run report) and a
`transient` flag. Transient errors are retried by the coordinator with
backoff; everything else is recorded as a final failure straight away.
"""


class StatsError(Exception):
    """Base class for all per-project pipeline errors."""
    kind = "StatsError"
    transient = False


class SourceUnavailable(StatsError):
    """Remote could not be reached, or the requested ref does not exist."""
    kind = "SourceUnavailable"
    transient = True


class CorruptWorkingTree(StatsError):
    """Local copy was unusable and re-creating it failed as well."""
    kind = "CorruptWorkingTree"


class AnalyzerUnavailable(StatsError):
    """Line-counting analyzer could not be started."""
    kind = "AnalyzerUnavailable"
    transient = True


class AnalyzerFailed(StatsError):
    """Analyzer exited with a non-zero status."""
    kind = "AnalyzerFailed"


class MalformedReport(StatsError):
    """Analyzer output is not the structured report we expect."""
    kind = "MalformedReport"


class StoreUnavailable(StatsError):
    """Snapshot database could not be opened or queried."""
    kind = "StoreUnavailable"
    transient = True


class ConstraintViolation(StatsError):
    """A storage constraint was violated. Signals a bug, never retried."""
    kind = "ConstraintViolation"


class EmptySnapshot(StatsError):
    """Snapshot has no language metrics, so there is nothing to render."""
    kind = "EmptySnapshot"


class StepTimeout(StatsError):
    """An external subprocess (clone, fetch, analyze) ran past its deadline."""
    kind = "Timeout"
    transient = True


class Cancelled(StatsError):
    """The run was cancelled before this project finished."""
    kind = "Cancelled"


class OutputFailed(StatsError):
    """The rendered card could not be written to the output folder."""
    kind = "OutputFailed"


class RunFailed(StatsError):
    """The run could not start at all (no projects, store unreachable)."""
    kind = "RunFailed"


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, StatsError) and exc.transient
