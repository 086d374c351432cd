"""
Renders a snapshot into a self-contained SVG card and writes it atomically.

Rendering is a pure function of (project, snapshot): no clock, no randomness,
fixed number formatting. The same inputs always produce the same bytes, so
the web server in front of the output folder can cache freely.
"""
import contextlib
import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from jinja2 import Template

from .errors import EmptySnapshot
from .models import LanguageMetric, Project, StatSnapshot, sum_metrics

logger = logging.getLogger(__name__)

OTHER_LABEL = "Other languages"
OTHER_COLOR = "#9ca3af"

# Slot order is part of the output format: reordering recolors every card.
PALETTE = (
    "#1f6feb",
    "#06b6d4",
    "#16a34a",
    "#f59e0b",
    "#dc2626",
    "#9333ea",
    "#db2777",
    "#0d9488",
    "#65a30d",
    "#ea580c",
    "#4f46e5",
    "#a16207",
)

DEFAULT_WIDTH = 480
DEFAULT_MAX_ROWS = 8
DEFAULT_OTHER_THRESHOLD = 0.01

# ---------------------------
# Jinja2 template (embedded)
# ---------------------------
CARD_SVG_TEMPLATE = """<svg xmlns="http://www.w3.org/2000/svg" width="{{ width }}" height="{{ height }}" viewBox="0 0 {{ width }} {{ height }}" role="img" aria-label="Code statistics for {{ title|e }}">
<style>
  .card  { font-family: "Segoe UI", Roboto, "Helvetica Neue", Arial, sans-serif; }
  .title { font-weight: 700; font-size: 16px; fill: #0b1220; }
  .meta  { font-weight: 400; font-size: 12px; fill: #374151; opacity: 0.95; }
  .lang  { font-weight: 600; font-size: 12px; fill: #0b1220; }
  .count { font-weight: 400; font-size: 11px; fill: #6b7280; text-anchor: end; }
  .bar-bg { fill: #e5e7eb; }
  @media (prefers-color-scheme: dark) {
    .title, .meta, .lang, .count { fill: #ffffff; }
    .bar-bg { fill: #1f2937; }
  }
</style>
<rect x="0" y="0" width="{{ width }}" height="{{ height }}" rx="12" fill="transparent"/>
<text x="{{ padding }}" y="30" class="title card">Stats for {{ title|e }}</text>
<text x="{{ padding }}" y="50" class="meta card">{{ subheader|e }}</text>
{% for row in rows %}
{% set top = header_h + loop.index0 * row_h %}
<g id="row-{{ loop.index0 }}">
  <text x="{{ padding }}" y="{{ top + 12 }}" class="lang card">{{ row.language|e }} <tspan class="count">{{ row.share }}</tspan></text>
  <text x="{{ width - padding }}" y="{{ top + 12 }}" class="count card">{{ row.code }} code · {{ row.comment }} comment · {{ row.blank }} blank</text>
  <rect x="{{ padding }}" y="{{ top + 17 }}" width="{{ row_w }}" height="{{ bar_h }}" rx="3" class="bar-bg"/>
  <rect x="{{ padding }}" y="{{ top + 17 }}" width="{{ row.bar_w }}" height="{{ bar_h }}" rx="3" fill="{{ row.color }}"/>
</g>
{% endfor %}
</svg>
"""


def render_template(template_str: str, ctx: dict) -> str:
    tpl = Template(template_str)
    return tpl.render(**ctx)


def color_for(language: str, palette: Sequence[str] = PALETTE) -> str:
    """Stable palette slot for a language name, independent of row position or run."""
    digest = hashlib.sha1(language.encode("utf-8")).digest()
    return palette[int.from_bytes(digest[:4], "big") % len(palette)]


def group_long_tail(metrics: Sequence[LanguageMetric],
                    threshold: float = DEFAULT_OTHER_THRESHOLD,
                    max_rows: int = DEFAULT_MAX_ROWS) -> Tuple[Tuple[LanguageMetric, ...], Optional[LanguageMetric]]:
    """
    Fold small languages into a single "other" bucket.

    Returns the languages that keep their own row and the summed bucket
    (None when nothing was folded). The bucket is returned separately so a
    language that happens to share its label is never mistaken for it.

    A language goes to "other" when its share of all code lines is strictly
    below `threshold`, or when it would push the card past `max_rows` rows.
    `metrics` must already be ordered by descending code lines.
    """
    if max_rows < 1:
        raise ValueError("max_rows must be at least 1")
    total = sum(m.code for m in metrics)
    kept: List[LanguageMetric] = []
    tail: List[LanguageMetric] = []
    for m in metrics:
        if total and m.code / total < threshold:
            tail.append(m)
        else:
            kept.append(m)
    if len(kept) + (1 if tail else 0) > max_rows:
        tail = kept[max_rows - 1:] + tail
        kept = kept[:max_rows - 1]
    other = sum_metrics(tail, OTHER_LABEL) if tail else None
    return tuple(kept), other


@dataclass(frozen=True)
class RenderRow:
    language: str
    code: str
    comment: str
    blank: str
    share: str
    bar_w: str
    color: str


@dataclass(frozen=True)
class RenderSpec:
    """Everything the template needs, derived from one snapshot. Never persisted."""
    title: str
    subheader: str
    rows: Tuple[RenderRow, ...]
    palette_assignment: Dict[str, str] = field(default_factory=dict)


class SvgRenderer:
    """Fixed-layout card: one row per language, bars scaled to the largest row."""

    padding = 18
    header_h = 64
    row_h = 30
    bar_h = 6

    def __init__(self,
                 width: int = DEFAULT_WIDTH,
                 max_rows: int = DEFAULT_MAX_ROWS,
                 other_threshold: float = DEFAULT_OTHER_THRESHOLD,
                 palette: Sequence[str] = PALETTE):
        if max_rows < 1:
            raise ValueError("max_rows must be at least 1")
        if not palette:
            raise ValueError("palette must not be empty")
        self.width = width
        self.max_rows = max_rows
        self.other_threshold = other_threshold
        self.palette = tuple(palette)

    @property
    def row_width(self) -> int:
        return self.width - 2 * self.padding

    def build_spec(self, project: Project, snapshot: StatSnapshot) -> RenderSpec:
        if not snapshot.metrics:
            raise EmptySnapshot(f"snapshot {snapshot.id} of {project.slug} has no languages")

        kept, other = group_long_tail(snapshot.metrics, self.other_threshold, self.max_rows)
        drawn = [(m, color_for(m.language, self.palette)) for m in kept]
        if other is not None:
            drawn.append((other, OTHER_COLOR))
        total_code = snapshot.totals.code
        # scale to the widest drawn row; "other" may outgrow every single language
        max_code = max(m.code for m, _ in drawn)

        rows = []
        # languages only; the bucket is not a language and has its fixed colour
        assignment = {m.language: color for m, color in drawn[:len(kept)]}
        for m, color in drawn:
            bar_w = m.code / max_code * self.row_width if max_code else 0.0
            share = m.code / total_code * 100 if total_code else 0.0
            rows.append(RenderRow(
                language=m.language,
                code=f"{m.code:,}",
                comment=f"{m.comment:,}",
                blank=f"{m.blank:,}",
                share=f"{share:.1f}%",
                bar_w=f"{bar_w:.2f}",
                color=color,
            ))

        subheader = (f"{snapshot.totals.code:,} lines of code in {snapshot.totals.files:,} files"
                     f" · {snapshot.short_hash} · {snapshot.captured_at:%Y-%m-%d}")
        return RenderSpec(
            title=project.display_title,
            subheader=subheader,
            rows=tuple(rows),
            palette_assignment=assignment,
        )

    def render(self, project: Project, snapshot: StatSnapshot) -> bytes:
        """
        Render `snapshot` as SVG bytes.

        Raises:
            EmptySnapshot: the snapshot has no language metrics
        """
        spec = self.build_spec(project, snapshot)
        ctx = {
            "title": spec.title,
            "subheader": spec.subheader,
            "rows": spec.rows,
            "width": self.width,
            "height": self.header_h + len(spec.rows) * self.row_h + self.padding,
            "padding": self.padding,
            "header_h": self.header_h,
            "row_h": self.row_h,
            "row_w": self.row_width,
            "bar_h": self.bar_h,
        }
        return render_template(CARD_SVG_TEMPLATE, ctx).encode("utf-8")


# ---------------------------
# Output sink
# ---------------------------
def output_path(output_dir: Union[str, Path], project: Project) -> Path:
    """Deterministic location of a project's card: {output_dir}/{owner}/{name}.svg"""
    return Path(output_dir) / project.owner / f"{project.name}.svg"


def write_svg(output_dir: Union[str, Path], project: Project, data: bytes) -> Path:
    """
    Write `data` to the project's card path without ever exposing a partial file.

    The bytes go to a temporary file in the same directory, are fsynced, then
    renamed over the target (rename is atomic within one filesystem).
    """
    target = output_path(output_dir, project)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{project.name}.", suffix=".svg.tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        # mkstemp creates 0600; the static server needs to read it
        os.chmod(tmp, 0o644)
        os.replace(tmp, target)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp)
        raise
    logger.info("Wrote %s", target)
    return target
