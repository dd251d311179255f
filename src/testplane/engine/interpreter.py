"""Turn raw test-runner output into linkable, renderable results.

Pipeline for a log:
1. Normalize CRLF, decode ANSI escapes into HTML spans (rich does the decoding)
2. Find source references (``path/to/file.ext:LINE``) in the text, outside tags
3. Wrap references that resolve to a real file under the project root in an
   "open in editor" link. Anything unresolvable stays plain text.
4. Newlines become ``<br>``

Failure artifacts come from the tester's output folder: an HTML page named
after the test and screenshots located by the tester's artifact strategy.
Missing artifacts are reported as ``None``, never as errors.
"""

from __future__ import annotations

import base64
import html
import io
import re
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import structlog
from rich.console import Console
from rich.text import Text

from testplane.config.models import LinksConfig
from testplane.store.models import ArtifactStrategy, Tester

logger = structlog.get_logger()

EMPTY_LOG = "(empty)"

# Dusk-style failure listing: "1) Tests\Browser\LoginTest::testLogin"
DEFAULT_SCREENSHOT_PATTERN = r"([0-9]\)+\s.+::)(.*)"
DEFAULT_SCREENSHOT_TEMPLATE = "failure-{name}-0.png"

_TAG = re.compile(r"(<[^>]*>)")

# =============================================================================
# ANSI decoding
# =============================================================================


def normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n")


def ansi_to_html(log: str) -> str:
    """Decode ANSI escapes into escaped HTML with inline-styled spans.

    A lone carriage return keeps only what was written after it, the way a
    terminal would show a progress line.
    """
    text = Text.from_ansi(normalize_newlines(log))
    console = Console(
        record=True,
        file=io.StringIO(),
        force_terminal=True,
        color_system="truecolor",
        legacy_windows=False,
    )
    console.print(text, soft_wrap=True, end="")
    return console.export_html(inline_styles=True, code_format="{code}")


def remove_ansi_codes(text: str) -> str:
    """Plain text with every ANSI escape removed."""
    return Text.from_ansi(normalize_newlines(text)).plain


def strip_tags(markup: str) -> str:
    return html.unescape(_TAG.sub("", markup.replace("<br>", "\n")))


def cr_to_br(markup: str) -> str:
    return markup.replace("\n", "<br>")


def render_html(contents: str) -> str:
    """Escape an HTML artifact so it displays as source, one line per row."""
    return html.escape(normalize_newlines(contents)).replace("\n", "<br />\n")


# =============================================================================
# Source references
# =============================================================================


@dataclass(frozen=True)
class SourceReference:
    """A ``file:line`` mention found in a log."""

    text: str
    file: str
    line: str


def find_source_references(markup: str, matcher: re.Pattern[str]) -> list[SourceReference]:
    """All references in the visible text of ``markup``."""
    return [
        SourceReference(text=m.group(0), file=m.group(1), line=m.group(2))
        for m in matcher.finditer(strip_tags(markup))
    ]


def add_project_root_path(file_name: str, project_root: str | Path | None) -> Path:
    """Absolute names are kept; relative names are taken from the project root."""
    if file_name.startswith("/") or not project_root:
        return Path(file_name)
    return Path(project_root) / file_name


class ProjectFileResolver:
    """Resolves referenced file names to real files inside one project."""

    def __init__(self, project_root: str | Path) -> None:
        self.project_root = Path(project_root)
        self._root = self.project_root.resolve()

    def resolve(self, file_name: str) -> Path | None:
        candidate = add_project_root_path(file_name, self.project_root)
        try:
            resolved = candidate.resolve()
        except (OSError, RuntimeError):
            return None
        if not resolved.is_file() or not resolved.is_relative_to(self._root):
            return None
        return resolved


def link_source_references(
    markup: str,
    matcher: re.Pattern[str],
    linker: Callable[[SourceReference], str | None],
) -> str:
    """Replace references in text nodes with whatever ``linker`` returns.

    Tags are never touched and text already inside an anchor is left alone.
    A ``None`` from the linker keeps the original text.
    """
    parts = _TAG.split(markup)
    anchor_depth = 0

    def _replace(match: re.Match[str]) -> str:
        ref = SourceReference(
            text=match.group(0),
            file=html.unescape(match.group(1)),
            line=match.group(2),
        )
        return linker(ref) or match.group(0)

    for i, part in enumerate(parts):
        if i % 2:
            lowered = part.lower()
            if lowered.startswith("<a ") or lowered == "<a>":
                anchor_depth += 1
            elif lowered.startswith("</a"):
                anchor_depth = max(0, anchor_depth - 1)
            continue
        if part and not anchor_depth:
            parts[i] = matcher.sub(_replace, part)
    return "".join(parts)


def encode_file_name(file_name: str) -> str:
    return base64.urlsafe_b64encode(file_name.encode()).decode("ascii")


def decode_file_name(encoded: str) -> str:
    return base64.urlsafe_b64decode(encoded.encode("ascii")).decode()


@dataclass
class LogFormatter:
    """Builds the processed log stored on a run."""

    file_matcher: re.Pattern[str]
    edit_url_template: str

    @classmethod
    def from_config(cls, links: LinksConfig) -> LogFormatter:
        return cls(
            file_matcher=re.compile(links.file_matcher),
            edit_url_template=links.edit_url_template,
        )

    def edit_url(self, file_name: str, suite_id: int, line: str | int = "") -> str:
        return self.edit_url_template.format(
            file=encode_file_name(file_name),
            line=line,
            suite_id=suite_id,
        )

    def format(self, raw_log: str, project_root: str | Path, suite_id: int) -> str:
        if not raw_log:
            return EMPTY_LOG

        markup = ansi_to_html(raw_log)
        if find_source_references(markup, self.file_matcher):
            resolver = ProjectFileResolver(project_root)

            def _link(ref: SourceReference) -> str | None:
                if resolver.resolve(ref.file) is None:
                    return None
                href = html.escape(self.edit_url(ref.file, suite_id, ref.line))
                return f'<a href="{href}" class="file">{ref.text}</a>'

            markup = link_source_references(markup, self.file_matcher, _link)

        return cr_to_br(markup) or EMPTY_LOG


# =============================================================================
# Failure artifacts
# =============================================================================


def artifact_basename(test_name: str) -> str:
    """File name stem a tester uses for a test's artifacts.

    ``Browser/LoginTest.php`` becomes ``BrowserLoginTest``; ``::`` becomes ``.``.
    """
    suffix = Path(test_name).suffix
    stem = test_name[: -len(suffix)] if suffix else test_name
    return stem.replace("::", ".").replace("\\", "").replace("/", "")


def output_file(
    project_root: str | Path,
    output_folder: str | None,
    test_name: str,
    extension: str | None,
) -> Path | None:
    if not output_folder or not extension:
        return None
    return Path(project_root) / output_folder / f"{artifact_basename(test_name)}{extension}"


def read_html_artifact(project_root: str | Path, tester: Tester, test_name: str) -> str | None:
    """Rendered HTML failure page, or None when the tester wrote none."""
    path = output_file(
        project_root, tester.output_folder, test_name, tester.output_html_fail_extension
    )
    if path is None or not path.is_file():
        return None
    try:
        return render_html(path.read_text(errors="replace"))
    except OSError as e:
        logger.warning("html_artifact_unreadable", path=str(path), error=str(e))
        return None


def parse_pattern_screenshots(
    log: str,
    folder: Path,
    pattern: str | None = None,
    template: str | None = None,
) -> list[str] | None:
    """One screenshot per failing case listed in the log."""
    matcher = re.compile(pattern or DEFAULT_SCREENSHOT_PATTERN)
    name_template = template or DEFAULT_SCREENSHOT_TEMPLATE

    result: list[str] = []
    for match in matcher.finditer(remove_ansi_codes(log)):
        name = match.group(2).replace("\r", "").strip()
        if not name:
            continue
        shot = str(folder / name_template.format(name=name))
        if shot not in result:
            result.append(shot)
    return result or None


def find_screenshots(
    project_root: str | Path,
    tester: Tester,
    test_name: str,
    log: str,
) -> list[str] | None:
    """Screenshot paths for a run, dispatched on the tester's artifact strategy."""
    if not tester.output_folder:
        return None

    if tester.artifact_strategy == ArtifactStrategy.PATTERN.value:
        return parse_pattern_screenshots(
            log,
            Path(project_root) / tester.output_folder,
            tester.screenshot_pattern,
            tester.screenshot_template,
        )

    path = output_file(
        project_root, tester.output_folder, test_name, tester.output_png_fail_extension
    )
    if path is None or not path.is_file():
        return None
    return [str(path)]
