"""Rewrite the supervisor configuration generated by ``bench setup supervisor``.

The generated file runs the web process under gunicorn. Inside the container
we want ``bench serve`` instead, so the ``[program:<bench>-frappe-web]``
section is rewritten: ``command=`` and ``directory=`` get new values and any
gunicorn-specific lines are commented out. Every other line passes through
untouched.

The rewrite is a single pass over the lines with two states (inside or outside
the target section). Each line is classified first and rendered second, which
keeps the decision auditable without touching the filesystem.
"""
from __future__ import annotations

import os
import re
import tempfile
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

COMMENT_PREFIX = "# (gunicorn setting disabled by benchops) "

DEFAULT_COMMENT_PATTERNS: tuple[str, ...] = (
    r"gunicorn",
    r"frappe\.app:application",
    r"--preload",
    r"^-w\s+[0-9]+",
    r"^-b\s+[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}:[0-9]+",
)

_SECTION_START = re.compile(r"^\s*\[")


class SupervisorConfigError(RuntimeError):
    """Raised when the supervisor configuration cannot be rewritten."""


class LineAction(Enum):
    """What the rewrite did to a line."""

    UNCHANGED = "unchanged"
    REPLACED = "replaced"
    COMMENTED = "commented"


@dataclass(frozen=True, slots=True)
class RewrittenLine:
    """A single classified line."""

    number: int
    original: str
    text: str
    action: LineAction


@dataclass(frozen=True)
class SectionRewrite:
    """Substitutions applied only inside one named section.

    ``replacements`` maps a key prefix (``"command="``) to the full line that
    replaces any line starting with it.
    """

    section: str
    replacements: Mapping[str, str]
    comment_patterns: tuple[str, ...] = DEFAULT_COMMENT_PATTERNS
    comment_prefix: str = COMMENT_PREFIX
    _compiled: tuple[re.Pattern[str], ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        """Compile the comment patterns once."""
        object.__setattr__(
            self,
            "_compiled",
            tuple(re.compile(pattern) for pattern in self.comment_patterns),
        )

    @property
    def header(self) -> str:
        """Return the literal header token, e.g. ``[program:x]``."""
        return f"[{self.section}]"

    def is_header(self, line: str) -> bool:
        """Return True when *line* opens the target section."""
        return self.header in line

    def replacement_for(self, line: str) -> str | None:
        """Return the replacement for *line*, if its key is being substituted."""
        for key, replacement in self.replacements.items():
            if line.startswith(key):
                return replacement
        return None

    def should_comment(self, line: str) -> bool:
        """Return True when *line* matches a flagged pattern."""
        return any(pattern.search(line) for pattern in self._compiled)


@dataclass(slots=True)
class RewriteReport:
    """Summary of a file rewrite."""

    path: Path
    section_found: bool
    lines: list[RewrittenLine]
    written: bool = False

    @property
    def counts(self) -> dict[str, int]:
        """Return the number of lines per action."""
        tally = Counter(line.action for line in self.lines)
        return {action.value: tally.get(action, 0) for action in LineAction}

    @property
    def changed(self) -> bool:
        """Return True when any line differs from the input."""
        return any(line.action is not LineAction.UNCHANGED for line in self.lines)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "path": str(self.path),
            "section_found": self.section_found,
            "changed": self.changed,
            "written": self.written,
            "counts": self.counts,
            "edits": [
                {
                    "line": line.number,
                    "action": line.action.value,
                    "before": line.original,
                    "after": line.text,
                }
                for line in self.lines
                if line.action is not LineAction.UNCHANGED
            ],
        }


def web_program_rewrite(
    program: str,
    *,
    bench_bin: str,
    bench_dir: Path,
    port: int,
) -> SectionRewrite:
    """Return the rule that swaps gunicorn for ``bench serve`` in *program*."""
    return SectionRewrite(
        section=f"program:{program}",
        replacements={
            "command=": f"command={bench_bin} serve --port {port}",
            "directory=": f"directory={bench_dir}",
        },
    )


def classify_lines(lines: Iterable[str], rule: SectionRewrite) -> list[RewrittenLine]:
    """Classify each line (without newline) against *rule*."""
    result: list[RewrittenLine] = []
    inside = False
    for number, line in enumerate(lines, start=1):
        if rule.is_header(line):
            inside = True
            result.append(RewrittenLine(number, line, line, LineAction.UNCHANGED))
            continue
        if inside and _SECTION_START.match(line):
            inside = False
        if not inside or line.startswith(rule.comment_prefix):
            result.append(RewrittenLine(number, line, line, LineAction.UNCHANGED))
            continue

        replacement = rule.replacement_for(line)
        if replacement is not None:
            result.append(RewrittenLine(number, line, replacement, LineAction.REPLACED))
        elif rule.should_comment(line):
            commented = f"{rule.comment_prefix}{line}"
            result.append(RewrittenLine(number, line, commented, LineAction.COMMENTED))
        else:
            result.append(RewrittenLine(number, line, line, LineAction.UNCHANGED))
    return result


def split_lines(text: str) -> tuple[list[str], list[str]]:
    """Split *text* on ``\\n`` only, returning line bodies and their endings.

    ``\\r\\n`` endings are kept apart from the body; every other character,
    including form feeds and vertical tabs, stays inside its line.
    """
    parts = text.split("\n")
    tail = parts.pop()
    bodies: list[str] = []
    endings: list[str] = []
    for part in parts:
        if part.endswith("\r"):
            bodies.append(part[:-1])
            endings.append("\r\n")
        else:
            bodies.append(part)
            endings.append("\n")
    if tail:
        bodies.append(tail)
        endings.append("")
    return bodies, endings


def render_lines(lines: Sequence[RewrittenLine], endings: Sequence[str]) -> str:
    """Join classified lines back into file content with their original endings."""
    return "".join(f"{line.text}{ending}" for line, ending in zip(lines, endings, strict=True))


def rewrite_text(text: str, rule: SectionRewrite) -> tuple[str, list[RewrittenLine]]:
    """Rewrite *text* and return the new content alongside the classification."""
    bodies, endings = split_lines(text)
    lines = classify_lines(bodies, rule)
    return render_lines(lines, endings), lines


def rewrite_file(path: Path, rule: SectionRewrite, *, dry_run: bool = False) -> RewriteReport:
    """Rewrite *path* in place (atomically) according to *rule*."""
    if not path.is_file():
        raise SupervisorConfigError(f"Supervisor config {path} does not exist.")
    try:
        with path.open(encoding="utf-8", newline="") as handle:
            original = handle.read()
    except OSError as exc:
        raise SupervisorConfigError(f"Failed to read {path}: {exc}") from exc

    content, lines = rewrite_text(original, rule)
    section_found = any(rule.is_header(line.original) for line in lines)
    report = RewriteReport(path=path, section_found=section_found, lines=lines)
    if not section_found:
        raise SupervisorConfigError(f"Section {rule.header} not found in {path}.")
    if dry_run or content == original:
        return report

    _atomic_write(path, content)
    report.written = True
    return report


def link_config(source: Path, link: Path) -> None:
    """Point *link* (e.g. ``/etc/supervisor/conf.d/frappe-bench.conf``) at *source*."""
    try:
        link.parent.mkdir(parents=True, exist_ok=True)
        if link.is_symlink() or link.exists():
            link.unlink()
        link.symlink_to(source)
    except OSError as exc:
        raise SupervisorConfigError(f"Failed to link {link} -> {source}: {exc}") from exc


def _atomic_write(path: Path, content: str) -> None:
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        mode = path.stat().st_mode & 0o777
        with os.fdopen(tmp_fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(content)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except OSError as exc:
        raise SupervisorConfigError(f"Failed to write {path}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = [
    "COMMENT_PREFIX",
    "DEFAULT_COMMENT_PATTERNS",
    "LineAction",
    "RewriteReport",
    "RewrittenLine",
    "SectionRewrite",
    "SupervisorConfigError",
    "classify_lines",
    "link_config",
    "render_lines",
    "rewrite_file",
    "rewrite_text",
    "split_lines",
    "web_program_rewrite",
]
