"""
Ignore rule resolution for .codeindexignore and .gitignore.

Exactly one rule source is active for a workspace at a time:
1. .codeindexignore at the workspace root, when it has content
2. every .gitignore in the tree, each scoped to its own directory
3. built-in defaults (node_modules, .git, build output, ...)
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Iterable

import pathspec
import structlog
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = structlog.get_logger(__name__)

PRIMARY_IGNORE_FILE = ".codeindexignore"
SECONDARY_IGNORE_FILE = ".gitignore"
IGNORE_FILE_NAMES = frozenset({PRIMARY_IGNORE_FILE, SECONDARY_IGNORE_FILE})

DEFAULT_IGNORE_PATTERNS: tuple[str, ...] = (
    ".git/",
    ".hg/",
    ".svn/",
    "node_modules/",
    "bower_components/",
    "__pycache__/",
    "*.pyc",
    ".venv/",
    "venv/",
    ".tox/",
    "*.egg-info/",
    "dist/",
    "build/",
    "out/",
    "target/",
    "vendor/",
    "coverage/",
    ".next/",
    ".codeindex/",
)


class RuleSource(str, Enum):
    """Where the active rule set came from."""

    PRIMARY = "primary"
    SECONDARY = "secondary-fallback"
    DEFAULT = "default"


@dataclass
class ScopedSpec:
    """Patterns from one ignore file, applied below its directory."""

    base: str  # posix path relative to the workspace root, "" for the root
    spec: pathspec.PathSpec
    source_file: Path | None = None

    def matches(self, rel_path: str, is_dir: bool = False) -> bool:
        if self.base:
            prefix = self.base + "/"
            if not rel_path.startswith(prefix):
                return False
            rel_path = rel_path[len(prefix):]
        if is_dir:
            rel_path = rel_path.rstrip("/") + "/"
        return self.spec.match_file(rel_path)


@dataclass
class IgnoreRuleSet:
    """Ordered, source-tagged ignore rules for one workspace root."""

    source: RuleSource
    specs: list[ScopedSpec] = field(default_factory=list)
    patterns: list[str] = field(default_factory=list)
    content: str | None = None

    def matches(self, rel_path: str, is_dir: bool = False) -> bool:
        return any(s.matches(rel_path, is_dir=is_dir) for s in self.specs)


def parse_ignore_file(path: Path) -> list[str]:
    """
    Parse an ignore file into its effective pattern lines.

    Blank lines and comments are dropped. Raises OSError or
    UnicodeDecodeError when the file cannot be read.
    """
    content = path.read_text(encoding="utf-8")
    return parse_ignore_content(content)


def parse_ignore_content(content: str) -> list[str]:
    """Extract pattern lines from ignore-file text."""
    patterns: list[str] = []
    for line in content.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        patterns.append(stripped)
    return patterns


def _build_spec(patterns: Iterable[str]) -> pathspec.PathSpec:
    return pathspec.GitIgnoreSpec.from_lines(list(patterns))


class IgnoreResolver:
    """
    Decides which workspace paths are eligible for indexing.

    Each reload rebuilds the rule set from scratch. The resolver can watch
    both ignore-file kinds itself; that subscription lives as long as the
    resolver, independent of any indexing services built around it.
    """

    def __init__(self, root: Path) -> None:
        """
        Initialize the resolver.

        Args:
            root: Workspace root directory.
        """
        self.root = Path(root).resolve()
        self._rules = IgnoreRuleSet(source=RuleSource.DEFAULT)
        self._lock = threading.Lock()
        self._observer: Observer | None = None

    @property
    def rules(self) -> IgnoreRuleSet:
        return self._rules

    @property
    def active_source(self) -> RuleSource:
        return self._rules.source

    def reload(self) -> IgnoreRuleSet:
        """Rebuild the active rule set from the ignore files on disk."""
        with self._lock:
            rules = self._load_primary()
            if rules is None:
                rules = self._load_secondary()
            if rules is None:
                rules = IgnoreRuleSet(
                    source=RuleSource.DEFAULT,
                    specs=[ScopedSpec(base="", spec=_build_spec(DEFAULT_IGNORE_PATTERNS))],
                    patterns=list(DEFAULT_IGNORE_PATTERNS),
                )
            self._rules = rules

        logger.info(
            "Ignore rules loaded",
            source=rules.source.value,
            patterns=len(rules.patterns),
        )
        return rules

    def _load_primary(self) -> IgnoreRuleSet | None:
        path = self.root / PRIMARY_IGNORE_FILE
        if not path.is_file():
            return None

        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Failed to read ignore file", path=str(path), error=str(e))
            return None

        if not content.strip():
            return None

        patterns = parse_ignore_content(content) + [f"/{PRIMARY_IGNORE_FILE}"]
        return IgnoreRuleSet(
            source=RuleSource.PRIMARY,
            specs=[ScopedSpec(base="", spec=_build_spec(patterns), source_file=path)],
            patterns=patterns,
            content=content,
        )

    def _load_secondary(self) -> IgnoreRuleSet | None:
        specs = self._collect_secondary_specs()
        if not specs:
            return None

        all_patterns: list[str] = []
        contents: list[str] = []
        for scoped, patterns, content in specs:
            all_patterns.extend(f"{scoped.base}/{p}" if scoped.base else p for p in patterns)
            contents.append(content.strip())

        scoped_specs = [s for s, _, _ in specs]
        scoped_specs.append(ScopedSpec(base="", spec=_build_spec([SECONDARY_IGNORE_FILE])))
        return IgnoreRuleSet(
            source=RuleSource.SECONDARY,
            specs=scoped_specs,
            patterns=all_patterns,
            content="\n".join(contents),
        )

    def _collect_secondary_specs(self) -> list[tuple[ScopedSpec, list[str], str]]:
        """
        Collect .gitignore files breadth-first from the root down.

        Directories excluded by a .gitignore found higher up are not entered,
        and unreadable files are skipped.
        """
        found: list[tuple[ScopedSpec, list[str], str]] = []
        pending = [self.root]

        while pending:
            directory = pending.pop(0)
            candidate = directory / SECONDARY_IGNORE_FILE
            if candidate.is_file():
                try:
                    content = candidate.read_text(encoding="utf-8")
                except (OSError, UnicodeDecodeError) as e:
                    logger.warning("Failed to read ignore file", path=str(candidate), error=str(e))
                    content = ""
                patterns = parse_ignore_content(content)
                if patterns:
                    base = directory.relative_to(self.root).as_posix()
                    base = "" if base == "." else base
                    scoped = ScopedSpec(base=base, spec=_build_spec(patterns), source_file=candidate)
                    found.append((scoped, patterns, content))

            try:
                entries = sorted(os.scandir(directory), key=lambda e: e.name)
            except OSError as e:
                logger.warning("Failed to list directory", path=str(directory), error=str(e))
                continue

            for entry in entries:
                if not entry.is_dir(follow_symlinks=False) or entry.name == ".git":
                    continue
                rel = Path(entry.path).relative_to(self.root).as_posix()
                if any(s.matches(rel, is_dir=True) for s, _, _ in found):
                    continue
                pending.append(Path(entry.path))

        return found

    def _relative(self, path: str | Path) -> str | None:
        """Normalize a path to posix form relative to the root, or None if outside."""
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        try:
            rel = Path(os.path.normpath(candidate)).relative_to(self.root)
        except ValueError:
            return None
        posix = rel.as_posix()
        if posix in ("", "."):
            return None
        return posix

    def is_allowed(self, path: str | Path) -> bool:
        """
        Check whether a path may be indexed.

        Paths outside the workspace root are always allowed.
        """
        rel = self._relative(path)
        if rel is None:
            return True

        rules = self._rules
        parts = PurePosixPath(rel).parts
        for i in range(1, len(parts)):
            if rules.matches("/".join(parts[:i]), is_dir=True):
                return False
        return not rules.matches(rel)

    def is_dir_allowed(self, path: str | Path) -> bool:
        """Check whether a directory may be descended into."""
        rel = self._relative(path)
        if rel is None:
            return True
        return not self._rules.matches(rel, is_dir=True)

    def filter_allowed(self, paths: Iterable[str | Path]) -> list:
        """
        Filter paths down to the allowed ones, preserving order.

        Fails closed: if filtering raises, nothing is allowed.
        """
        try:
            return [p for p in paths if self.is_allowed(p)]
        except Exception as e:
            logger.error("Error filtering paths", error=str(e))
            return []

    def explain(self) -> str | None:
        """Describe the active rules, or None when only defaults apply."""
        rules = self._rules
        if rules.source is RuleSource.PRIMARY:
            return (
                f"# {PRIMARY_IGNORE_FILE}\n\n"
                f"(Patterns from the workspace {PRIMARY_IGNORE_FILE}; matching files "
                f"are excluded from indexing.)\n\n{rules.content}\n{PRIMARY_IGNORE_FILE}"
            )
        if rules.source is RuleSource.SECONDARY:
            return (
                f"# {SECONDARY_IGNORE_FILE} (fallback)\n\n"
                f"(Patterns from {SECONDARY_IGNORE_FILE} since no {PRIMARY_IGNORE_FILE} "
                f"with content was found; matching files are excluded from indexing.)"
                f"\n\n{rules.content}"
            )
        return None

    @staticmethod
    def is_ignore_file(path: str | Path) -> bool:
        return Path(path).name in IGNORE_FILE_NAMES

    def start_watching(self) -> None:
        """Reload rules whenever an ignore file is created, changed or removed."""
        if self._observer is not None:
            return

        self._observer = Observer()
        self._observer.schedule(
            _IgnoreFileHandler(self),
            str(self.root),
            recursive=True,
        )
        self._observer.start()
        logger.debug("Watching ignore files", root=str(self.root))

    def stop_watching(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5.0)
        self._observer = None

    @property
    def is_watching(self) -> bool:
        return self._observer is not None


class _IgnoreFileHandler(FileSystemEventHandler):
    """Triggers a resolver reload on ignore-file events."""

    def __init__(self, resolver: IgnoreResolver) -> None:
        super().__init__()
        self.resolver = resolver

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type in ("opened", "closed", "closed_no_write"):
            return
        paths = [event.src_path, getattr(event, "dest_path", "") or ""]
        if any(p and IgnoreResolver.is_ignore_file(p) for p in paths):
            self.resolver.reload()
