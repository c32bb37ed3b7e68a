"""
Source-tree discovery: glob matching, binary detection and directory walking.

Glob translation covers ``*`` (within one path segment), ``**`` (across
segments) and ``?``. Brace expansion and character classes are not
supported; those characters match literally.
"""

from __future__ import annotations

import logging
import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Callable, Iterable, Optional

LOG = logging.getLogger("parsers.scanner")

PRINTABLE_THRESHOLD = 0.9
_WHITESPACE_CONTROLS = frozenset("\t\n\r\f\v")
_REPLACEMENT_CHAR = "\ufffd"


@lru_cache(maxsize=256)
def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Compile a path glob into an anchored regex over '/'-separated paths."""
    out: list[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**/", i):
                out.append("(?:.*/)?")
                i += 3
                continue
            if pattern.startswith("**", i):
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("^" + "".join(out) + "$")


def matches_any(rel_path: str, patterns: Iterable[str]) -> bool:
    """True when the relative posix path matches at least one glob."""
    return any(glob_to_regex(p).match(rel_path) for p in patterns)


def is_binary_content(text: str) -> bool:
    """
    Heuristic binary check on decoded text.

    Binary when a NUL is present or fewer than 90% of all characters are
    printable. Ordinary whitespace counts as printable; U+FFFD (left by
    lossy decoding) does not.
    """
    if "\x00" in text:
        return True
    if not text:
        return False
    printable = sum(
        1 for c in text if c in _WHITESPACE_CONTROLS or (c.isprintable() and c != _REPLACEMENT_CHAR)
    )
    return printable / len(text) < PRINTABLE_THRESHOLD


def read_source(path: Path) -> str:
    """Read a file as UTF-8, replacing undecodable bytes."""
    return path.read_bytes().decode("utf-8", errors="replace")


def _excluded_dir(rel_dir: str, exclude_patterns: list[str]) -> bool:
    # directory globs such as "**/build/**" only match paths below the directory
    return matches_any(rel_dir, exclude_patterns) or matches_any(rel_dir + "/", exclude_patterns)


def walk_files(
    root: str | Path,
    include_patterns: Optional[list[str]] = None,
    exclude_patterns: Optional[list[str]] = None,
    accept: Optional[Callable[[Path], bool]] = None,
) -> list[Path]:
    """
    List files under root, sorted by relative path.

    Excluded directories are pruned without descending. A file is kept when it
    matches no exclude pattern, matches an include pattern (or the include
    list is empty) and passes ``accept``. Symlinked directories are not followed.
    """
    root = Path(root)
    include_patterns = include_patterns or []
    exclude_patterns = exclude_patterns or []
    found: list[Path] = []

    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        rel_dir = Path(dirpath).relative_to(root).as_posix()
        prefix = "" if rel_dir == "." else rel_dir + "/"

        dirnames[:] = sorted(d for d in dirnames if not _excluded_dir(prefix + d, exclude_patterns))

        for name in sorted(filenames):
            rel = prefix + name
            if exclude_patterns and matches_any(rel, exclude_patterns):
                continue
            if include_patterns and not matches_any(rel, include_patterns):
                continue
            path = Path(dirpath) / name
            if accept is not None and not accept(path):
                continue
            found.append(path)

    found.sort(key=lambda p: p.relative_to(root).as_posix())
    LOG.debug("Found %d files under %s", len(found), root)
    return found
