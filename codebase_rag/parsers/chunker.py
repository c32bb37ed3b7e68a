"""
Source chunking: split a file into CodeChunk records.

The Chunker interface is the seam the index depends on; LineChunker is the
default implementation. It recognizes definition headers with per-language
regexes (no parser dependency), cuts the file at each header, and annotates
every chunk with name, signature, docstring, is_async and is_public. Oversized
chunks are split into fixed-size line windows.

Files whose language is "text" are never chunked.
"""

from __future__ import annotations

import hashlib
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import PurePath
from typing import Dict, List, Optional, Pattern, Tuple

from codebase_rag.rag.models import ChunkType, CodeChunk

LOG = logging.getLogger("parsers.chunker")

TEXT_LANGUAGE = "text"
DEFAULT_MAX_LINES = 60
MAX_SIGNATURE_CHARS = 200

_EXTENSION_LANGUAGE_MAP: Dict[str, str] = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".java": "java",
    ".kt": "kotlin",
    ".rs": "rust",
    ".go": "go",
    ".rb": "ruby",
    ".cs": "csharp",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".hpp": "cpp",
    ".c": "c",
    ".h": "c",
    ".swift": "swift",
    ".php": "php",
    ".scala": "scala",
}


def detect_language(file_path: str) -> str:
    """Language tag from the file extension, or "text" when unknown."""
    return _EXTENSION_LANGUAGE_MAP.get(PurePath(file_path).suffix.lower(), TEXT_LANGUAGE)


class Chunker(ABC):
    """Abstract interface for file -> chunks."""

    @abstractmethod
    def chunk_file(self, content: str, file_path: str) -> List[CodeChunk]:
        """Split file content into chunks. Returns [] for unsupported files."""

    def detect_language(self, file_path: str) -> str:
        return detect_language(file_path)


# Each rule: (regex, chunk type, name group). The "async" group, when present
# and matched, marks the definition async.
_Rule = Tuple[Pattern[str], ChunkType, str]

_JS_RULES: List[_Rule] = [
    (re.compile(r"^\s*(?:export\s+)?(?:default\s+)?(?P<async>async\s+)?function\*?\s+(?P<name>\w+)"), ChunkType.FUNCTION, "name"),
    (re.compile(r"^\s*(?:export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+(?P<name>\w+)"), ChunkType.CLASS, "name"),
    (
        re.compile(r"^\s*(?:export\s+)?(?:const|let|var)\s+(?P<name>\w+)\s*=\s*(?P<async>async\s+)?(?:\([^)]*\)|\w+)\s*=>"),
        ChunkType.FUNCTION,
        "name",
    ),
]
_TS_RULES: List[_Rule] = _JS_RULES + [
    (re.compile(r"^\s*(?:export\s+)?interface\s+(?P<name>\w+)"), ChunkType.INTERFACE, "name"),
    (re.compile(r"^\s*(?:export\s+)?type\s+(?P<name>\w+)\s*(?:<[^>]*>)?\s*="), ChunkType.TYPE, "name"),
]
_JVM_MODIFIERS = r"(?:(?:public|private|protected|internal|static|final|abstract|sealed|open|override|data|async|virtual|partial)\s+)*"

_RULES: Dict[str, List[_Rule]] = {
    "python": [
        (re.compile(r"^\s*(?P<async>async\s+)?def\s+(?P<name>\w+)\s*\("), ChunkType.FUNCTION, "name"),
        (re.compile(r"^\s*class\s+(?P<name>\w+)"), ChunkType.CLASS, "name"),
    ],
    "javascript": _JS_RULES,
    "typescript": _TS_RULES,
    "go": [
        (re.compile(r"^func\s+(?:\([^)]*\)\s*)?(?P<name>\w+)\s*[\[(]"), ChunkType.FUNCTION, "name"),
        (re.compile(r"^type\s+(?P<name>\w+)\s+interface\b"), ChunkType.INTERFACE, "name"),
        (re.compile(r"^type\s+(?P<name>\w+)\s+struct\b"), ChunkType.CLASS, "name"),
    ],
    "rust": [
        (re.compile(r"^\s*(?:pub(?:\([^)]*\))?\s+)?(?P<async>async\s+)?(?:unsafe\s+)?fn\s+(?P<name>\w+)"), ChunkType.FUNCTION, "name"),
        (re.compile(r"^\s*(?:pub(?:\([^)]*\))?\s+)?(?:struct|enum)\s+(?P<name>\w+)"), ChunkType.CLASS, "name"),
        (re.compile(r"^\s*(?:pub(?:\([^)]*\))?\s+)?trait\s+(?P<name>\w+)"), ChunkType.INTERFACE, "name"),
        (re.compile(r"^\s*impl(?:<[^>]*>)?\s+(?:\w+\s+for\s+)?(?P<name>\w+)"), ChunkType.CLASS, "name"),
    ],
    "ruby": [
        (re.compile(r"^\s*def\s+(?:self\.)?(?P<name>\w+[?!=]?)"), ChunkType.FUNCTION, "name"),
        (re.compile(r"^\s*(?:class|module)\s+(?P<name>[\w:]+)"), ChunkType.CLASS, "name"),
    ],
}
for _lang in ("java", "kotlin", "csharp", "scala", "swift", "php"):
    _RULES[_lang] = [
        (re.compile(rf"^\s*{_JVM_MODIFIERS}(?:class|object|struct|enum|record)\s+(?P<name>\w+)"), ChunkType.CLASS, "name"),
        (re.compile(rf"^\s*{_JVM_MODIFIERS}(?:interface|protocol|trait)\s+(?P<name>\w+)"), ChunkType.INTERFACE, "name"),
        (
            re.compile(rf"^\s*{_JVM_MODIFIERS}(?:fun|func|def|function)\s+(?:<[^>]*>\s*)?(?P<name>\w+)\s*[<(]"),
            ChunkType.FUNCTION,
            "name",
        ),
        (
            re.compile(
                r"^\s*(?:public|private|protected|internal)\s+(?:static\s+|final\s+|abstract\s+|override\s+|(?P<async>async)\s+|virtual\s+)*"
                r"[\w<>\[\],.?]+\s+(?P<name>\w+)\s*\("
            ),
            ChunkType.FUNCTION,
            "name",
        ),
    ]
for _lang in ("c", "cpp"):
    _RULES[_lang] = [
        (re.compile(r"^(?:class|struct)\s+(?P<name>\w+)[^;]*$"), ChunkType.CLASS, "name"),
        (
            re.compile(r"^(?!\s)(?!(?:if|for|while|switch|return|else)\b)[\w:*&<>,\s]+?\b(?P<name>~?\w+)\s*\([^;]*$"),
            ChunkType.FUNCTION,
            "name",
        ),
    ]

_KEYWORD_NAMES = frozenset({"if", "for", "while", "switch", "return", "catch", "new", "else"})


@dataclass
class _Definition:
    line: int  # 0-based
    type: ChunkType
    name: str
    is_async: bool
    indent: int


def _indent_of(line: str) -> int:
    expanded = line.expandtabs(4)
    return len(expanded) - len(expanded.lstrip(" "))


def _is_public(language: str, name: str, header: str) -> bool:
    if language == "python":
        return not name.startswith("_")
    if language == "go":
        return name[:1].isupper()
    if language == "rust":
        return header.lstrip().startswith("pub")
    if language in ("javascript", "typescript"):
        return not name.startswith(("_", "#")) and "private " not in header
    return "private " not in header and not name.startswith("_")


def _signature(header: str) -> str:
    sig = header.strip().rstrip("{").rstrip(":").strip()
    return sig[:MAX_SIGNATURE_CHARS]


def _python_docstring(lines: List[str], start: int, end: int) -> Optional[str]:
    """First string literal after the (possibly multi-line) def/class header."""
    i = start
    while i < end and not lines[i].rstrip().endswith(":"):
        i += 1
    i += 1
    while i < end and not lines[i].strip():
        i += 1
    if i >= end:
        return None
    first = lines[i].strip()
    for quote in ('"""', "'''"):
        if first.startswith(quote):
            body = first[3:]
            if quote in body:
                return body.split(quote, 1)[0].strip() or None
            parts = [body]
            for j in range(i + 1, end):
                if quote in lines[j]:
                    parts.append(lines[j].split(quote, 1)[0])
                    return "\n".join(p.strip() for p in parts).strip() or None
                parts.append(lines[j])
            return None
    return None


_COMMENT_PREFIXES = ("///", "//!", "//", "/**", "/*", "*/", "*", "#")


def _leading_comment(lines: List[str], start: int) -> Optional[str]:
    """Contiguous comment block directly above a definition (decorators skipped)."""
    i = start - 1
    while i >= 0 and lines[i].strip().startswith("@"):
        i -= 1
    collected: List[str] = []
    while i >= 0:
        stripped = lines[i].strip()
        if not stripped or not stripped.startswith(_COMMENT_PREFIXES) or stripped.startswith("#!"):
            break
        for prefix in _COMMENT_PREFIXES:
            if stripped.startswith(prefix):
                stripped = stripped[len(prefix):]
                break
        collected.append(stripped.rstrip("*/").strip())
        i -= 1
    text = "\n".join(reversed([c for c in collected if c]))
    return text or None


def _chunk_id(file_path: str, start_line: int, end_line: int, content: str) -> str:
    digest = hashlib.sha1(f"{file_path}:{start_line}:{end_line}:{content}".encode("utf-8")).hexdigest()
    return digest[:20]


class LineChunker(Chunker):
    """
    Regex definition chunker with a line-window fallback.

    Usage::

        chunker = LineChunker(max_lines=60)
        chunks = chunker.chunk_file(source_text, "src/app.py")
    """

    def __init__(self, max_lines: int = DEFAULT_MAX_LINES) -> None:
        if max_lines < 1:
            raise ValueError(f"max_lines must be positive, got {max_lines}")
        self.max_lines = max_lines

    def _find_definitions(self, lines: List[str], language: str) -> List[_Definition]:
        rules = _RULES.get(language, [])
        found: List[_Definition] = []
        class_indents: List[int] = []
        for idx, line in enumerate(lines):
            if not line.strip():
                continue
            for pattern, chunk_type, group in rules:
                m = pattern.match(line)
                if m is None:
                    continue
                name = m.group(group)
                if name in _KEYWORD_NAMES:
                    break
                indent = _indent_of(line)
                while class_indents and class_indents[-1] >= indent:
                    class_indents.pop()
                is_async = bool(m.groupdict().get("async"))
                if chunk_type is ChunkType.FUNCTION and class_indents:
                    chunk_type = ChunkType.METHOD
                if chunk_type in (ChunkType.CLASS, ChunkType.INTERFACE):
                    class_indents.append(indent)
                found.append(_Definition(idx, chunk_type, name, is_async, indent))
                break
        return found

    def _windows(
        self,
        lines: List[str],
        start: int,
        end: int,
        chunk_type: ChunkType,
        metadata: Dict,
        file_path: str,
        language: str,
    ) -> List[CodeChunk]:
        chunks: List[CodeChunk] = []
        part = 0
        for w_start in range(start, end, self.max_lines):
            w_end = min(w_start + self.max_lines, end)
            content = "\n".join(lines[w_start:w_end])
            if not content.strip():
                continue
            meta = dict(metadata)
            if end - start > self.max_lines:
                meta["part"] = part
            part += 1
            chunks.append(
                CodeChunk(
                    id=_chunk_id(file_path, w_start + 1, w_end, content),
                    content=content,
                    file_path=file_path,
                    start_line=w_start + 1,
                    end_line=w_end,
                    type=chunk_type if part == 1 else ChunkType.BLOCK,
                    language=language,
                    metadata=meta,
                )
            )
        return chunks

    def chunk_file(self, content: str, file_path: str) -> List[CodeChunk]:
        language = self.detect_language(file_path)
        if language == TEXT_LANGUAGE or not content.strip():
            return []

        lines = content.split("\n")
        while lines and not lines[-1].strip():
            lines.pop()
        definitions = self._find_definitions(lines, language)

        if not definitions:
            return self._windows(lines, 0, len(lines), ChunkType.BLOCK, {}, file_path, language)

        chunks: List[CodeChunk] = []
        # decorators belong to the definition below them
        starts = []
        for d in definitions:
            s = d.line
            while s > 0 and lines[s - 1].strip().startswith("@"):
                s -= 1
            starts.append(s)

        if starts[0] > 0:
            chunks.extend(self._windows(lines, 0, starts[0], ChunkType.MODULE, {}, file_path, language))

        for i, d in enumerate(definitions):
            start = starts[i]
            end = starts[i + 1] if i + 1 < len(definitions) else len(lines)
            while end > start + 1 and not lines[end - 1].strip():
                end -= 1
            header = lines[d.line]
            if language == "python":
                doc = _python_docstring(lines, d.line, end)
            else:
                doc = _leading_comment(lines, start)
            metadata = {
                "name": d.name,
                "signature": _signature(header),
                "docstring": doc,
                "is_async": d.is_async,
                "is_public": _is_public(language, d.name, header),
            }
            chunks.extend(self._windows(lines, start, end, d.type, metadata, file_path, language))

        LOG.debug("Chunked %s into %d chunks (%d definitions)", file_path, len(chunks), len(definitions))
        return chunks
