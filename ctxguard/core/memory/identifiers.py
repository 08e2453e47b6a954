"""Identifier matchers for restorable compression.

Each family (file paths, URLs, tool-call IDs) has its own pure matcher
so they can be tested and combined independently.
"""

from __future__ import annotations

import re

SOURCE_EXTENSIONS = frozenset({
    "py", "pyi", "ts", "tsx", "js", "jsx", "mjs", "cjs",
    "go", "rs", "java", "kt", "rb", "php", "swift", "cs",
    "c", "h", "cpp", "hpp", "cc",
    "sh", "sql", "html", "css", "scss", "vue",
    "json", "yaml", "yml", "toml", "md",
})

TOOL_CALL_PREFIXES = ("call_", "toolu_")

_EXT_ALTERNATION = "|".join(sorted(SOURCE_EXTENSIONS, key=len, reverse=True))

URL_PATTERN = re.compile(r"https?://[^\s<>\"'`)\]]+")
FILE_PATH_PATTERN = re.compile(
    rf"(?<![\w@/.~-])((?:~|\.{{1,2}})?/?(?:[\w.-]+/)*[\w.-]*\w\.(?:{_EXT_ALTERNATION}))"
    r"(:\d+(?:-\d+)?)?(?!\w)"
)
TOOL_CALL_ID_PATTERN = re.compile(
    r"\b(?:" + "|".join(re.escape(p) for p in TOOL_CALL_PREFIXES) + r")[A-Za-z0-9]+\b"
)
_LINE_RANGE_SUFFIX = re.compile(r":\d+(?:-\d+)?$")
_URL_TRAILING_PUNCT = ".,;:!?"


def extract_urls(text: str) -> list[str]:
    """http(s) URLs in order of appearance, trailing punctuation removed."""
    return _unique(m.group(0).rstrip(_URL_TRAILING_PUNCT) for m in URL_PATTERN.finditer(text))


def extract_file_paths(text: str) -> list[str]:
    """Source file paths, keeping an optional :start-end line range."""
    text = URL_PATTERN.sub(" ", text)
    return _unique(m.group(1) + (m.group(2) or "") for m in FILE_PATH_PATTERN.finditer(text))


def extract_tool_call_ids(text: str) -> list[str]:
    text = URL_PATTERN.sub(" ", text)
    return _unique(m.group(0) for m in TOOL_CALL_ID_PATTERN.finditer(text))


def extract_identifiers(text: str) -> list[str]:
    """All identifiers in a message: file paths, then URLs, then tool-call IDs."""
    return _unique([
        *extract_file_paths(text),
        *extract_urls(text),
        *extract_tool_call_ids(text),
    ])


def is_url(identifier: str) -> bool:
    return identifier.startswith(("http://", "https://"))


def is_tool_call_id(identifier: str) -> bool:
    return TOOL_CALL_ID_PATTERN.fullmatch(identifier) is not None


def strip_line_range(identifier: str) -> str:
    """Drop a trailing :start-end suffix (URLs are left alone)."""
    if is_url(identifier):
        return identifier
    return _LINE_RANGE_SUFFIX.sub("", identifier)


def _unique(items) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            result.append(item)
    return result
