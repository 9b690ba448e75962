"""
Source text helpers shared by the pattern library, the analyzers and the cache.

All line numbers produced by the engine refer to the canonical form returned by
``canonicalize_source``: the submitted text with CRLF / CR line endings turned
into LF and nothing else changed. Line numbers are counted from 1.
"""

import re
from bisect import bisect_right
from typing import Callable, List, Optional, Tuple, Union

# String literals are matched first so that "//" inside a string is not
# mistaken for the start of a comment.
_COMMENT_OR_STRING = re.compile(
    r'"(?:\\.|[^"\\\n])*"'
    r"|'(?:\\.|[^'\\\n])*'"
    r'|//[^\n]*'
    r'|/\*[\s\S]*?(?:\*/|\Z)'
)

_SCOPE_START = re.compile(r'\b(function\s+\w+|constructor|modifier\s+\w+|receive|fallback)\s*\(')
_NEWLINE = re.compile(r'\n')


def canonicalize_source(source_text: Union[str, bytes, None]) -> str:
    """Return the single representation every analyzer works on."""
    if not source_text:
        return ""
    if isinstance(source_text, bytes):
        source_text = source_text.decode('utf-8', errors='replace')
    return str(source_text).replace('\r\n', '\n').replace('\r', '\n')


def source_size(source_text: Union[str, bytes, None]) -> int:
    """Size of the submitted source in UTF-8 bytes."""
    if not source_text:
        return 0
    if isinstance(source_text, bytes):
        return len(source_text)
    return len(str(source_text).encode('utf-8', errors='replace'))


def line_number_at(text: str, offset: int) -> int:
    """1-based line of the character at ``offset``: newlines before it, plus one."""
    return text.count('\n', 0, max(0, offset)) + 1


def line_locator(text: str) -> Callable[[int], int]:
    """
    Return a ``line_number_at`` equivalent for repeated lookups on ``text``.

    Line starts are indexed once, so each lookup is a binary search instead of
    a count over everything before the offset.
    """
    starts = [0]
    starts.extend(match.end() for match in _NEWLINE.finditer(text))

    def locate(offset: int) -> int:
        return bisect_right(starts, max(0, offset))

    return locate


def count_lines(text: str) -> int:
    if not text:
        return 0
    return text.count('\n') + 1


def get_line(lines: List[str], line_number: int) -> str:
    if 1 <= line_number <= len(lines):
        return lines[line_number - 1]
    return ""


def get_snippet(lines: List[str], line_number: int, before: int = 0, after: int = 0) -> str:
    """Lines around ``line_number`` joined back together, clipped to the text."""
    start = max(0, line_number - 1 - before)
    end = min(len(lines), line_number + after)
    return '\n'.join(lines[start:end])


def mask_comments(text: str, mask_strings: bool = False) -> str:
    """
    Blank out comments (and optionally string literals) with spaces.

    Newlines are preserved so offsets and line numbers computed on the masked
    text are valid for the original text. An unterminated block comment runs
    to the end of the text.
    """
    def _blank(match: 're.Match') -> str:
        token = match.group(0)
        if token[0] in '"\'':
            if not mask_strings:
                return token
            return token[0] + re.sub(r'[^\n]', ' ', token[1:-1]) + token[-1]
        return re.sub(r'[^\n]', ' ', token)

    return _COMMENT_OR_STRING.sub(_blank, text)


def _block_end(lines: List[str], start: int, stop: int) -> Optional[int]:
    depth = 0
    opened = False
    for idx in range(start, stop):
        opens = lines[idx].count('{')
        depth += opens
        opened = opened or opens > 0
        depth -= lines[idx].count('}')
        if opened and depth <= 0:
            return idx + 1
        if not opened and lines[idx].rstrip().endswith(';'):
            # Interface / abstract declaration without a body
            return None
    return stop if opened else None


def function_scopes(lines: List[str]) -> List[Tuple[int, Optional[int]]]:
    """
    Index every function / constructor / modifier header of ``lines``.

    Returns 1-based (start, end) pairs in source order; ``end`` is None for a
    declaration without a body. A block left unclosed ends on the line before
    the next header.
    """
    headers = [idx for idx, line in enumerate(lines) if _SCOPE_START.search(line)]
    scopes = []
    for pos, start in enumerate(headers):
        stop = headers[pos + 1] if pos + 1 < len(headers) else len(lines)
        scopes.append((start + 1, _block_end(lines, start, stop)))
    return scopes


def enclosing_scope(scopes: List[Tuple[int, Optional[int]]], line_number: int) -> Optional[Tuple[int, int]]:
    """Scope of the nearest header at or before ``line_number`` if it contains the line."""
    pos = bisect_right(scopes, line_number, key=lambda scope: scope[0]) - 1
    if pos < 0:
        return None
    start, end = scopes[pos]
    if end is None or end < line_number:
        return None
    return start, end


class SourceView:
    """
    A canonical text together with its masked form and lookup indexes.

    Built once per scan so detectors can resolve lines and function scopes
    for every match without rescanning the text.
    """

    def __init__(self, text: str, mask_strings: bool = True):
        self.text = text
        self.masked = mask_comments(text, mask_strings=mask_strings)
        self.lines = text.split('\n')
        self.masked_lines = self.masked.split('\n')
        self.line_at = line_locator(self.masked)
        self._scopes: Optional[List[Tuple[int, Optional[int]]]] = None

    @property
    def scopes(self) -> List[Tuple[int, Optional[int]]]:
        if self._scopes is None:
            self._scopes = function_scopes(self.masked_lines)
        return self._scopes

    def scope_of(self, line_number: int) -> Optional[Tuple[int, int]]:
        return enclosing_scope(self.scopes, line_number)

    def scope_text(self, scope: Tuple[int, int]) -> str:
        start, end = scope
        return '\n'.join(self.masked_lines[start - 1:end])

    def line_text(self, line_number: int) -> str:
        """Stripped original text of one line, for snippets."""
        return get_line(self.lines, line_number).strip()
