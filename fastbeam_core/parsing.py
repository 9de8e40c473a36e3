"""
Structural Parser - Segment a beamer document into compilable units

Builds a light parse tree of LaTeX environments and brace groups and cuts
the body of the ``document`` environment into frames and other top-level
content. The preamble is everything before ``\\begin{document}``.

The parser only needs enough of the grammar to find frame boundaries:
- ``%`` comments, escaped characters and control words
- ``\\verb`` and verbatim-like environments (opaque bodies)
- ``\\begin{..}``/``\\end{..}`` nesting and brace groups in the body
- the command form ``\\frame[options]{...}`` of a frame

Malformed input never escapes as an exception: ``parse_document`` falls
back to a single DOCUMENT unit and records the diagnostic.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-10-12
"""

import bisect
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from .types import Document, Span, SpanKind, Unit, UnitStatus

logger = logging.getLogger(__name__)


# Environments whose body is not LaTeX (may hold unbalanced braces)
VERBATIM_ENVS = {
    "verbatim", "verbatim*", "Verbatim", "Verbatim*",
    "lstlisting", "minted", "comment",
    "filecontents", "filecontents*",
}

FRAME_ENVS = {"frame"}

# Commands that pull external files into a compilation
INCLUDE_COMMANDS = (
    "input", "include", "includegraphics", "lstinputlisting",
    "inputminted", "includepdf",
    "usepackage", "RequirePackage",
    "usetheme", "usecolortheme", "usefonttheme", "useinnertheme", "useoutertheme",
)

_CONTROL_WORD = re.compile(r"\\([A-Za-z@]+)")
_ENV_NAME = re.compile(r"\s*\{([^{}]*)\}")
_COMMENT = re.compile(r"(?<!\\)((?:\\\\)*)%[^\n]*")
_GRAPHICSPATH = re.compile(r"\\graphicspath\s*\{((?:\s*\{[^{}]*\})*)\s*\}")
_FRAME_ARGS = re.compile(r"\s*(?:<[^<>{}\n]*>\s*)?(?:\[[^\[\]{}]*\]\s*)*(?:<[^<>{}\n]*>\s*)?\{")
_INCLUDE = re.compile(
    r"\\(" + "|".join(INCLUDE_COMMANDS) + r")\*?\s*"
    r"(?:\[[^\]]*\]\s*)?"
    r"\{([^{}]*)\}"
    r"(?:\s*\{([^{}]*)\})?"
)


class ParseFailure(Exception):
    """The document could not be segmented into units."""

    def __init__(self, message: str, line: Optional[int] = None):
        self.line = line
        super().__init__(f"line {line}: {message}" if line else message)


@dataclass
class Node:
    """A node of the structural parse tree (root, env or group)."""
    kind: str
    start: int
    line: int = 1
    name: str = ""
    command: str = ""  # "frame" for a \frame{...} argument group
    end: int = -1
    body_start: int = -1
    body_end: int = -1
    children: List["Node"] = field(default_factory=list)

    def describe(self) -> str:
        if self.kind == "env":
            return f"\\begin{{{self.name}}}"
        if self.kind == "group":
            return "'{'"
        return "top level"

    def is_frame(self) -> bool:
        return (self.kind == "env" and self.name in FRAME_ENVS) or self.command == "frame"

    def contains_frame(self) -> bool:
        """Check if a frame (environment or command form) occurs below this node."""
        return any(child.is_frame() or child.contains_frame() for child in self.children)


# =============================================================================
# Helpers
# =============================================================================

def strip_comments(text: str) -> str:
    """Remove ``%`` comments (``\\%`` is kept, ``\\\\%`` starts one)."""
    return _COMMENT.sub(r"\1", text)


def is_blank(text: str) -> bool:
    """True if text holds nothing but whitespace and comments."""
    return not strip_comments(text).strip()


def find_dependencies(text: str) -> Tuple[Tuple[str, str], ...]:
    """
    Extract include declarations from LaTeX source.

    Args:
        text: LaTeX source (comments are ignored)

    Returns:
        Tuple of ``(command, name)`` pairs in source order. Package lists
        such as ``\\usepackage{a,b}`` yield one pair per package.
    """
    found: List[Tuple[str, str]] = []
    for m in _INCLUDE.finditer(strip_comments(text)):
        command = m.group(1)
        if command == "inputminted":
            # \inputminted{language}{file}
            arg = m.group(3) or ""
        else:
            arg = m.group(2)
        if command in ("usepackage", "RequirePackage"):
            names = [n.strip() for n in arg.split(",")]
        else:
            names = [arg.strip()]
        for name in names:
            if name:
                found.append((command, name))
    return tuple(found)


def find_graphics_paths(text: str) -> Tuple[str, ...]:
    """Directories declared with ``\\graphicspath{{dir1/}{dir2/}}``, in order."""
    dirs: List[str] = []
    for m in _GRAPHICSPATH.finditer(strip_comments(text)):
        for d in re.findall(r"\{([^{}]*)\}", m.group(1)):
            d = d.strip()
            if d and d not in dirs:
                dirs.append(d)
    return tuple(dirs)


# =============================================================================
# Tree Parser
# =============================================================================

class LatexTreeParser:
    """
    Tolerant tokenizer building the environment/group tree of a document.

    Environments are only tracked from ``\\begin{document}`` on; in the
    preamble ``\\begin``/``\\end`` commonly appear unbalanced inside macro
    definitions, so only braces and verbatim blocks are followed there.
    """

    def __init__(self, text: str):
        self.text = text
        self._newlines = [i for i, c in enumerate(text) if c == "\n"]
        self.document: Optional[Node] = None
        # (command start, brace offset) of a pending \frame argument
        self._frame_command: Optional[Tuple[int, int]] = None

    def line_of(self, pos: int) -> int:
        """1-based line number of a character offset."""
        return bisect.bisect_left(self._newlines, pos) + 1

    def parse(self) -> Node:
        """
        Build the parse tree.

        Returns:
            The root node; ``self.document`` is the document environment

        Raises:
            ParseFailure: On unbalanced or unterminated structure
        """
        text = self.text
        n = len(text)
        root = Node(kind="root", start=0)
        stack: List[Node] = [root]
        i = 0

        while i < n:
            c = text[i]

            if c == "%":
                j = text.find("\n", i)
                i = n if j < 0 else j + 1
                continue

            if c == "\\":
                m = _CONTROL_WORD.match(text, i)
                if m is None:
                    # Control symbol: \\, \%, \{ ...
                    i += 2
                    continue
                word = m.group(1)
                if word == "verb":
                    i = self._skip_verb(m.end())
                elif word == "begin":
                    i = self._open_env(i, m.end(), stack)
                elif word == "frame" and self.document is not None:
                    i = self._frame_argument(i, m.end())
                elif word == "end":
                    i = self._close_env(i, m.end(), stack)
                    if self.document is not None and self.document.end >= 0:
                        break  # anything after \end{document} is ignored
                else:
                    i = m.end()
                continue

            if c == "{":
                node = Node(kind="group", start=i, line=self.line_of(i))
                if self._frame_command is not None and self._frame_command[1] == i:
                    node.start = self._frame_command[0]
                    node.line = self.line_of(node.start)
                    node.command = "frame"
                    self._frame_command = None
                stack[-1].children.append(node)
                stack.append(node)
            elif c == "}":
                top = stack[-1]
                if top.kind != "group":
                    raise ParseFailure(
                        f"unexpected '}}' inside {top.describe()}", self.line_of(i)
                    )
                top.end = i + 1
                stack.pop()
            i += 1

        if self.document is None:
            raise ParseFailure("no \\begin{document} found")
        if len(stack) > 1:
            top = stack[-1]
            raise ParseFailure(f"{top.describe()} is never closed", top.line)
        root.end = n
        return root

    def _skip_verb(self, pos: int) -> int:
        """Skip ``\\verb<d>...<d>`` (the delimiter may not span lines)."""
        text = self.text
        if pos < len(text) and text[pos] == "*":
            pos += 1
        if pos >= len(text):
            raise ParseFailure("\\verb at end of input", self.line_of(pos))
        delim = text[pos]
        close = text.find(delim, pos + 1)
        newline = text.find("\n", pos + 1)
        if close < 0 or (0 <= newline < close):
            raise ParseFailure("unterminated \\verb", self.line_of(pos))
        return close + 1

    def _frame_argument(self, start: int, pos: int) -> int:
        """Locate the body group of ``\\frame<overlay>[options]{...}``."""
        m = _FRAME_ARGS.match(self.text, pos)
        if m is None:
            return pos
        brace = m.end() - 1
        self._frame_command = (start, brace)
        return brace

    def _open_env(self, start: int, pos: int, stack: List[Node]) -> int:
        m = _ENV_NAME.match(self.text, pos)
        if m is None:
            raise ParseFailure("\\begin without environment name", self.line_of(start))
        name = m.group(1).strip()
        node = Node(
            kind="env", start=start, name=name,
            line=self.line_of(start), body_start=m.end(),
        )

        if name in VERBATIM_ENVS:
            close = re.compile(r"\\end\s*\{" + re.escape(name) + r"\}")
            cm = close.search(self.text, m.end())
            if cm is None:
                raise ParseFailure(f"unterminated {name} environment", node.line)
            node.body_end = cm.start()
            node.end = cm.end()
            if self.document is not None:
                stack[-1].children.append(node)
            return cm.end()

        if self.document is None:
            if name != "document":
                return m.end()
            if len(stack) > 1:
                raise ParseFailure("\\begin{document} inside a group", node.line)
            self.document = node

        stack[-1].children.append(node)
        stack.append(node)
        return m.end()

    def _close_env(self, start: int, pos: int, stack: List[Node]) -> int:
        m = _ENV_NAME.match(self.text, pos)
        if m is None:
            raise ParseFailure("\\end without environment name", self.line_of(start))
        if self.document is None:
            return m.end()
        name = m.group(1).strip()
        top = stack[-1]
        if top.kind != "env" or top.name != name:
            raise ParseFailure(
                f"\\end{{{name}}} does not match {top.describe()} (line {top.line})",
                self.line_of(start),
            )
        top.body_end = start
        top.end = m.end()
        stack.pop()
        return m.end()


# =============================================================================
# Segmentation
# =============================================================================

def _is_frame_node(node: Node) -> bool:
    if node.is_frame():
        return True
    # e.g. { \setbeamertemplate{...} \begin{frame} ... \end{frame} }
    return node.kind in ("env", "group") and node.contains_frame()


def _make_span(parser: LatexTreeParser, kind: SpanKind, start: int, end: int) -> Span:
    text = parser.text[start:end]
    return Span(
        kind=kind,
        start=start,
        end=end,
        text=text,
        line=parser.line_of(start),
        dependencies=find_dependencies(text),
    )


def _other_span(parser: LatexTreeParser, start: int, end: int) -> Optional[Span]:
    """Span for non-frame body content, trimmed; None if blank."""
    gap = parser.text[start:end]
    if is_blank(gap):
        return None
    lead = len(gap) - len(gap.lstrip())
    trail = len(gap.rstrip())
    return _make_span(parser, SpanKind.OTHER, start + lead, start + trail)


def segment(text: str) -> Tuple[Span, List[Span]]:
    """
    Split a document into its preamble and ordered unit spans.

    Args:
        text: Full document text

    Returns:
        ``(preamble_span, unit_spans)``

    Raises:
        ParseFailure: If the structure cannot be recovered
    """
    parser = LatexTreeParser(text)
    parser.parse()
    doc = parser.document

    preamble = _make_span(parser, SpanKind.PREAMBLE, 0, doc.start)
    spans: List[Span] = []
    cursor = doc.body_start

    for child in doc.children:
        if not _is_frame_node(child):
            continue
        other = _other_span(parser, cursor, child.start)
        if other is not None:
            spans.append(other)
        spans.append(_make_span(parser, SpanKind.FRAME, child.start, child.end))
        cursor = child.end

    other = _other_span(parser, cursor, doc.body_end)
    if other is not None:
        spans.append(other)

    return preamble, spans


def parse_document(text: str, path: Optional[Path] = None) -> Document:
    """
    Parse document text into a Document with unfingerprinted units.

    On ParseFailure the whole text becomes a single DOCUMENT unit and the
    diagnostic is kept on the Document (and logged as a warning).

    Args:
        text: Full document text
        path: Source path (used for diagnostics and include resolution)

    Returns:
        Document
    """
    try:
        preamble, spans = segment(text)
    except ParseFailure as e:
        where = f"{path}: " if path else ""
        logger.warning(f"{where}structural parse failed ({e}); compiling as a single unit")
        whole = Span(
            kind=SpanKind.DOCUMENT,
            start=0,
            end=len(text),
            text=text,
            line=1,
            dependencies=find_dependencies(text),
        )
        return Document(
            path=path,
            text=text,
            preamble=None,
            units=[Unit(id=0, kind=SpanKind.DOCUMENT, span=whole)],
            diagnostics=[str(e)],
            fallback=True,
        )

    units = [
        Unit(id=i, kind=span.kind, span=span, status=UnitStatus.STALE)
        for i, span in enumerate(spans)
    ]
    frames = sum(1 for u in units if u.kind == SpanKind.FRAME)
    logger.debug(f"Found {frames} frames, {len(units) - frames} other units")
    return Document(path=path, text=text, preamble=preamble, units=units)
