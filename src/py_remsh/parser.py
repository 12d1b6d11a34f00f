r"""Tokenizer and parser — turn a raw command line into pipelines.

A command line is a small language with five operators:

    - ``;``  — sequencing.  Each ``;``-delimited *segment* is an
      independent pipeline, run to completion before the next one.
    - ``|``  — piping.  Stdout of one stage feeds stdin of the next.
    - ``<``  — input redirection from a file.
    - ``>``  — output redirection to a file (truncate).
    - ``>>`` — output redirection to a file (append).

Everything else is split on whitespace into argument tokens.  A
backslash makes the next character literal, so ``echo a\|b`` passes
the single argument ``a|b``.

Filenames after a redirection operator are read in *capture mode*:
spaces are skipped (``> my file`` names ``myfile``) and capture stops
at the next ``|``, ``;``, redirection operator, or end of line.

Design choices:
    - **Frozen dataclasses** for ``Stage`` and ``Pipeline`` — parsed
      commands are values, never mutated after parsing.
    - **Segments are parsed lazily** by callers that need to run one
      segment before parsing the next (``split_segments`` +
      ``parse_segment``); ``parse`` is the eager convenience.
    - **No quoting, globbing or variables** — this is deliberately not
      a POSIX shell.
"""

from dataclasses import dataclass
from enum import StrEnum


class ParseError(Exception):
    """Raise when a command line is malformed."""


class RedirectMode(StrEnum):
    """How an output redirection opens its target file."""

    TRUNCATE = "truncate"
    APPEND = "append"


@dataclass(frozen=True)
class Stage:
    """One external-program invocation inside a pipeline.

    Attributes:
        argv: Argument tokens; ``argv[0]`` is the program name.
        stdin: Input redirection filename (``<``), if any.
        stdout: Output redirection filename (``>`` / ``>>``), if any.
        mode: Whether ``stdout`` truncates or appends.

    """

    argv: tuple[str, ...]
    stdin: str | None = None
    stdout: str | None = None
    mode: RedirectMode = RedirectMode.TRUNCATE

    @property
    def program(self) -> str:
        """Return the program name (first token)."""
        return self.argv[0]


@dataclass(frozen=True)
class Pipeline:
    """One or more stages connected stdout-to-stdin."""

    stages: tuple[Stage, ...]

    def __post_init__(self) -> None:
        """Enforce the at-least-one-stage invariant."""
        if not self.stages:
            msg = "A pipeline needs at least one stage"
            raise ValueError(msg)

    def __len__(self) -> int:
        """Return the number of stages."""
        return len(self.stages)

    @property
    def redirected_output(self) -> str | None:
        """Return the first output-redirection target in the pipeline."""
        return next((s.stdout for s in self.stages if s.stdout is not None), None)


_ESCAPE = "\\"
_SEGMENT_SEP = ";"
_PIPE = "|"
_REDIRECT_CHARS = "<>"


def split_segments(line: str) -> list[str]:
    """Split a line on unescaped ``;`` into raw segment strings.

    Escapes are preserved in the returned segments so that
    ``parse_segment`` can interpret them.
    """
    segments: list[str] = []
    current: list[str] = []
    chars = iter(line.rstrip("\r\n"))
    for ch in chars:
        if ch == _ESCAPE:
            current.append(ch)
            current.append(next(chars, ""))
        elif ch == _SEGMENT_SEP:
            segments.append("".join(current))
            current = []
        else:
            current.append(ch)
    segments.append("".join(current))
    return segments


class _StageBuilder:
    """Accumulate tokens and redirections for the stage being parsed."""

    def __init__(self) -> None:
        self.tokens: list[str] = []
        self.word: list[str] = []
        self.word_started = False
        self.stdin: str | None = None
        self.stdout: str | None = None
        self.mode = RedirectMode.TRUNCATE

    def end_word(self) -> None:
        if self.word_started:
            self.tokens.append("".join(self.word))
        self.word = []
        self.word_started = False

    def add_char(self, ch: str) -> None:
        self.word.append(ch)
        self.word_started = True

    def build(self) -> Stage:
        self.end_word()
        if not self.tokens:
            if self.stdin is not None or self.stdout is not None:
                msg = "missing command before redirection"
            else:
                msg = "empty command in pipeline"
            raise ParseError(msg)
        return Stage(
            argv=tuple(self.tokens),
            stdin=self.stdin,
            stdout=self.stdout,
            mode=self.mode,
        )


def _read_filename(text: str, pos: int) -> tuple[str, int]:
    """Capture a redirection filename starting at *pos*.

    Spaces are skipped; capture stops at ``|``, ``;``, another
    redirection operator, or end of text.

    Returns:
        The filename and the index of the first unconsumed character.

    """
    name: list[str] = []
    while pos < len(text):
        ch = text[pos]
        if ch == _ESCAPE and pos + 1 < len(text):
            name.append(text[pos + 1])
            pos += 2
            continue
        if ch in (_PIPE, _SEGMENT_SEP) or ch in _REDIRECT_CHARS:
            break
        if not ch.isspace():
            name.append(ch)
        pos += 1
    return "".join(name), pos


def parse_segment(text: str) -> Pipeline | None:
    """Parse one ``;``-free segment into a pipeline.

    Args:
        text: The segment text (may contain escapes).

    Returns:
        The parsed pipeline, or None if the segment is blank.

    Raises:
        ParseError: On a redirection without a filename, an empty
            stage, or a repeated redirection in one stage.

    """
    if not text.strip():
        return None

    stages: list[Stage] = []
    builder = _StageBuilder()
    pos = 0
    while pos < len(text):
        ch = text[pos]
        if ch == _ESCAPE:
            if pos + 1 < len(text):
                builder.add_char(text[pos + 1])
            pos += 2
        elif ch == _PIPE:
            stages.append(builder.build())
            builder = _StageBuilder()
            pos += 1
        elif ch in _REDIRECT_CHARS:
            builder.end_word()
            pos = _parse_redirection(text, pos, builder)
        elif ch.isspace():
            builder.end_word()
            pos += 1
        else:
            builder.add_char(ch)
            pos += 1
    stages.append(builder.build())
    return Pipeline(stages=tuple(stages))


def _parse_redirection(text: str, pos: int, builder: _StageBuilder) -> int:
    """Consume one redirection operator and its filename."""
    if text[pos] == "<":
        operator = "<"
        pos += 1
    elif text.startswith(">>", pos):
        operator = ">>"
        pos += 2
    else:
        operator = ">"
        pos += 1

    filename, pos = _read_filename(text, pos)
    if not filename:
        msg = f"missing filename after '{operator}'"
        raise ParseError(msg)

    if operator == "<":
        if builder.stdin is not None:
            msg = "duplicate input redirection"
            raise ParseError(msg)
        builder.stdin = filename
    else:
        if builder.stdout is not None:
            msg = "duplicate output redirection"
            raise ParseError(msg)
        builder.stdout = filename
        builder.mode = RedirectMode.APPEND if operator == ">>" else RedirectMode.TRUNCATE
    return pos


def parse(line: str) -> list[Pipeline]:
    """Parse a full command line into its pipelines, one per segment.

    Blank segments are skipped silently.

    Raises:
        ParseError: If any segment is malformed.

    """
    pipelines: list[Pipeline] = []
    for segment in split_segments(line):
        pipeline = parse_segment(segment)
        if pipeline is not None:
            pipelines.append(pipeline)
    return pipelines
