"""Pipeline executor — turn a parsed pipeline into running processes.

For a pipeline of N stages the executor builds a *process graph*:

    stage0 ──pipe0──▶ stage1 ──pipe1──▶ … ──▶ stageN-1 ──result pipe──▶ caller

    - N−1 inter-stage pipes connect neighbouring stages.
    - One result pipe carries the final stage's output back to us.
    - ``<`` on a stage replaces its stdin pipe with a file; ``>``/``>>``
      replaces its stdout pipe with a file.
    - Every stage's stderr is merged into its stdout.

Once every stage is spawned the executor closes its own copies of all
write ends, drains the result pipe to end-of-stream, and only then
waits for the children.  End-of-stream is guaranteed: each holder of
the result pipe's write end either exits or never had it.

Failure confinement:
    - **ExecError** (program not found / not executable) and
      **RedirectionError** (file won't open) are *stage-local*.  The
      diagnostic is written into that stage's own stdout sink — so it
      flows through the pipe topology like normal output — and the
      stage counts as exited non-zero.  Siblings still run.
    - **SpawnError** (out of descriptors, processes or memory) aborts
      the pipeline and propagates; the owning session treats it as
      fatal.

A few program names never spawn anything: ``cd``, ``help`` and
``halt`` are builtins handled synchronously, and the control verbs
``stat``, ``abort`` and ``quit`` belong to the session.  A control verb
that reaches the executor (inside a pipeline, or after a ``;``) is a
``ParseError``.
"""

import errno
import os
import subprocess
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import StrEnum

from py_remsh.parser import (
    ParseError,
    Pipeline,
    RedirectMode,
    Stage,
    parse_segment,
    split_segments,
)

EXIT_EXEC_FAILURE = 127
EXIT_REDIRECT_FAILURE = 1

_READ_CHUNK = 65536
_FILE_MODE = 0o644

# Errors that mean "this one program/file is unusable", as opposed to
# the system running out of resources.
_STAGE_LOCAL_ERRNOS = frozenset(
    {
        errno.ENOENT,
        errno.EACCES,
        errno.EPERM,
        errno.ENOTDIR,
        errno.EISDIR,
        errno.ENOEXEC,
        errno.ELOOP,
        errno.ENAMETOOLONG,
        errno.EEXIST,
        errno.EROFS,
    }
)

HELP_TEXT = """\
Commands are run on the server as external programs.

Operators:
  cmd1 ; cmd2     run cmd1, then cmd2
  cmd1 | cmd2     pipe cmd1's output into cmd2
  cmd < file      read stdin from file
  cmd > file      write stdout to file (truncate)
  cmd >> file     write stdout to file (append)

Builtins:
  cd <path>       change this session's working directory
  help            show this text
  halt            shut down the whole service
  stat            list live connections
  abort <id>      disconnect connection <id>
  quit            close this connection
"""


class SpawnError(Exception):
    """Raise when pipes or processes cannot be created."""


class ExecError(Exception):
    """Raise when a stage's program cannot be executed."""


class RedirectionError(Exception):
    """Raise when a stage's redirection file cannot be opened."""


class Builtin(StrEnum):
    """Program names handled in-process instead of spawned."""

    CD = "cd"
    HELP = "help"
    HALT = "halt"


class ControlVerb(StrEnum):
    """Verbs the session forwards to the listener; never spawned."""

    STAT = "stat"
    ABORT = "abort"
    QUIT = "quit"


@dataclass(frozen=True)
class PipelineResult:
    """The outcome of running one pipeline.

    Attributes:
        output: Captured bytes (or a builtin/confirmation message).
        statuses: Exit status of each stage, in stage order.
        pipes_allocated: Number of inter-stage pipes created.
        builtin: Which builtin ran, if the fast path was taken.

    """

    output: bytes
    statuses: tuple[int, ...] = ()
    pipes_allocated: int = 0
    builtin: Builtin | None = None

    @property
    def halted(self) -> bool:
        """Return True if this result is a service halt."""
        return self.builtin is Builtin.HALT

    @property
    def text(self) -> str:
        """Return the output decoded as text."""
        return self.output.decode(errors="replace")


def _classify(exc: OSError, stage_error: type[Exception], message: str) -> Exception:
    """Map an OSError to a stage-local error or a SpawnError."""
    if exc.errno in _STAGE_LOCAL_ERRNOS:
        return stage_error(message)
    return SpawnError(f"{message} ({exc.strerror or exc})")


@dataclass
class _ProcessGraph:
    """Pipes and processes for one pipeline run."""

    pipes: list[tuple[int, int]]
    result: tuple[int, int]
    procs: list[subprocess.Popen[bytes] | None] = field(default_factory=list)
    statuses: list[int] = field(default_factory=list)
    open_fds: set[int] = field(default_factory=set)

    @classmethod
    def allocate(cls, stage_count: int) -> "_ProcessGraph":
        """Create N−1 inter-stage pipes and the result pipe."""
        fds: set[int] = set()
        try:
            result = os.pipe()
            fds.update(result)
            pipes: list[tuple[int, int]] = []
            for _ in range(stage_count - 1):
                pipe = os.pipe()
                fds.update(pipe)
                pipes.append(pipe)
        except OSError as e:
            for fd in fds:
                os.close(fd)
            msg = f"cannot create pipe: {e.strerror or e}"
            raise SpawnError(msg) from e
        return cls(pipes=pipes, result=result, open_fds=fds)

    def default_stdin(self, index: int) -> int:
        """Return the stdin source a stage gets without ``<``."""
        return self.pipes[index - 1][0] if index > 0 else subprocess.DEVNULL

    def default_stdout(self, index: int) -> int:
        """Return the stdout sink a stage gets without ``>``."""
        return self.pipes[index][1] if index < len(self.pipes) else self.result[1]

    def close(self, fd: int) -> None:
        """Close one of our descriptors if still open."""
        if fd in self.open_fds:
            self.open_fds.discard(fd)
            os.close(fd)

    def close_parent_ends(self) -> None:
        """Close every descriptor except the result pipe's read end."""
        for fd in list(self.open_fds):
            if fd != self.result[0]:
                self.close(fd)

    def close_all(self) -> None:
        """Close every descriptor we still hold."""
        for fd in list(self.open_fds):
            self.close(fd)

    def drain(self) -> bytes:
        """Read the result pipe until end-of-stream."""
        chunks = bytearray()
        while data := os.read(self.result[0], _READ_CHUNK):
            chunks.extend(data)
        return bytes(chunks)

    def wait_all(self) -> tuple[int, ...]:
        """Wait for every spawned stage and collect exit statuses."""
        for index, proc in enumerate(self.procs):
            if proc is not None:
                self.statuses[index] = proc.wait()
        return tuple(self.statuses)


class Executor:
    """Run pipelines on behalf of one session.

    The executor owns the session's working directory: ``cd`` changes
    it and every later spawn inherits it.  Nothing here touches the
    server process's own cwd, so executors never affect each other.
    """

    def __init__(
        self,
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        on_halt: Callable[[], None] | None = None,
    ) -> None:
        """Create an executor.

        Args:
            cwd: Starting working directory (defaults to the process cwd).
            env: Environment for spawned programs (defaults to inherited).
            on_halt: Called when ``halt`` runs, to start service shutdown.

        """
        self._cwd = os.path.abspath(cwd if cwd is not None else os.getcwd())
        self._env = dict(env) if env is not None else None
        self._on_halt = on_halt
        # Builtin is a StrEnum, so plain program names look up directly.
        self._builtins: dict[str, Callable[[Stage], PipelineResult]] = {
            Builtin.CD: self._builtin_cd,
            Builtin.HELP: self._builtin_help,
            Builtin.HALT: self._builtin_halt,
        }

    @property
    def cwd(self) -> str:
        """Return the session's current working directory."""
        return self._cwd

    def iter_line(self, line: str) -> Iterator[PipelineResult]:
        """Run each ``;`` segment of *line* in order, yielding results.

        Each segment is parsed only after the previous one has run to
        completion.  A ``halt`` stops the remaining segments.

        Raises:
            ParseError: When a segment is reached that cannot be parsed;
                earlier segments have already run.
            SpawnError: When resources run out.

        """
        for segment in split_segments(line):
            pipeline = parse_segment(segment)
            if pipeline is None:
                continue
            result = self.run(pipeline)
            yield result
            if result.halted:
                return

    def run_line(self, line: str) -> list[PipelineResult]:
        """Run every segment of *line* and return all results."""
        return list(self.iter_line(line))

    def run(self, pipeline: Pipeline) -> PipelineResult:
        """Run one pipeline and capture its output.

        Raises:
            ParseError: If a stage names a control verb.
            SpawnError: If pipes or processes cannot be created.

        """
        for stage in pipeline.stages:
            if stage.program in ControlVerb:
                msg = f"{stage.program}: must be the only command on the line"
                raise ParseError(msg)

        builtin = self._builtins.get(pipeline.stages[0].program)
        if builtin is not None:
            return builtin(pipeline.stages[0])

        # Stages still running if we bail out early are left as orphans;
        # closing our pipe ends lets them see EOF/EPIPE and finish.
        graph = _ProcessGraph.allocate(len(pipeline))
        try:
            for index, stage in enumerate(pipeline.stages):
                self._spawn_stage(graph, index, stage)
            graph.close_parent_ends()
            output = graph.drain()
            statuses = graph.wait_all()
        finally:
            graph.close_all()

        if not output and (target := pipeline.redirected_output) is not None:
            output = f"[INFO] Output saved to file: {target}\n".encode()
        return PipelineResult(
            output=output,
            statuses=statuses,
            pipes_allocated=len(graph.pipes),
        )

    # -- Stage spawning ---------------------------------------------------

    def _resolve(self, path: str) -> str:
        return os.path.join(self._cwd, os.path.expanduser(path))

    def _open_stdout(self, path: str, mode: RedirectMode) -> int:
        flags = os.O_WRONLY | os.O_CREAT
        flags |= os.O_APPEND if mode is RedirectMode.APPEND else os.O_TRUNC
        try:
            return os.open(self._resolve(path), flags, _FILE_MODE)
        except OSError as e:
            message = f"Error opening file: {path}: {e.strerror}"
            raise _classify(e, RedirectionError, message) from e

    def _open_stdin(self, path: str) -> int:
        try:
            return os.open(self._resolve(path), os.O_RDONLY)
        except OSError as e:
            message = f"Error opening input file: {path}: {e.strerror}"
            raise _classify(e, RedirectionError, message) from e

    def _spawn_stage(self, graph: _ProcessGraph, index: int, stage: Stage) -> None:
        """Spawn one stage, or record its stage-local failure."""
        graph.procs.append(None)
        graph.statuses.append(EXIT_REDIRECT_FAILURE)
        stdout = graph.default_stdout(index)
        opened: list[int] = []
        try:
            if stage.stdout is not None:
                stdout = self._open_stdout(stage.stdout, stage.mode)
                opened.append(stdout)
            stdin = graph.default_stdin(index)
            if stage.stdin is not None:
                stdin = self._open_stdin(stage.stdin)
                opened.append(stdin)
            graph.procs[index] = self._popen(stage, stdin=stdin, stdout=stdout)
            graph.statuses[index] = 0
        except RedirectionError as e:
            os.write(stdout, f"[ERROR] {e}\n".encode())
        except ExecError as e:
            graph.statuses[index] = EXIT_EXEC_FAILURE
            os.write(stdout, f"[ERROR] Execution error: {e}\n".encode())
        finally:
            for fd in opened:
                os.close(fd)

    def _popen(self, stage: Stage, *, stdin: int, stdout: int) -> subprocess.Popen[bytes]:
        try:
            return subprocess.Popen(  # noqa: S603
                list(stage.argv),
                stdin=stdin,
                stdout=stdout,
                stderr=subprocess.STDOUT,
                cwd=self._cwd,
                env=self._env,
                close_fds=True,
            )
        except OSError as e:
            message = f"{stage.program}: {e.strerror or e}"
            raise _classify(e, ExecError, message) from e
        except MemoryError as e:
            msg = f"cannot spawn {stage.program}: out of memory"
            raise SpawnError(msg) from e

    # -- Builtins -----------------------------------------------------------

    def _builtin_cd(self, stage: Stage) -> PipelineResult:
        """Change the session's working directory."""
        if len(stage.argv) < 2:  # noqa: PLR2004
            message = "[ERROR] cd: missing argument\n"
        else:
            target = os.path.normpath(self._resolve(stage.argv[1]))
            if not os.path.isdir(target):
                message = "[ERROR] cd: directory doesn't exist\n"
            elif not os.access(target, os.X_OK):
                message = "[ERROR] cd: permission denied\n"
            else:
                self._cwd = target
                message = f"[INFO] Changed directory to: {stage.argv[1]}\n"
        return PipelineResult(output=message.encode(), builtin=Builtin.CD)

    def _builtin_help(self, _stage: Stage) -> PipelineResult:
        """Return the static help text."""
        return PipelineResult(output=HELP_TEXT.encode(), builtin=Builtin.HELP)

    def _builtin_halt(self, _stage: Stage) -> PipelineResult:
        """Start a service-wide shutdown."""
        if self._on_halt is not None:
            self._on_halt()
        return PipelineResult(output=b"", builtin=Builtin.HALT)
