"""
Concurrent subprocess output collection.

An OutputCollector launches a command (or a pipeline of commands) and
drains its stdout and stderr on two reader threads. Every completed line is
appended to a per-stream buffer and to one merged, origin-tagged buffer, so
the merged view reflects the order in which the OS delivered the lines.
"""

import codecs
import os
import re
import shlex
import subprocess
import threading
from datetime import datetime
from typing import List, Mapping, Optional, Sequence, TextIO, Tuple, Union

from prebuilt.constants import (
    ANSI_RED,
    ANSI_RESET,
    DEFAULT_TAIL_LINES,
    READ_CHUNK_SIZE,
    STDERR_TAG,
    STDOUT_TAG,
    TEE_TIME_FORMAT,
)
from prebuilt.exceptions import ProcessError
from prebuilt.log_utils import logger

Command = Sequence[str]
CommandOrPipeline = Union[Command, Sequence[Command]]

_NEWLINE_RX = re.compile(r"\r\n|\r|\n")


def _normalize_commands(cmd: CommandOrPipeline) -> List[List[str]]:
    if isinstance(cmd, str):
        raise TypeError("Pass a command as a sequence of arguments, not a string")
    if not cmd:
        raise ValueError("Empty command")
    if all(isinstance(arg, str) for arg in cmd):
        return [list(cmd)]
    stages = [list(stage) for stage in cmd]
    if any(not stage or isinstance(stage, str) for stage in cmd):
        raise ValueError(f"Invalid pipeline: {cmd!r}")
    return stages


def format_command(commands: Sequence[Sequence[str]]) -> str:
    """Render a pipeline of argv lists as a shell-like string for messages."""
    return " | ".join(shlex.join(stage) for stage in commands)


class OutputCollector:
    """
    Run a command and collect its output without blocking the caller.

    Parameters:
        cmd: An argv sequence, or a sequence of argv sequences forming a
            pipeline (stdout of each stage feeds stdin of the next; all
            stages share the collected error stream).
        env, cwd: Passed through to subprocess.Popen.
        verbose: Tee every line to `tee_stream` as it arrives.
        tail_error: On failure, write the tail of the merged output to
            `tee_stream` once, unless it was already teed line by line.
        tee_stream: Writable text stream for the live tee, or None.
        colored: Colorize tee output; defaults to whether `tee_stream` is a tty.
    """

    def __init__(
        self,
        cmd: CommandOrPipeline,
        *,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        verbose: bool = False,
        tail_error: bool = True,
        tee_stream: Optional[TextIO] = None,
        colored: Optional[bool] = None,
    ) -> None:
        self.commands = _normalize_commands(cmd)
        self.verbose = verbose
        self.tail_error = tail_error
        self.tee_stream = tee_stream
        if colored is None:
            isatty = getattr(tee_stream, "isatty", None)
            colored = bool(isatty()) if callable(isatty) else False
        self.colored = colored

        self.spawn_error: Optional[OSError] = None
        self._processes: List[subprocess.Popen] = []
        self._threads: List[threading.Thread] = []
        self._stdout_lines: List[str] = []
        self._stderr_lines: List[str] = []
        self._merged: List[Tuple[str, str]] = []
        self._append_lock = threading.Lock()
        self._wait_lock = threading.Lock()
        self._result: Optional[bool] = None

        logger.debug(f"Running {format_command(self.commands)}")
        self._spawn(env, cwd)

    @property
    def command_string(self) -> str:
        return format_command(self.commands)

    @property
    def returncodes(self) -> List[Optional[int]]:
        return [p.returncode for p in self._processes]

    def _spawn(self, env: Optional[Mapping[str, str]], cwd: Optional[str]) -> None:
        err_read, err_write = os.pipe()
        stdin = subprocess.DEVNULL
        try:
            for stage in self.commands:
                proc = subprocess.Popen(
                    stage,
                    stdin=stdin,
                    stdout=subprocess.PIPE,
                    stderr=err_write,
                    env=dict(env) if env is not None else None,
                    cwd=cwd,
                )
                if stdin is not subprocess.DEVNULL:
                    # The next stage owns the read end now
                    stdin.close()
                stdin = proc.stdout
                self._processes.append(proc)
        except OSError as e:
            self.spawn_error = e
            logger.debug(f"Could not spawn {self.command_string}: {e}")
            self._append(f"Could not spawn {self.command_string}: {e}", STDERR_TAG)
            if stdin is not subprocess.DEVNULL:
                stdin.close()
            for proc in self._processes:
                proc.kill()
                proc.wait()
            os.close(err_read)
            return
        finally:
            os.close(err_write)

        stdout_fd = self._processes[-1].stdout
        self._threads = [
            threading.Thread(
                target=self._read_loop,
                args=(stdout_fd.fileno(), STDOUT_TAG, stdout_fd.close),
                name="prebuilt-stdout",
                daemon=True,
            ),
            threading.Thread(
                target=self._read_loop,
                args=(err_read, STDERR_TAG, lambda: os.close(err_read)),
                name="prebuilt-stderr",
                daemon=True,
            ),
        ]
        for thread in self._threads:
            thread.start()

    def _read_loop(self, fd: int, tag: str, close) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        partial = ""
        skip_lf = False
        try:
            while True:
                chunk = os.read(fd, READ_CHUNK_SIZE)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if not text:
                    continue
                if skip_lf and text.startswith("\n"):
                    text = text[1:]
                skip_lf = text.endswith("\r")
                parts = _NEWLINE_RX.split(partial + text)
                partial = parts.pop()
                for line in parts:
                    self._append(line, tag)
            partial += decoder.decode(b"", final=True)
            if partial:
                self._append(partial, tag)
        finally:
            close()

    def _append(self, line: str, tag: str) -> None:
        with self._append_lock:
            if tag == STDOUT_TAG:
                self._stdout_lines.append(line)
            else:
                self._stderr_lines.append(line)
            self._merged.append((tag, line))
            if self.verbose and self.tee_stream is not None:
                stamp = datetime.now().strftime(TEE_TIME_FORMAT)
                self.tee_stream.write(f"[{stamp}] {_format_line(tag, line, self.colored)}")
                self.tee_stream.flush()

    def wait(self) -> bool:
        """
        Block until every stage has exited and both streams are drained.

        Returns True only if the command spawned and every stage exited with
        status 0; a signal-terminated stage counts as failure. Later calls
        return the cached result immediately.
        """
        with self._wait_lock:
            if self._result is not None:
                return self._result

            for thread in self._threads:
                thread.join()
            codes = [proc.wait() for proc in self._processes]
            self._result = (
                self.spawn_error is None
                and bool(codes)
                and all(code == 0 for code in codes)
            )

            if not self._result:
                logger.debug(f"{self.command_string} failed with exit codes {codes}")
                if self.tail_error and not self.verbose and self.tee_stream is not None:
                    self.tee_stream.write(self.tail(colored=self.colored))
                    self.tee_stream.flush()
            return self._result

    def check(self, message: Optional[str] = None, tail_lines: int = 20) -> None:
        """
        Wait for the command and raise ProcessError if it failed.

        The error carries the last `tail_lines` lines of the error stream.
        """
        if self.wait():
            return
        failing = next(
            (code for code in self.returncodes if code not in (0, None)), None
        )
        with self._append_lock:
            tail = "\n".join(self._stderr_lines[-tail_lines:])
        raise ProcessError(
            message or f"Command failed: {self.command_string}",
            command=self.commands,
            returncode=failing,
            tail=tail,
        )

    def _snapshot(self) -> List[Tuple[str, str]]:
        with self._append_lock:
            return list(self._merged)

    def merged(self, colored: bool = False) -> str:
        """Return every line of both streams in arrival order."""
        return "".join(
            _format_line(tag, line, colored) for tag, line in self._snapshot()
        )

    def tail(self, lines: int = DEFAULT_TAIL_LINES, colored: bool = False) -> str:
        """Return the last `lines` lines of the merged view."""
        if lines <= 0:
            return ""
        return "".join(
            _format_line(tag, line, colored) for tag, line in self._snapshot()[-lines:]
        )

    def stdout_only(self) -> str:
        with self._append_lock:
            return "".join(f"{line}\n" for line in self._stdout_lines)

    def stderr_only(self) -> str:
        with self._append_lock:
            return "".join(f"{line}\n" for line in self._stderr_lines)


def _format_line(tag: str, line: str, colored: bool) -> str:
    if colored and tag == STDERR_TAG:
        return f"{ANSI_RED}{line}{ANSI_RESET}\n"
    return f"{line}\n"


def run(
    cmd: CommandOrPipeline,
    *,
    verbose: bool = False,
    tee_stream: Optional[TextIO] = None,
    message: Optional[str] = None,
    **kwargs,
) -> OutputCollector:
    """Run `cmd` to completion, raising ProcessError on failure."""
    oc = OutputCollector(cmd, verbose=verbose, tee_stream=tee_stream, **kwargs)
    oc.check(message)
    return oc
