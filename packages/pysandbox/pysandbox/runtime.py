"""In-process Python runtime with a persistent, restricted namespace.

Code runs as an asyncio task on the caller's loop inside a dedicated
``contextvars`` context, which is what arms the audit hook. Top-level
``await`` is supported; the value of a trailing expression is returned as
its ``repr``.
"""
from __future__ import annotations

import ast
import asyncio
import contextvars
import errno
import inspect
import io
import linecache
import logging
import os
import shutil
import sys
import tempfile
import time
import traceback
from contextlib import redirect_stderr, redirect_stdout
from dataclasses import dataclass
from pathlib import Path
from types import CodeType
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple

from pysandbox.audit import AuditPolicy, activate, default_read_roots, install_audit_hook
from pysandbox.errors import ExecutionInterrupted, SandboxViolation
from pysandbox.imports import ImportGuard
from pysandbox.osfacade import build_os, translated
from pysandbox.safe_builtins import build_builtins
from pysandbox.validator import validate_source
from workspace.bridge import WorkspaceFS
from workspace.path_utils import VIRTUAL_ROOT

logger = logging.getLogger(__name__)

POLL_INTERVAL_S = 0.05
CANCEL_ATTEMPTS = 5
CANCEL_GRACE_S = 0.2
SOURCE_PREFIX = "<sandbox-"


class Interruptible(Protocol):
    @property
    def tripped(self) -> bool: ...

    def wait(self, seconds: float) -> bool: ...


@dataclass
class RunResult:
    stdout: str = ""
    stderr: str = ""
    result: Optional[str] = None
    error: Optional[str] = None
    timed_out: bool = False


class CaptureBuffer(io.TextIOBase):
    """Text sink that stops keeping output past ``limit`` bytes."""

    def __init__(self, limit: Optional[int] = None) -> None:
        super().__init__()
        self._parts: List[str] = []
        self._size = 0
        self._limit = limit
        self.truncated = False

    def writable(self) -> bool:
        return True

    def write(self, text: str) -> int:
        if not isinstance(text, str):
            raise TypeError(f"write() argument must be str, not {type(text).__name__}")
        if self._limit is not None and self._size > self._limit:
            self.truncated = True
            return len(text)
        self._parts.append(text)
        self._size += len(text.encode("utf-8", errors="replace"))
        return len(text)

    def getvalue(self) -> str:
        return "".join(self._parts)


@dataclass
class _Escaped:
    exc: BaseException


def describe_exception(exc: BaseException) -> str:
    message = str(exc)
    name = type(exc).__name__
    return f"{name}: {message}" if message else name


def _keep_user_frames(exc_info: traceback.TracebackException, seen: Set[int]) -> None:
    if id(exc_info) in seen:
        return
    seen.add(id(exc_info))
    exc_info.stack = traceback.StackSummary.from_list(
        [frame for frame in exc_info.stack if frame.filename.startswith(SOURCE_PREFIX)]
    )
    for related in (exc_info.__cause__, exc_info.__context__):
        if related is not None:
            _keep_user_frames(related, seen)
    for member in getattr(exc_info, "exceptions", None) or ():
        _keep_user_frames(member, seen)


def format_user_traceback(exc: BaseException) -> str:
    """Traceback limited to frames from sandboxed source."""
    exc_info = traceback.TracebackException.from_exception(exc)
    _keep_user_frames(exc_info, set())
    return "".join(exc_info.format())


class PythonRuntime:
    def __init__(self, fs: WorkspaceFS, *, site_dir: Optional[Path] = None) -> None:
        self._fs = fs
        self._requested_site_dir = site_dir
        self._owns_site_dir = False
        self.site_dir: Optional[Path] = None
        self._namespace: Optional[Dict[str, Any]] = None
        self._context: Optional[contextvars.Context] = None
        self._interrupt: Optional[Interruptible] = None
        self._stdout: Optional[CaptureBuffer] = None
        self._stderr: Optional[CaptureBuffer] = None
        self._spawned: Set[asyncio.Task] = set()
        self._sources: List[str] = []

    @property
    def started(self) -> bool:
        return self._namespace is not None

    def start(self) -> None:
        if self._namespace is not None:
            return
        if self._requested_site_dir is None:
            self.site_dir = Path(tempfile.mkdtemp(prefix="heimdall-site-"))
            self._owns_site_dir = True
        else:
            self.site_dir = Path(self._requested_site_dir)
            self.site_dir.mkdir(parents=True, exist_ok=True)
        if str(self.site_dir) not in sys.path:
            sys.path.append(str(self.site_dir))

        install_audit_hook()
        policy = AuditPolicy(self._fs.root, default_read_roots([self.site_dir]))
        guard = ImportGuard(
            build_os(self._fs),
            overrides={
                "time": {"sleep": self._sleep},
                "asyncio": {
                    "sleep": self._async_sleep,
                    "create_task": self._create_task,
                    "ensure_future": self._ensure_future,
                },
            },
        )
        self._namespace = {
            "__builtins__": build_builtins(open_fn=self._open, import_fn=guard, print_fn=self._print),
            "__name__": "__main__",
            "__doc__": None,
        }
        self._context = contextvars.copy_context()
        self._context.run(activate, policy)
        logger.info(f"Python runtime started (site dir {self.site_dir})")

    def close(self) -> None:
        self._cancel_spawned()
        for filename in self._sources:
            linecache.cache.pop(filename, None)
        self._sources.clear()
        if self.site_dir is not None:
            site = str(self.site_dir)
            if site in sys.path:
                sys.path.remove(site)
            if self._owns_site_dir:
                shutil.rmtree(self.site_dir, ignore_errors=True)
        self._namespace = None
        self._context = None
        logger.info("Python runtime closed")

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------

    async def run(
        self,
        code: str,
        interrupt: Optional[Interruptible] = None,
        *,
        max_output_bytes: Optional[int] = None,
    ) -> RunResult:
        if self._namespace is None or self._context is None:
            raise RuntimeError("Python runtime is not started")
        filename = f"{SOURCE_PREFIX}{len(self._sources) + 1}>"
        linecache.cache[filename] = (len(code), None, code.splitlines(True), filename)
        self._sources.append(filename)
        stdout = CaptureBuffer(max_output_bytes)
        stderr = CaptureBuffer(max_output_bytes)
        self._stdout, self._stderr, self._interrupt = stdout, stderr, interrupt
        try:
            try:
                body, expr = self._compile(code, filename)
            except (SyntaxError, SandboxViolation) as exc:
                stderr.write("".join(traceback.format_exception_only(type(exc), exc)))
                return RunResult(stdout.getvalue(), stderr.getvalue(), error=describe_exception(exc))
            except (RecursionError, MemoryError, ValueError) as exc:
                logger.warning(f"Rejected source that could not be compiled: {type(exc).__name__}")
                error = SyntaxError(f"source too complex to compile ({describe_exception(exc)})")
                stderr.write("".join(traceback.format_exception_only(SyntaxError, error)))
                return RunResult(stdout.getvalue(), stderr.getvalue(), error=describe_exception(error))

            run_context = self._context.copy()
            task = asyncio.get_running_loop().create_task(self._execute(body, expr), context=run_context)
            finished = await self._supervise(task, interrupt)
            outcome: Any = None
            failure: Optional[BaseException] = None
            if finished and task.cancelled():
                failure = asyncio.CancelledError("execution was cancelled")
            elif finished:
                failure = task.exception()
                if failure is None:
                    outcome = task.result()
                    if isinstance(outcome, _Escaped):
                        failure, outcome = outcome.exc, None
            elif task.done() and not task.cancelled():
                task.exception()

            if not finished or isinstance(failure, ExecutionInterrupted):
                return RunResult(stdout.getvalue(), stderr.getvalue(), timed_out=True)
            if failure is None and outcome is not None:
                try:
                    return RunResult(stdout.getvalue(), stderr.getvalue(), result=run_context.run(repr, outcome))
                except Exception as exc:
                    failure = exc
            if failure is not None:
                stderr.write(format_user_traceback(failure))
                return RunResult(stdout.getvalue(), stderr.getvalue(), error=describe_exception(failure))
            return RunResult(stdout.getvalue(), stderr.getvalue())
        finally:
            self._cancel_spawned()
            self._interrupt = None

    def _compile(self, code: str, filename: str) -> Tuple[CodeType, Optional[CodeType]]:
        tree = ast.parse(code, filename=filename, mode="exec")
        validate_source(tree)
        expr: Optional[ast.Expression] = None
        if tree.body and isinstance(tree.body[-1], ast.Expr):
            expr = ast.Expression(body=tree.body.pop().value)
        flags = ast.PyCF_ALLOW_TOP_LEVEL_AWAIT
        body = compile(tree, filename, "exec", flags=flags, dont_inherit=True)
        if expr is None:
            return body, None
        return body, compile(expr, filename, "eval", flags=flags, dont_inherit=True)

    async def _execute(self, body: CodeType, expr: Optional[CodeType]) -> Any:
        try:
            value = self._evaluate(body)
            if body.co_flags & inspect.CO_COROUTINE:
                await value
            if expr is None:
                return None
            value = self._evaluate(expr)
            if expr.co_flags & inspect.CO_COROUTINE:
                value = await value
            return value
        except (SystemExit, KeyboardInterrupt) as exc:
            # Either would otherwise propagate out of the event loop.
            return _Escaped(exc)

    def _evaluate(self, code: CodeType) -> Any:
        with redirect_stdout(self._stdout), redirect_stderr(self._stderr):
            return eval(code, self._namespace)

    async def _supervise(self, task: asyncio.Task, interrupt: Optional[Interruptible]) -> bool:
        """Wait for ``task``; return False if it was stopped by the interrupt."""
        timeout = POLL_INTERVAL_S if interrupt is not None else None
        try:
            while not task.done():
                await asyncio.wait({task}, timeout=timeout)
                if interrupt is not None and interrupt.tripped and not task.done():
                    await self._stop(task)
                    return False
        except asyncio.CancelledError:
            task.cancel()
            raise
        return True

    async def _stop(self, task: asyncio.Task) -> None:
        for _ in range(CANCEL_ATTEMPTS):
            task.cancel()
            await asyncio.wait({task}, timeout=CANCEL_GRACE_S)
            if task.done():
                return
        logger.warning("Sandboxed task ignored cancellation")

    def _cancel_spawned(self) -> None:
        for task in list(self._spawned):
            task.cancel()
        self._spawned.clear()

    # ------------------------------------------------------------------
    # functions handed to sandboxed code
    # ------------------------------------------------------------------

    def _checkpoint(self) -> None:
        if self._interrupt is not None and self._interrupt.tripped:
            raise ExecutionInterrupted()

    def _print(
        self,
        *args: Any,
        sep: Optional[str] = " ",
        end: Optional[str] = "\n",
        file: Any = None,
        flush: bool = False,
    ) -> None:
        self._checkpoint()
        print(*args, sep=sep, end=end, file=self._stdout if file is None else file, flush=flush)

    def _open(
        self,
        file: Any,
        mode: str = "r",
        buffering: int = -1,
        encoding: Optional[str] = None,
        errors: Optional[str] = None,
        newline: Optional[str] = None,
        closefd: bool = True,
        opener: Any = None,
    ):
        if isinstance(file, int) or opener is not None or not closefd:
            raise PermissionError(errno.EACCES, "file descriptors are not available in the sandbox")
        path = os.fsdecode(os.fspath(file))
        with translated(path):
            return self._fs.open(path, mode, VIRTUAL_ROOT, buffering, encoding, errors, newline)

    def _sleep(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("sleep length must be non-negative")
        if self._interrupt is None:
            time.sleep(seconds)
        elif self._interrupt.wait(seconds):
            raise ExecutionInterrupted()

    async def _async_sleep(self, delay: float, result: Any = None) -> Any:
        self._checkpoint()
        deadline = time.monotonic() + max(delay, 0)
        while True:
            remaining = deadline - time.monotonic()
            await asyncio.sleep(min(max(remaining, 0), POLL_INTERVAL_S))
            self._checkpoint()
            if remaining <= POLL_INTERVAL_S:
                return result

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._spawned.add(task)
        task.add_done_callback(self._spawned.discard)
        return task

    def _create_task(self, coro: Any, *, name: Optional[str] = None) -> asyncio.Task:
        return self._track(asyncio.get_running_loop().create_task(coro, name=name))

    def _ensure_future(self, obj: Any) -> Any:
        future = asyncio.ensure_future(obj)
        if isinstance(future, asyncio.Task):
            self._track(future)
        return future
