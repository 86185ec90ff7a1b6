"""Sandboxed code execution.

Each snippet runs in a fresh interpreter process started in its own session
(so it leads its own process group), with:

- the working directory confined to the configured sandbox roots,
- an environment built from an explicit allowlist, never inherited wholesale,
- a hard wall-clock timeout that SIGKILLs the whole process group,
- cancellation of the awaiting task also killing the process group.

Path confinement is the security boundary for code execution and the file
tools: both the requested path and the allowed roots are canonicalized
(``..`` collapsed, symlinks followed) and containment is checked on the
resulting paths, never on the raw strings.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Sequence

from conveyor.engine.errors import (
    AccessDeniedError,
    ExecutionTimeoutError,
    ToolError,
    UnsupportedLanguageError,
)
from conveyor.engine.policy import attempt_budget

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024
# Time allowed for output pipes to close after the process is gone
_DRAIN_GRACE_SECONDS = 1.0

_SUFFIXES: dict[str, str] = {
    "python": ".py",
    "javascript": ".js",
    "node": ".js",
    "bash": ".sh",
    "sh": ".sh",
    "ruby": ".rb",
}


@dataclass(frozen=True)
class LanguageSpec:
    """How to invoke one interpreter. ``{file}`` in argv is the snippet path."""

    name: str
    argv: tuple[str, ...]
    suffix: str = ".txt"

    def command(self, script: Path) -> list[str]:
        return [part.replace("{file}", str(script)) for part in self.argv]


@dataclass(frozen=True)
class SandboxConfig:
    """Process-wide sandbox configuration. Built once at startup."""

    work_root: Path
    scratch_root: Path
    languages: Mapping[str, LanguageSpec]
    env_allowlist: tuple[str, ...] = ("PATH", "LANG", "LC_ALL", "TZ")
    default_timeout_ms: int = 30000
    max_output_bytes: int = 1_000_000

    @property
    def roots(self) -> tuple[Path, ...]:
        if self.scratch_root == self.work_root:
            return (self.work_root,)
        return (self.work_root, self.scratch_root)

    @classmethod
    def build(
        cls,
        work_root: str | Path,
        scratch_root: str | Path | None = None,
        languages: Mapping[str, Sequence[str]] | None = None,
        env_allowlist: Sequence[str] = ("PATH", "LANG", "LC_ALL", "TZ"),
        default_timeout_ms: int = 30000,
        max_output_bytes: int = 1_000_000,
    ) -> SandboxConfig:
        """Create the root directories and freeze the configuration."""
        work = Path(work_root).expanduser()
        work.mkdir(parents=True, exist_ok=True)
        scratch = Path(scratch_root).expanduser() if scratch_root else work
        scratch.mkdir(parents=True, exist_ok=True)

        specs: dict[str, LanguageSpec] = {}
        for name, argv in (languages or {}).items():
            if not argv:
                raise ValueError(f"Language '{name}' has an empty command template")
            specs[name] = LanguageSpec(
                name=name,
                argv=tuple(argv),
                suffix=_SUFFIXES.get(name, ".txt"),
            )

        return cls(
            work_root=work.resolve(),
            scratch_root=scratch.resolve(),
            languages=MappingProxyType(specs),
            env_allowlist=tuple(env_allowlist),
            default_timeout_ms=default_timeout_ms,
            max_output_bytes=max_output_bytes,
        )

    @classmethod
    def from_settings(cls, settings: Any) -> SandboxConfig:
        return cls.build(
            work_root=settings.sandbox_root,
            scratch_root=settings.sandbox_scratch_root,
            languages=settings.sandbox_languages,
            env_allowlist=settings.sandbox_env_allowlist,
            default_timeout_ms=settings.default_timeout_ms,
            max_output_bytes=settings.sandbox_max_output_bytes,
        )


def confine_path(
    path: str | os.PathLike,
    roots: Sequence[str | Path],
    base: str | Path | None = None,
) -> Path:
    """Resolve *path* and verify it falls under one of *roots*.

    Relative paths are taken relative to *base* (default: the first root).
    Raises ``AccessDeniedError`` if the canonical path escapes every root.
    No file is opened or created here.
    """
    if not roots:
        raise AccessDeniedError(str(path))
    raw = os.fspath(path)
    if "\x00" in raw:
        raise AccessDeniedError(raw)

    candidate = Path(raw)
    if not candidate.is_absolute():
        candidate = Path(base if base is not None else roots[0]) / candidate
    resolved = candidate.resolve()

    for root in roots:
        root_resolved = Path(root).resolve()
        if resolved.is_relative_to(root_resolved):
            return resolved
    raise AccessDeniedError(raw, str(resolved))


@dataclass
class ExecutionResult:
    """Captured outcome of one code execution."""

    stdout: str
    stderr: str
    exit_code: int
    execution_time_ms: int
    truncated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "execution_time_ms": self.execution_time_ms,
            "truncated": self.truncated,
        }


class _Capture:
    """Byte buffer that keeps at most *limit* bytes."""

    def __init__(self, limit: int) -> None:
        self._limit = limit
        self._buf = bytearray()
        self.truncated = False

    def feed(self, chunk: bytes) -> None:
        room = self._limit - len(self._buf)
        if room <= 0:
            self.truncated = True
            return
        if len(chunk) > room:
            self.truncated = True
        self._buf.extend(chunk[:room])

    def text(self) -> str:
        return self._buf.decode("utf-8", errors="replace").rstrip("\r\n")


async def _pump(stream: asyncio.StreamReader | None, sink: _Capture) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return
        sink.feed(chunk)


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    """SIGKILL the child's whole process group (falls back to the child)."""
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        elif proc.returncode is None:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass


async def _drain(readers: list[asyncio.Task]) -> None:
    _, pending = await asyncio.wait(readers, timeout=_DRAIN_GRACE_SECONDS)
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


class CodeExecutor:
    """Runs code snippets inside the sandbox described by a ``SandboxConfig``."""

    def __init__(self, config: SandboxConfig) -> None:
        self._config = config

    @property
    def config(self) -> SandboxConfig:
        return self._config

    @property
    def supported_languages(self) -> list[str]:
        return sorted(self._config.languages)

    def build_env(
        self,
        workdir: Path,
        scratch: Path,
        extra: Mapping[str, Any] | None = None,
    ) -> dict[str, str]:
        """Environment for the child: allowlisted host variables plus sandbox paths."""
        env = {k: os.environ[k] for k in self._config.env_allowlist if k in os.environ}
        env.setdefault("PATH", os.defpath)
        env["HOME"] = str(workdir)
        env["TMPDIR"] = str(scratch)
        env["PYTHONDONTWRITEBYTECODE"] = "1"
        env["PYTHONUNBUFFERED"] = "1"
        if extra:
            for key, value in extra.items():
                env[str(key)] = str(value)
        return env

    async def execute(
        self,
        language: str,
        code: str,
        timeout_ms: int | None = None,
        cwd: str | None = None,
        env: Mapping[str, Any] | None = None,
        stdin: str | None = None,
    ) -> ExecutionResult:
        """Execute *code* with the interpreter configured for *language*.

        A non-zero exit code is returned, not raised. Raises
        ``UnsupportedLanguageError``, ``AccessDeniedError``,
        ``ExecutionTimeoutError`` (with partial output) or ``ToolError`` when
        the interpreter cannot be started.
        """
        spec = self._config.languages.get(language)
        if spec is None:
            raise UnsupportedLanguageError(language, list(self._config.languages))
        if not isinstance(code, str):
            raise ToolError("'code' must be a string")
        if env is not None and not isinstance(env, Mapping):
            raise ToolError("'env' must be a mapping")

        workdir = self._config.work_root
        if cwd:
            workdir = confine_path(cwd, self._config.roots, base=self._config.work_root)
            if not workdir.is_dir():
                raise ToolError(f"Working directory does not exist: {cwd}")

        timeout_ms = int(timeout_ms or self._config.default_timeout_ms)
        deadline = time.monotonic() + timeout_ms / 1000.0
        # Never outlive the policy attempt that is running this snippet
        budget = attempt_budget.get()
        if budget is not None and budget.deadline < deadline:
            deadline, timeout_ms = budget.deadline, budget.timeout_ms
        limit = self._config.max_output_bytes

        scratch = Path(tempfile.mkdtemp(prefix="exec-", dir=self._config.scratch_root))
        try:
            script = scratch / f"snippet{spec.suffix}"
            script.write_text(code, encoding="utf-8")
            argv = spec.command(script)

            started = time.monotonic()
            try:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    cwd=str(workdir),
                    env=self.build_env(workdir, scratch, env),
                    stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    start_new_session=True,
                )
            except OSError as e:
                raise ToolError(
                    f"Could not start interpreter '{argv[0]}' for {language}: {e}",
                    language=language,
                ) from e

            logger.debug("Sandbox pid=%d started (%s, timeout=%dms)", proc.pid, language, timeout_ms)

            stdout = _Capture(limit)
            stderr = _Capture(limit)
            readers = [
                asyncio.create_task(_pump(proc.stdout, stdout)),
                asyncio.create_task(_pump(proc.stderr, stderr)),
            ]

            try:
                if stdin is not None and proc.stdin is not None:
                    try:
                        proc.stdin.write(stdin.encode("utf-8"))
                        await proc.stdin.drain()
                    except (BrokenPipeError, ConnectionResetError):
                        pass
                    finally:
                        proc.stdin.close()
                await asyncio.wait_for(proc.wait(), timeout=max(0.0, deadline - time.monotonic()))
            except asyncio.TimeoutError:
                _kill_group(proc)
                await proc.wait()
                await _drain(readers)
                logger.warning("Sandbox pid=%d killed after %dms timeout", proc.pid, timeout_ms)
                raise ExecutionTimeoutError(timeout_ms, stdout.text(), stderr.text()) from None
            except asyncio.CancelledError:
                _kill_group(proc)
                await proc.wait()
                await _drain(readers)
                logger.info("Sandbox pid=%d killed on cancellation", proc.pid)
                raise
            finally:
                if budget is not None:
                    budget.stdout, budget.stderr = stdout.text(), stderr.text()

            # Background children may still hold the pipes open
            _kill_group(proc)
            await _drain(readers)
            elapsed_ms = int((time.monotonic() - started) * 1000)

            return ExecutionResult(
                stdout=stdout.text(),
                stderr=stderr.text(),
                exit_code=proc.returncode if proc.returncode is not None else -1,
                execution_time_ms=elapsed_ms,
                truncated=stdout.truncated or stderr.truncated,
            )
        finally:
            shutil.rmtree(scratch, ignore_errors=True)
