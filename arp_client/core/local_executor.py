from __future__ import annotations

import asyncio
import codecs
import os
import shlex
import time
from pathlib import Path
from typing import Any

from arp_client.config.settings import Settings
from arp_client.core.errors import LocalExecutionFault, SandboxViolation
from arp_client.core.logger import get_logger
from arp_client.core.security import resolve_within_root
from arp_client.state.session_state import ConfirmationAction, ExecutionResult

logger = get_logger(__name__)

PYTHON_FALLBACK_ACTIONS = {"prepare_venv", "install_package", "run_local_commands"}
PYTHON_EXECUTABLES = {"python", "python3", "python3.11"}
PYTHON_FALLBACK_CHAIN = ["python3", "python3.11", "/usr/bin/python3"]
VENV_INTERPRETERS = [
    (".venv", "bin", "python"),
    (".venv", "bin", "python3"),
    (".venv", "Scripts", "python.exe"),
]
DIRECTORY_MODES = {"mkdir", "directory"}
# the action's path is malformed or collides with what is on disk; recorded, not raised
PATH_SHAPE_ERRORS = (IsADirectoryError, NotADirectoryError, FileExistsError, ValueError)
_READ_CHUNK = 65536


def _split_command(text: str) -> list[str]:
    stripped = text.strip()
    return shlex.split(stripped) if stripped else []


def normalize_commands(commands: Any, command: Any = None) -> list[list[str]]:
    """Turn ``commands``/``command`` into an ordered list of argument vectors."""
    if not commands and command:
        if isinstance(command, str):
            single = _split_command(command)
        else:
            single = [str(part) for part in command if str(part).strip()]
        return [single] if single else []

    if not commands:
        return []
    if isinstance(commands, str):
        single = _split_command(commands)
        return [single] if single else []

    if isinstance(commands[0], (list, tuple)):
        vectors = [[str(part) for part in entry] if isinstance(entry, (list, tuple)) else [] for entry in commands]
        return [entry for entry in vectors if entry]

    single = [str(part) for part in commands if str(part).strip()]
    return [single] if single else []


def python_candidates(cwd: str | Path, original: str) -> list[str]:
    candidates: list[str] = []
    base = Path(cwd)
    for parts in VENV_INTERPRETERS:
        interpreter = base.joinpath(*parts)
        if interpreter.exists():
            candidates.append(str(interpreter))
    candidates.append(str(original or "python"))
    candidates.extend(PYTHON_FALLBACK_CHAIN)
    return candidates


def expand_command_fallbacks(argv: list[str], action_name: str, cwd: str | Path) -> list[list[str]]:
    if not argv or action_name not in PYTHON_FALLBACK_ACTIONS:
        return [argv]
    if argv[0].strip().lower() not in PYTHON_EXECUTABLES:
        return [argv]
    args = argv[1:]
    seen: set[str] = set()
    variants: list[list[str]] = []
    for interpreter in python_candidates(cwd, argv[0]):
        key = interpreter.strip().lower()
        if not key or key in seen:
            continue
        seen.add(key)
        variants.append([interpreter, *args])
    return variants or [argv]


class _TailBuffer:
    def __init__(self, cap: int):
        self._cap = int(cap)
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.text = ""

    def feed(self, chunk: bytes, final: bool = False) -> None:
        self.text += self._decoder.decode(chunk, final=final)
        if self._cap > 0 and len(self.text) > self._cap:
            self.text = self.text[-self._cap :]


async def _pump(stream: asyncio.StreamReader | None, buffer: _TailBuffer) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        buffer.feed(chunk)
    buffer.feed(b"", final=True)


async def run_command(argv: list[str], cwd: str, timeout_seconds: float, output_cap: int) -> dict[str, Any]:
    started = time.time()
    if not argv or not argv[0]:
        return {"command": "", "returncode": 1, "stdout": "", "stderr": "Empty command", "duration_sec": 0.0, "timed_out": False}

    command_text = " ".join(argv)
    stdout = _TailBuffer(output_cap)
    stderr = _TailBuffer(output_cap)
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(os.environ),
        )
    except OSError as exc:
        logger.warning("executor.command.spawn_failed", command=command_text, error=str(exc))
        return {
            "command": command_text,
            "returncode": 1,
            "stdout": "",
            "stderr": str(exc),
            "duration_sec": round(time.time() - started, 3),
            "timed_out": False,
        }

    timed_out = False
    completion = asyncio.gather(_pump(proc.stdout, stdout), _pump(proc.stderr, stderr), proc.wait())
    try:
        if timeout_seconds > 0:
            await asyncio.wait_for(completion, timeout=timeout_seconds)
        else:
            await completion
    except asyncio.TimeoutError:
        timed_out = True
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        stderr.feed(f"\nTimeoutExpired: command exceeded {timeout_seconds:g}s".encode("utf-8"))

    returncode = -1 if timed_out else (proc.returncode if proc.returncode is not None else 1)
    return {
        "command": command_text,
        "returncode": returncode,
        "stdout": stdout.text,
        "stderr": stderr.text,
        "duration_sec": round(time.time() - started, 3),
        "timed_out": timed_out,
    }


def _join_tail(chunks: list[str], cap: int) -> str:
    joined = "\n".join(chunk for chunk in chunks if chunk)
    return joined[-cap:] if cap > 0 else joined


class LocalActionExecutor:
    """Runs confirmed actions inside the directory named by ``action.cwd``.

    Ordinary failures (escaping or malformed paths, paths that collide with
    existing files or directories, non-zero exits, missing executables,
    timeouts) are encoded in the returned :class:`ExecutionResult`. Only
    environment faults while materializing files (permissions, full disk)
    raise, as :class:`LocalExecutionFault`.
    """

    def __init__(self, settings: Settings):
        self._settings = settings

    def _apply_file_operations(
        self, action: ConfirmationAction, cwd: Path
    ) -> tuple[list[dict[str, Any]], list[str]]:
        file_results: list[dict[str, Any]] = []
        created_files: list[str] = []
        for op in action.file_operations:
            raw_path = str(op.path or "").strip()
            if not raw_path:
                continue
            try:
                target = resolve_within_root(raw_path, cwd)
            except SandboxViolation as exc:
                logger.warning("executor.file.blocked", action_id=action.action_id, path=exc.path)
                file_results.append({"path": exc.path, "success": False, "reason": exc.message})
                continue
            except ValueError as exc:
                logger.warning("executor.file.invalid_path", action_id=action.action_id, path=repr(raw_path), error=str(exc))
                file_results.append({"path": raw_path, "success": False, "reason": f"Invalid path: {exc}"})
                continue

            mode = str(op.mode or "write").strip().lower()
            try:
                if mode in DIRECTORY_MODES:
                    target.mkdir(parents=True, exist_ok=True)
                else:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    target.write_text(str(op.content or ""), encoding="utf-8")
            except PATH_SHAPE_ERRORS as exc:
                logger.warning("executor.file.failed", action_id=action.action_id, path=str(target), error=str(exc))
                file_results.append({"path": str(target), "success": False, "reason": str(exc)})
                continue
            except OSError as exc:
                raise LocalExecutionFault(f"Failed to materialize {target}: {exc}") from exc
            file_results.append({"path": str(target), "success": True, "mode": mode})
            created_files.append(str(target))
        return file_results, created_files

    async def _run_group(self, argv: list[str], action: ConfirmationAction, cwd: Path) -> dict[str, Any]:
        timeout = float(action.timeout_seconds or 0)
        attempts: list[dict[str, Any]] = []
        final: dict[str, Any] = {}
        for variant in expand_command_fallbacks(argv, action.action, cwd):
            final = await run_command(variant, str(cwd), timeout, self._settings.COMMAND_OUTPUT_CAP_CHARS)
            attempts.append(
                {
                    "command": final["command"],
                    "returncode": final["returncode"],
                    "duration_sec": final["duration_sec"],
                    "timed_out": final["timed_out"],
                }
            )
            logger.info(
                "executor.command.end",
                action_id=action.action_id,
                command=final["command"],
                returncode=final["returncode"],
                duration_sec=final["duration_sec"],
                timed_out=final["timed_out"],
            )
            if final["returncode"] == 0:
                break
        return {**final, "attempts": attempts}

    async def execute(self, action: ConfirmationAction) -> ExecutionResult:
        started = time.time()
        cwd = Path(action.cwd or os.getcwd()).expanduser().resolve()
        logger.info("executor.action.start", action=action.action, action_id=action.action_id, cwd=str(cwd))

        file_results, created_files = self._apply_file_operations(action, cwd)

        command_results: list[dict[str, Any]] = []
        for argv in normalize_commands(action.commands, action.command):
            result = await self._run_group(argv, action, cwd)
            command_results.append(result)
            if result["returncode"] != 0:
                break

        failed_file = any(row["success"] is False for row in file_results)
        failed_command = any(int(row["returncode"]) != 0 for row in command_results)
        returncode = 1 if failed_file or failed_command else 0
        cap = self._settings.COMBINED_OUTPUT_CAP_CHARS

        execution = ExecutionResult(
            returncode=returncode,
            stdout=_join_tail([row["stdout"] for row in command_results], cap),
            stderr=_join_tail([row["stderr"] for row in command_results], cap),
            duration_sec=round(time.time() - started, 3),
            command=[row["command"] for row in command_results if row["command"]],
            cwd=str(cwd),
            created_files=created_files,
            metadata={
                "action": action.action,
                "action_id": action.action_id,
                "file_results": file_results,
                "command_results": command_results,
            },
        )
        logger.info(
            "executor.action.end",
            action=action.action,
            action_id=action.action_id,
            returncode=execution.returncode,
            duration_sec=execution.duration_sec,
            file_count=len(created_files),
            command_count=len(command_results),
        )
        return execution
