from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

from arp_client.config.settings import Settings
from arp_client.core.errors import LocalExecutionFault
from arp_client.core.local_executor import (
    LocalActionExecutor,
    expand_command_fallbacks,
    normalize_commands,
    run_command,
)
from arp_client.state.session_state import ConfirmationAction


def _action(tmp_path, **fields) -> ConfirmationAction:
    payload = {"action_id": "act_1", "action": "write_files", "cwd": str(tmp_path)}
    payload.update(fields)
    return ConfirmationAction.model_validate(payload)


def _py(code: str) -> list[str]:
    return [sys.executable, "-c", code]


def test_normalize_commands_shapes():
    assert normalize_commands(None, ["python", "main.py"]) == [["python", "main.py"]]
    assert normalize_commands(["python", "main.py"]) == [["python", "main.py"]]
    assert normalize_commands([["python", "-V"], ["python", "main.py"]]) == [["python", "-V"], ["python", "main.py"]]
    assert normalize_commands("python -c 'print(1)'") == [["python", "-c", "print(1)"]]
    assert normalize_commands([["python", "-V"]], ["ignored"]) == [["python", "-V"]]
    assert normalize_commands(None, None) == []
    assert normalize_commands("   ") == []


def test_python_fallbacks_prefer_project_venv(tmp_path):
    venv_python = tmp_path / ".venv" / "bin" / "python"
    venv_python.parent.mkdir(parents=True)
    venv_python.write_text("", encoding="utf-8")

    variants = expand_command_fallbacks(["python", "-m", "pip", "install", "numpy"], "install_package", tmp_path)

    assert [variant[0] for variant in variants] == [
        str(venv_python),
        "python",
        "python3",
        "python3.11",
        "/usr/bin/python3",
    ]
    assert all(variant[1:] == ["-m", "pip", "install", "numpy"] for variant in variants)


def test_python_fallbacks_are_deduplicated(tmp_path):
    variants = expand_command_fallbacks(["python3", "main.py"], "run_local_commands", tmp_path)
    assert [variant[0] for variant in variants] == ["python3", "python3.11", "/usr/bin/python3"]


def test_no_fallbacks_outside_python_actions(tmp_path):
    assert expand_command_fallbacks(["python", "main.py"], "write_files", tmp_path) == [["python", "main.py"]]
    assert expand_command_fallbacks(["pip", "install", "x"], "install_package", tmp_path) == [["pip", "install", "x"]]


@pytest.mark.asyncio
async def test_writes_files_and_directories_inside_cwd(tmp_path, settings):
    action = _action(
        tmp_path,
        file_operations=[
            {"path": "data/raw", "mode": "mkdir"},
            {"path": "src/model.py", "content": "VALUE = 1\n"},
            {"path": str(tmp_path / "config.py"), "content": "SEED = 42\n", "mode": "write"},
        ],
    )

    result = await LocalActionExecutor(settings).execute(action)

    assert result.returncode == 0
    assert (tmp_path / "data" / "raw").is_dir()
    assert (tmp_path / "src" / "model.py").read_text(encoding="utf-8") == "VALUE = 1\n"
    assert (tmp_path / "config.py").read_text(encoding="utf-8") == "SEED = 42\n"
    assert len(result.created_files) == 3
    assert result.cwd == str(tmp_path.resolve())
    assert result.metadata["action_id"] == "act_1"


@pytest.mark.asyncio
async def test_escaping_paths_are_recorded_not_written(tmp_path, settings):
    workdir = tmp_path / "project"
    workdir.mkdir()
    action = _action(
        workdir,
        file_operations=[
            {"path": "../outside.txt", "content": "nope"},
            {"path": "/etc/arp-client-test.txt", "content": "nope"},
            {"path": "inside.txt", "content": "ok"},
        ],
    )

    result = await LocalActionExecutor(settings).execute(action)

    assert result.returncode == 1
    assert not (tmp_path / "outside.txt").exists()
    assert (workdir / "inside.txt").read_text(encoding="utf-8") == "ok"
    blocked = [row for row in result.metadata["file_results"] if row["success"] is False]
    assert len(blocked) == 2
    assert all(row["reason"] == "Path escapes action cwd" for row in blocked)


@pytest.mark.asyncio
async def test_permission_error_raises_local_execution_fault(tmp_path, settings, monkeypatch):
    def deny_write(self, *args, **kwargs):
        raise PermissionError(13, "Permission denied", str(self))

    monkeypatch.setattr(Path, "write_text", deny_write)
    action = _action(tmp_path, file_operations=[{"path": "main.py", "content": "x"}])

    with pytest.raises(LocalExecutionFault):
        await LocalActionExecutor(settings).execute(action)


@pytest.mark.asyncio
async def test_colliding_paths_are_recorded_and_later_ops_run(tmp_path, settings):
    (tmp_path / "blocker").write_text("", encoding="utf-8")
    action = _action(
        tmp_path,
        command=_py("print('after files')"),
        file_operations=[
            {"path": ".", "content": "x"},
            {"path": "blocker/child.txt", "content": "x"},
            {"path": "ok.txt", "content": "ok"},
        ],
    )

    result = await LocalActionExecutor(settings).execute(action)

    assert result.returncode == 1
    assert (tmp_path / "ok.txt").read_text(encoding="utf-8") == "ok"
    failed = [row for row in result.metadata["file_results"] if row["success"] is False]
    assert len(failed) == 2
    assert all(row["reason"] for row in failed)
    assert result.created_files == [str((tmp_path / "ok.txt").resolve())]
    assert result.stdout.strip() == "after files"


@pytest.mark.asyncio
async def test_malformed_path_is_recorded_and_later_ops_run(tmp_path, settings):
    action = _action(tmp_path, file_operations=[{"path": "bad\x00name.txt", "content": "x"}, {"path": "ok.txt", "content": "ok"}])

    result = await LocalActionExecutor(settings).execute(action)

    assert result.returncode == 1
    assert (tmp_path / "ok.txt").read_text(encoding="utf-8") == "ok"
    first = result.metadata["file_results"][0]
    assert first["success"] is False
    assert "name.txt" in first["path"]
    assert first["reason"]


@pytest.mark.asyncio
async def test_command_groups_stop_at_first_failure(tmp_path, settings):
    marker = tmp_path / "marker.txt"
    action = _action(
        tmp_path,
        action="run_local_commands",
        commands=[
            _py("print('first')"),
            _py("import sys; sys.exit(2)"),
            _py(f"open({str(marker)!r}, 'w').write('ran')"),
        ],
    )

    result = await LocalActionExecutor(settings).execute(action)

    assert result.returncode == 1
    assert not marker.exists()
    command_results = result.metadata["command_results"]
    assert [row["returncode"] for row in command_results] == [0, 2]
    assert result.stdout.strip() == "first"
    assert len(result.command) == 2


@pytest.mark.asyncio
async def test_commands_run_in_action_cwd(tmp_path, settings):
    action = _action(tmp_path, action="run_local_commands", command=_py("import os; print(os.getcwd())"))
    result = await LocalActionExecutor(settings).execute(action)
    assert result.returncode == 0
    assert result.stdout.strip() == str(tmp_path.resolve())


@pytest.mark.asyncio
async def test_string_command_is_tokenized(tmp_path, settings):
    action = _action(tmp_path, action="run_local_commands", commands=f'"{sys.executable}" -c "print(40 + 2)"')
    result = await LocalActionExecutor(settings).execute(action)
    assert result.returncode == 0
    assert result.stdout.strip() == "42"


@pytest.mark.skipif(os.name != "posix", reason="venv layout uses bin/")
@pytest.mark.asyncio
async def test_project_venv_interpreter_is_tried_first(tmp_path, settings):
    venv_python = tmp_path / ".venv" / "bin" / "python"
    venv_python.parent.mkdir(parents=True)
    venv_python.symlink_to(sys.executable)
    action = _action(tmp_path, action="run_local_commands", command=["python", "-c", "print('venv')"])

    result = await LocalActionExecutor(settings).execute(action)

    assert result.returncode == 0
    attempts = result.metadata["command_results"][0]["attempts"]
    assert len(attempts) == 1
    assert attempts[0]["command"].startswith(str(venv_python))


@pytest.mark.asyncio
async def test_missing_executable_is_a_failed_result(tmp_path, settings):
    action = _action(tmp_path, action="run_local_commands", command=["arp-definitely-missing-binary", "--help"])
    result = await LocalActionExecutor(settings).execute(action)
    assert result.returncode == 1
    row = result.metadata["command_results"][0]
    assert row["returncode"] == 1
    assert row["stderr"]


@pytest.mark.asyncio
async def test_timeout_kills_command(tmp_path, settings):
    action = _action(
        tmp_path,
        action="run_local_commands",
        command=_py("import time; print('started', flush=True); time.sleep(30)"),
        timeout_seconds=3,
    )

    result = await LocalActionExecutor(settings).execute(action)

    assert result.returncode == 1
    row = result.metadata["command_results"][0]
    assert row["returncode"] == -1
    assert row["timed_out"] is True
    assert "TimeoutExpired" in row["stderr"]
    assert "started" in row["stdout"]
    assert result.duration_sec < 15


@pytest.mark.asyncio
async def test_run_command_keeps_output_tail(tmp_path):
    result = await run_command(_py("print('x' * 5000 + 'END')"), str(tmp_path), 30, 100)
    assert result["returncode"] == 0
    assert len(result["stdout"]) == 100
    assert result["stdout"].endswith("END\n")


@pytest.mark.asyncio
async def test_combined_output_is_capped(tmp_path):
    settings = Settings(_env_file=None, COMBINED_OUTPUT_CAP_CHARS=50)
    action = _action(tmp_path, action="run_local_commands", commands=[_py("print('a' * 40)"), _py("print('b' * 40)")])
    result = await LocalActionExecutor(settings).execute(action)
    assert len(result.stdout) == 50
    assert result.stdout.endswith("b" * 40 + "\n")


@pytest.mark.asyncio
async def test_empty_action_succeeds(tmp_path, settings):
    result = await LocalActionExecutor(settings).execute(_action(tmp_path))
    assert result.returncode == 0
    assert result.command == []
    assert result.created_files == []
