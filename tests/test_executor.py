import asyncio
import sys
from pathlib import Path

import pytest

from bridge_agent import executor, protocol
from bridge_agent.executor import ProcessExecutor

from support import FakeConnection

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell commands")


def test_shell_argv_passes_command_as_single_argument() -> None:
    argv = executor.shell_argv("echo a && echo b")
    assert argv[-1] == "echo a && echo b"
    if sys.platform == "win32":
        assert argv[0] == "powershell.exe"
    else:
        assert argv[-2] == "-c"


@posix_only
def test_command_streams_output_then_exit(tmp_path: Path) -> None:
    conn = FakeConnection(str(tmp_path))
    code = asyncio.run(ProcessExecutor(conn).execute("echo hello", "r1"))
    assert code == 0
    assert conn.sent[-1] == {"type": "exit", "code": 0, "requestId": "r1"}
    out = "".join(m["content"] for m in conn.sent if m["type"] == "output")
    assert out == "hello\n"
    assert all(m["requestId"] == "r1" for m in conn.sent)


@posix_only
def test_stderr_is_sent_as_error_chunks(tmp_path: Path) -> None:
    conn = FakeConnection(str(tmp_path))
    code = asyncio.run(ProcessExecutor(conn).execute("echo oops 1>&2; exit 3", "r2"))
    assert code == 3
    errors = [m for m in conn.sent if m["type"] == "error"]
    assert "".join(m["content"] for m in errors) == "oops\n"
    assert conn.sent[-1]["type"] == "exit"
    assert conn.sent[-1]["code"] == 3


@posix_only
def test_exit_is_sent_exactly_once_and_last(tmp_path: Path) -> None:
    conn = FakeConnection(str(tmp_path))
    asyncio.run(ProcessExecutor(conn, chunk_size=4).execute("printf 'abcdefghij'; printf 'xyz' 1>&2", "r3"))
    assert conn.types().count("exit") == 1
    assert conn.types()[-1] == "exit"
    out = "".join(m["content"] for m in conn.sent if m["type"] == "output")
    assert out == "abcdefghij"


@posix_only
def test_command_runs_in_connection_directory(tmp_path: Path) -> None:
    conn = FakeConnection(str(tmp_path))
    asyncio.run(ProcessExecutor(conn).execute("pwd", "r4"))
    out = "".join(m["content"] for m in conn.sent if m["type"] == "output")
    assert Path(out.strip()).resolve() == tmp_path.resolve()


def test_cd_updates_directory_without_spawning(tmp_path: Path) -> None:
    (tmp_path / "sub").mkdir()
    conn = FakeConnection(str(tmp_path))
    ex = ProcessExecutor(conn)
    result = asyncio.run(ex.execute("cd sub", "r5"))
    assert result is None
    assert conn.working_directory == str(tmp_path / "sub")
    assert conn.sent == [{"type": "cwd", "content": str(tmp_path / "sub"), "requestId": "r5"}]


def test_cd_to_missing_directory_reports_error(tmp_path: Path) -> None:
    conn = FakeConnection(str(tmp_path))
    asyncio.run(ProcessExecutor(conn).execute("cd /nonexistent", "r1"))
    assert conn.sent == [{
        "type": "error",
        "content": "Directory not found: /nonexistent",
        "requestId": "r1",
    }]
    assert conn.working_directory == str(tmp_path)


def test_cd_does_not_touch_process_cwd(tmp_path: Path) -> None:
    before = Path.cwd()
    conn = FakeConnection(str(tmp_path))
    asyncio.run(ProcessExecutor(conn).execute(f"cd {tmp_path}", None))
    assert Path.cwd() == before


def test_spawn_failure_terminates_request(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(executor, "shell_argv", lambda command: ["/definitely/not/a/shell", command])
    conn = FakeConnection(str(tmp_path))
    code = asyncio.run(ProcessExecutor(conn).execute("echo hi", "r6"))
    assert code == -1
    assert conn.types() == ["error", "exit"]
    assert conn.sent[-1] == {"type": "exit", "code": -1, "requestId": "r6"}


@posix_only
def test_kill_all_stops_running_processes(tmp_path: Path) -> None:
    conn = FakeConnection(str(tmp_path))
    ex = ProcessExecutor(conn)

    async def scenario():
        task = asyncio.ensure_future(ex.execute("sleep 30", "r7"))
        for _ in range(100):
            if ex.running:
                break
            await asyncio.sleep(0.01)
        assert ex.running == 1
        ex.kill_all()
        return await asyncio.wait_for(task, 5)

    code = asyncio.run(scenario())
    assert code != 0
    assert conn.sent[-1]["type"] == protocol.EXIT


def test_nul_byte_in_command_still_terminates(tmp_path: Path) -> None:
    conn = FakeConnection(str(tmp_path))
    code = asyncio.run(ProcessExecutor(conn).execute("echo a\x00b", "r8"))
    assert code == -1
    assert conn.types() == ["error", "exit"]
    assert conn.sent[0]["requestId"] == "r8"
    assert conn.sent[-1] == {"type": "exit", "code": -1, "requestId": "r8"}
