"""
Process Executor
Runs one host shell process per `command` message and streams its output
back over the owning connection.

- stdout chunks  -> `output`
- stderr chunks  -> `error`
- termination    -> a single `exit` (terminal)
- `cd` is a builtin: no process, updates the connection's directory
"""

import asyncio
import codecs
import logging
import shutil
import sys
from typing import List, Optional, Set

from . import paths, protocol

log = logging.getLogger(__name__)

CHUNK_SIZE = 4096


def shell_argv(command: str) -> List[str]:
    """Platform shell invocation with the command as a single argument."""
    if sys.platform == "win32":
        return ["powershell.exe", "-NoProfile", "-Command", command]
    shell = shutil.which("bash") or "/bin/sh"
    return [shell, "-c", command]


class ProcessExecutor:
    """
    Executes commands for a single connection.

    The connection must expose `working_directory` and an async `send(msg)`.
    Several executions may be in flight at once; nothing serialises them.
    """

    def __init__(self, connection, chunk_size: int = CHUNK_SIZE):
        self.connection = connection
        self.chunk_size = chunk_size
        self._processes: Set[asyncio.subprocess.Process] = set()

    @property
    def running(self) -> int:
        return len(self._processes)

    async def execute(self, command: str, request_id=None) -> Optional[int]:
        """Run `command`, returning its exit code (None for the cd builtin)."""
        target = protocol.cd_target(command)
        if target is not None:
            await self.change_directory(target, request_id)
            return None
        return await self.spawn(command.strip(), request_id)

    async def change_directory(self, target: str, request_id=None) -> bool:
        conn = self.connection
        new_dir = paths.change_directory(conn.working_directory, target)
        if new_dir is None:
            missing = paths.resolve(conn.working_directory, target)
            await conn.send(protocol.reply(
                protocol.ERROR, request_id, content=f"Directory not found: {missing}"))
            return False
        conn.working_directory = new_dir
        log.debug("cwd -> %s", new_dir)
        await conn.send(protocol.reply(protocol.CWD, request_id, content=new_dir))
        return True

    async def spawn(self, command: str, request_id=None) -> int:
        conn = self.connection
        argv = shell_argv(command)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=conn.working_directory,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            log.warning("Spawn failed for %r: %s", command, e)
            await conn.send(protocol.reply(protocol.ERROR, request_id, content=str(e)))
            await conn.send(protocol.reply(protocol.EXIT, request_id, code=-1))
            return -1

        log.info("[%s] pid %d: %s", request_id, proc.pid, command)
        self._processes.add(proc)
        try:
            await asyncio.gather(
                self._pump(proc.stdout, protocol.OUTPUT, request_id),
                self._pump(proc.stderr, protocol.ERROR, request_id),
            )
            code = await proc.wait()
        finally:
            self._processes.discard(proc)

        log.debug("[%s] pid %d exited with %d", request_id, proc.pid, code)
        await conn.send(protocol.reply(protocol.EXIT, request_id, code=code))
        return code

    async def _pump(self, stream: asyncio.StreamReader, msg_type: str, request_id):
        # Incremental decode keeps multi-byte characters split across reads intact
        decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        while True:
            data = await stream.read(self.chunk_size)
            text = decoder.decode(data, final=not data)
            if text:
                await self.connection.send(protocol.reply(msg_type, request_id, content=text))
            if not data:
                break

    def kill_all(self):
        """Kill every process still running for this connection."""
        for proc in list(self._processes):
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
