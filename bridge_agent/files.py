"""
File Operations
read / write / open handlers. Paths are resolved against the connection's
working directory.
"""

import asyncio
import logging
import os
import sys

from . import paths, protocol

log = logging.getLogger(__name__)

WRITE_OK = "Write operation successful."


def _read_text(path: str) -> str:
    with open(path, 'r', encoding='utf-8', errors='replace', newline='') as fh:
        return fh.read()


def _write_text(path: str, content: str):
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(path, 'w', encoding='utf-8', newline='') as fh:
        fh.write(content)


async def read_file(connection, path: str, request_id=None) -> bool:
    """Reply with one terminal `file_content`, or `error` if unreadable."""
    resolved = paths.resolve(connection.working_directory, path)
    try:
        content = await asyncio.to_thread(_read_text, resolved)
    except (OSError, ValueError) as e:
        log.info("Read failed for %s: %s", resolved, e)
        await connection.send(protocol.reply(protocol.ERROR, request_id, content=str(e)))
        return False
    await connection.send(protocol.reply(protocol.FILE_CONTENT, request_id, content=content))
    return True


async def write_file(connection, filename: str, content: str, request_id=None) -> bool:
    """Create parents as needed; reply `system` on success, `error` otherwise."""
    resolved = paths.resolve(connection.working_directory, filename)
    try:
        await asyncio.to_thread(_write_text, resolved, content)
    except (OSError, ValueError) as e:
        log.info("Write failed for %s: %s", resolved, e)
        await connection.send(protocol.reply(protocol.ERROR, request_id, content=str(e)))
        return False
    log.info("Wrote %d chars to %s", len(content), resolved)
    await connection.send(protocol.reply(protocol.SYSTEM, request_id, content=WRITE_OK))
    return True


def opener_argv(target: str):
    if sys.platform == "darwin":
        return ["open", target]
    return ["xdg-open", target]


async def open_target(connection, target: str):
    """
    Hand `target` to the platform's default handler.

    Fire-and-forget: nothing is sent back, failures are only logged.
    URLs pass through untouched; anything else is resolved as a path.
    """
    if "://" not in target:
        resolved = paths.resolve(connection.working_directory, target)
        if os.path.exists(resolved):
            target = resolved

    if sys.platform == "win32":
        try:
            os.startfile(target)
        except (OSError, ValueError) as e:
            log.warning("Open failed for %s: %s", target, e)
        return

    try:
        proc = await asyncio.create_subprocess_exec(
            *opener_argv(target),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except (OSError, ValueError) as e:
        log.warning("Open failed for %s: %s", target, e)
        return
    code = await proc.wait()
    if code != 0:
        log.warning("Opener exited with %d for %s", code, target)
