#!/usr/bin/env python3
"""
Host Bridge Controller
Drives a host agent on behalf of the conversational layer.

Responsibilities:
- Keep one authorized link to the agent (discovery, backoff, handshake)
- Tag every request with a fresh requestId
- Resolve each caller once with the aggregated, ordered reply
- Provide an interactive operator CLI
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Callable, Dict, Optional

from bridge_agent import protocol
from bridge_agent.config import setup_logging
from bridge_agent.errors import BridgeError

from . import __version__
from .config import ControllerConfig
from .connection import ConnectionManager
from .correlator import BridgeResult, RequestCorrelator

log = logging.getLogger(__name__)


class BridgeController:
    def __init__(self, config: ControllerConfig):
        self.config = config
        self.correlator = RequestCorrelator()
        self.link = ConnectionManager(
            config.host,
            config.ports,
            token=config.token,
            correlator=self.correlator,
            backoff_base=config.backoff_base,
            backoff_max=config.backoff_max,
            max_retries=config.max_retries,
        )
        self.cwd: Optional[str] = None
        self.telemetry: Dict[str, Any] = {}
        self.link.add_listener(self._track)

    def _track(self, msg: dict):
        if msg["type"] == protocol.CWD:
            self.cwd = msg.get("content")
        elif msg["type"] == protocol.CONFIG:
            self.telemetry = {k: v for k, v in msg.items() if k not in ("type", "requestId")}

    def add_listener(self, callback: Callable[[dict], None]):
        """Receive every agent message, e.g. to mirror it into a UI log."""
        self.link.add_listener(callback)

    async def start(self, wait: bool = True):
        self.link.start()
        if wait:
            await self.link.wait_authorized(self.config.connect_timeout)

    async def stop(self):
        await self.link.stop()

    async def send(self, message: Dict[str, Any], expects_reply: bool = True) -> Optional[BridgeResult]:
        """
        Send one request and, if a reply is expected, wait for its terminal message.

        The resolver is registered before the frame leaves, so no reply can
        arrive unmatched.
        """
        await self.link.wait_authorized(self.config.connect_timeout)

        msg = dict(message)
        rid = self.correlator.next_id()
        msg["requestId"] = rid

        future = None
        if expects_reply:
            terminals = protocol.terminal_types(msg["type"], msg.get("content"))
            future = self.correlator.register(rid, msg["type"], terminals, self.config.request_timeout)

        try:
            await self.link.send(msg)
        except BridgeError:
            if future is not None:
                self.correlator.cancel(rid)
            raise

        if future is None:
            return None
        return await future

    async def run_command(self, command: str) -> BridgeResult:
        return await self.send({"type": protocol.COMMAND, "content": command})

    async def read_file(self, path: str) -> BridgeResult:
        return await self.send({"type": protocol.READ, "path": path})

    async def write_file(self, filename: str, content: str) -> BridgeResult:
        return await self.send({"type": protocol.WRITE, "filename": filename, "content": content})

    async def open_target(self, target: str):
        await self.send({"type": protocol.OPEN, "target": target}, expects_reply=False)

    async def get_config(self) -> BridgeResult:
        return await self.send({"type": protocol.GET_CONFIG})


def show_info(controller: BridgeController):
    """Display agent telemetry."""
    info = controller.telemetry
    print("\n=== Agent Info ===")
    print(f"Link:     ws://{controller.config.host}:{controller.link.port}")
    print(f"Platform: {info.get('platform', 'N/A')} ({info.get('arch', 'N/A')})")
    print(f"Hostname: {info.get('hostname', 'N/A')}")
    print(f"Admin:    {info.get('isAdmin', 'N/A')}")
    print(f"Memory:   {info.get('memory', 'N/A')}")
    print(f"CPU:      {info.get('cpu', 'N/A')}")
    print(f"Version:  {info.get('version', 'N/A')}")
    print(f"CWD:      {controller.cwd}")
    print("==================\n")


def show_help():
    print("""
Host Bridge Controller Commands:
  exec <cmd>              Run a shell command on the host (e.g. 'exec ls -la')
  cd <dir>                Change the host working directory
  read <path>             Print a host file
  write <path> <text>     Write text to a host file
  open <target>           Open a path or URL with the host's default handler
  info                    Refresh and show host telemetry
  exit / quit             Disconnect
  help                    Show this help
""")


def print_result(result: BridgeResult):
    text = result.as_tool_result()
    print(text, file=sys.stdout if result.ok else sys.stderr)


async def interactive_shell(controller: BridgeController):
    """Operator CLI. Every line maps onto one bridge request."""
    while True:
        prompt = f"bridge [{controller.telemetry.get('hostname', '?')}:{controller.cwd}]> "
        try:
            line = (await asyncio.to_thread(input, prompt)).strip()
        except (EOFError, KeyboardInterrupt):
            print("\n[i] Disconnecting...")
            return
        if not line:
            continue

        cmd, _, rest = line.partition(" ")
        rest = rest.strip()
        try:
            if cmd in ("exit", "quit"):
                print("[i] Disconnecting...")
                return
            elif cmd == "help":
                show_help()
            elif cmd == "info":
                await controller.get_config()
                show_info(controller)
            elif cmd == "exec":
                if not rest:
                    print("[!] Usage: exec <command>")
                    continue
                print_result(await controller.run_command(rest))
            elif cmd == "cd":
                print_result(await controller.run_command(line))
            elif cmd == "read":
                print_result(await controller.read_file(rest))
            elif cmd == "write":
                path, _, text = rest.partition(" ")
                if not path:
                    print("[!] Usage: write <path> <text>")
                    continue
                print_result(await controller.write_file(path, text))
            elif cmd == "open":
                await controller.open_target(rest)
            else:
                print("[!] Unknown command. Type 'help' for options.")
        except BridgeError as e:
            print(f"[!] {e}", file=sys.stderr)


def main():
    parser = argparse.ArgumentParser(description="Host Bridge Controller")
    parser.add_argument("--host", "-H", default=None,
                        help="Agent address (default: 127.0.0.1)")
    parser.add_argument("--ports", "-p", default=None,
                        help="Comma-separated candidate ports (default: 8080,8081,8082,8083)")
    parser.add_argument("--token", "-k", default=None,
                        help="Shared token (default: $BRIDGE_TOKEN)")
    parser.add_argument("--request-timeout", type=float, default=120.0,
                        help="Seconds before a pending request fails (0 = never)")
    parser.add_argument("--backoff-base", type=float, default=1.0,
                        help="First reconnect delay in seconds (doubles per round)")
    parser.add_argument("--backoff-max", type=float, default=30.0,
                        help="Reconnect delay ceiling in seconds")
    parser.add_argument("--max-retries", type=int, default=None,
                        help="Discovery rounds before giving up (default: forever)")
    parser.add_argument("--command", "-c", default=None,
                        help="Run one command, print its result as JSON and exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    args = parser.parse_args()

    try:
        config = ControllerConfig.from_args(args)
    except ValueError as e:
        print(f"[!] Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(verbose=args.verbose)
    controller = BridgeController(config)

    async def run() -> int:
        try:
            await controller.start()
        except BridgeError as e:
            print(f"[!] {e}", file=sys.stderr)
            return 1
        try:
            if args.command is not None:
                result = await controller.run_command(args.command)
                print(json.dumps({
                    "requestId": result.request_id,
                    "stdout": result.stdout,
                    "stderr": result.stderr,
                    "exitCode": result.exit_code,
                    "content": result.content,
                }))
                return 0 if result.ok else 1
            print(f"[i] Host Bridge Controller v{__version__}")
            print(f"[+] Connected to {controller.telemetry.get('hostname', 'agent')} "
                  f"on port {controller.link.port}")
            await interactive_shell(controller)
            return 0
        except BridgeError as e:
            print(f"[!] {e}", file=sys.stderr)
            return 1
        finally:
            await controller.stop()

    try:
        sys.exit(asyncio.run(run()))
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    main()
