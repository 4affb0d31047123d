#!/usr/bin/env python3
"""
Tool Bridge

Local TCP server exposing ResultTools to agent subprocesses. Agents reach
it through ``dilagent tool <name> --port P --args JSON``.

Protocol: newline-delimited JSON, one request and one response per line.

    request:  {"tool": "hypothesis_set_result", "arguments": {...}}
    response: {"ok": true, "result": {...}}
              {"ok": false, "error": "..."}

Usage:
    async with ToolBridge(tools, host="127.0.0.1", port=0) as bridge:
        env = bridge.agent_env()
        ...
    bridge.raise_if_failed()
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from .errors import DilagentError
from .tools import ResultTools

logger = logging.getLogger(__name__)

PORT_ENV = "DILAGENT_BRIDGE_PORT"
HOST_ENV = "DILAGENT_BRIDGE_HOST"

# Largest request or response line (results may carry lots of evidence)
STREAM_LIMIT = 16 * 1024 * 1024


class ToolBridge:
    """Serves one ResultTools instance on a local port"""

    def __init__(self, tools: ResultTools, host: str = "127.0.0.1", port: int = 0,
                 limit: int = STREAM_LIMIT):
        """
        Args:
            tools: Tool handlers to expose
            host: Interface to bind
            port: Port to bind (0 = any free port)
            limit: Largest accepted request line in bytes
        """
        self.tools = tools
        self.host = host
        self.limit = limit
        self._requested_port = port
        self._server: Optional[asyncio.AbstractServer] = None
        self.port: Optional[int] = None
        self.fatal_error: Optional[BaseException] = None

    async def start(self) -> None:
        """Start listening"""
        self._server = await asyncio.start_server(
            self._handle_client, host=self.host, port=self._requested_port,
            limit=self.limit,
        )
        self.port = self._server.sockets[0].getsockname()[1]
        logger.info(f"Tool bridge listening on {self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the server"""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("Tool bridge stopped")

    async def __aenter__(self) -> "ToolBridge":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.stop()
        return False

    def agent_env(self) -> Dict[str, str]:
        """Environment variables telling an agent where the bridge is"""
        return {HOST_ENV: self.host, PORT_ENV: str(self.port)}

    def raise_if_failed(self) -> None:
        """Re-raise a state/timeline persistence failure hit while serving a tool call"""
        if self.fatal_error is not None:
            raise self.fatal_error

    async def _handle_client(self, reader: asyncio.StreamReader,
                             writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError:
                    logger.warning(f"Tool bridge request over {self.limit} bytes rejected")
                    writer.write(json.dumps({"ok": False, "error": "request too large"})
                                 .encode("utf-8") + b"\n")
                    await writer.drain()
                    break
                if not line:
                    break
                response = await self._dispatch_line(line)
                writer.write(json.dumps(response).encode("utf-8") + b"\n")
                await writer.drain()
        except (ConnectionResetError, BrokenPipeError):
            logger.debug("Tool bridge client disconnected")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionResetError, BrokenPipeError):
                pass

    async def _dispatch_line(self, line: bytes) -> Dict[str, Any]:
        try:
            request = json.loads(line.decode("utf-8").strip())
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            return {"ok": False, "error": f"Invalid JSON: {e}"}

        if not isinstance(request, dict) or not isinstance(request.get("tool"), str):
            return {"ok": False, "error": "request must be an object with a 'tool' name"}

        try:
            return await self.tools.call(request["tool"], request.get("arguments"))
        except DilagentError as e:
            # Persistence failure: tell the agent, and end the run once workers return
            logger.error(f"Tool {request['tool']} failed fatally: {e}")
            self.fatal_error = e
            return {"ok": False, "error": f"internal error: {e}"}


async def call_tool(host: str, port: int, name: str,
                    arguments: Optional[Dict[str, Any]] = None,
                    timeout: float = 60.0) -> Dict[str, Any]:
    """
    Send one tool call to a running bridge.

    Returns:
        The bridge's response object

    Raises:
        OSError: If the bridge cannot be reached
        asyncio.TimeoutError: If no response arrives within timeout
    """
    reader, writer = await asyncio.wait_for(
        asyncio.open_connection(host, port, limit=STREAM_LIMIT), timeout
    )
    try:
        request = {"tool": name, "arguments": arguments or {}}
        writer.write(json.dumps(request).encode("utf-8") + b"\n")
        await writer.drain()
        line = await asyncio.wait_for(reader.readline(), timeout)
    finally:
        writer.close()
        await writer.wait_closed()

    if not line:
        return {"ok": False, "error": "bridge closed the connection"}
    return json.loads(line.decode("utf-8"))
