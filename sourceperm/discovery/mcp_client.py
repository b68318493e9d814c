"""
Minimal MCP clients for listing the tools of a live source.

Both transports run the same exchange:

    initialize -> notifications/initialized -> tools/list (paginated)

McpHttpClient speaks streamable HTTP (JSON or SSE responses, optional
Mcp-Session-Id). McpStdioClient spawns the server and speaks
newline-delimited JSON over its stdio.
"""

import asyncio
import itertools
import json
import os
from typing import Any

import httpx

from sourceperm.config.settings import settings
from sourceperm.errors import McpProtocolError, SourceConnectionError
from sourceperm.utils.logging import get_logger

logger = get_logger(__name__)

MAX_PAGES = 50
SESSION_HEADER = "mcp-session-id"


class BaseMcpClient:
    """Shared JSON-RPC exchange; transports implement _request and _notify."""

    def __init__(
        self,
        protocol_version: str | None = None,
        client_name: str | None = None,
    ) -> None:
        self.protocol_version = protocol_version or settings.mcp_protocol_version
        self.client_name = client_name or settings.client_name
        self._ids = itertools.count(1)

    async def list_tools(self) -> list[dict[str, Any]]:
        raise NotImplementedError

    async def _request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    async def _notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        raise NotImplementedError

    def _message(self, method: str, params: dict[str, Any]) -> tuple[int, dict[str, Any]]:
        request_id = next(self._ids)
        return request_id, {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": method,
            "params": params,
        }

    @staticmethod
    def _unwrap(message: dict[str, Any]) -> dict[str, Any]:
        error = message.get("error")
        if error is not None:
            if isinstance(error, dict):
                raise McpProtocolError(
                    f"MCP error: {error.get('message', 'unknown error')}",
                    code=error.get("code"),
                )
            raise McpProtocolError(f"MCP error: {error}")
        result = message.get("result")
        return result if isinstance(result, dict) else {}

    async def _handshake(self) -> dict[str, Any]:
        result = await self._request(
            "initialize",
            {
                "protocolVersion": self.protocol_version,
                "capabilities": {},
                "clientInfo": {"name": self.client_name, "version": "0.1.0"},
            },
        )
        await self._notify("notifications/initialized")
        server = result.get("serverInfo") or {}
        logger.debug(
            "mcp_initialized",
            server=server.get("name"),
            protocol=result.get("protocolVersion"),
        )
        return result

    async def _collect_tools(self) -> list[dict[str, Any]]:
        tools: list[dict[str, Any]] = []
        cursor: str | None = None
        for _ in range(MAX_PAGES):
            params = {"cursor": cursor} if cursor else {}
            result = await self._request("tools/list", params)
            page = result.get("tools") or []
            if not isinstance(page, list):
                raise McpProtocolError("tools/list returned a non-list 'tools'")
            tools.extend(page)
            cursor = result.get("nextCursor")
            if not cursor:
                break
        return tools


class McpHttpClient(BaseMcpClient):
    """MCP over streamable HTTP."""

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.url = url
        self.headers = dict(headers or {})
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._session_id: str | None = None

    async def list_tools(self) -> list[dict[str, Any]]:
        async with httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "Accept": "application/json, text/event-stream",
                **self.headers,
            },
        ) as client:
            self._client = client
            try:
                await self._handshake()
                return await self._collect_tools()
            except httpx.HTTPError as e:
                raise SourceConnectionError(f"Could not reach {self.url}: {e}") from e
            finally:
                self._client = None
                self._session_id = None

    def _session_headers(self) -> dict[str, str]:
        if self._session_id:
            return {"Mcp-Session-Id": self._session_id}
        return {}

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        assert self._client is not None
        response = await self._client.post(
            self.url, json=payload, headers=self._session_headers()
        )
        if response.status_code >= 400:
            raise SourceConnectionError(
                f"MCP server at {self.url} answered HTTP {response.status_code}"
            )
        return response

    async def _request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        request_id, payload = self._message(method, params)
        response = await self._post(payload)

        session_id = response.headers.get(SESSION_HEADER)
        if session_id:
            self._session_id = session_id

        content_type = response.headers.get("content-type", "")
        if content_type.startswith("text/event-stream"):
            message = self._find_in_stream(response.text, request_id)
        else:
            try:
                message = response.json()
            except ValueError as e:
                raise McpProtocolError(f"Invalid JSON from {self.url}: {e}") from e

        if not isinstance(message, dict) or message.get("id") != request_id:
            raise McpProtocolError(f"No response to {method} from {self.url}")
        return self._unwrap(message)

    async def _notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        payload: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params:
            payload["params"] = params
        await self._post(payload)

    @staticmethod
    def _find_in_stream(body: str, request_id: int) -> dict[str, Any] | None:
        """Pick the JSON-RPC response with request_id out of an SSE body."""
        data_lines: list[str] = []
        for line in body.splitlines() + [""]:
            if line.startswith("data:"):
                data_lines.append(line[5:].lstrip())
                continue
            if line.strip() or not data_lines:
                continue
            data = "\n".join(data_lines)
            data_lines = []
            try:
                message = json.loads(data)
            except ValueError:
                logger.warning("mcp_sse_event_unreadable", data=data[:200])
                continue
            if isinstance(message, dict) and message.get("id") == request_id:
                return message
        return None


class McpStdioClient(BaseMcpClient):
    """MCP over a spawned process's stdin/stdout."""

    def __init__(
        self,
        command: str,
        args: list[str] | tuple[str, ...] = (),
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.command = command
        self.args = list(args)
        self.env = dict(env or {})
        self.cwd = cwd
        self._process: asyncio.subprocess.Process | None = None

    async def list_tools(self) -> list[dict[str, Any]]:
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                env={**os.environ, **self.env},
                cwd=self.cwd,
                limit=4 * 1024 * 1024,
            )
        except OSError as e:
            raise SourceConnectionError(f"Failed to start {self.command}: {e}") from e

        try:
            await self._handshake()
            return await self._collect_tools()
        finally:
            await self._terminate()

    async def _write(self, payload: dict[str, Any]) -> None:
        assert self._process is not None and self._process.stdin is not None
        try:
            self._process.stdin.write((json.dumps(payload) + "\n").encode("utf-8"))
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise SourceConnectionError(f"{self.command} closed its input: {e}") from e

    async def _request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        request_id, payload = self._message(method, params)
        await self._write(payload)

        assert self._process is not None and self._process.stdout is not None
        while True:
            line = await self._process.stdout.readline()
            if not line:
                raise SourceConnectionError(
                    f"{self.command} exited before answering {method}"
                )
            try:
                message = json.loads(line)
            except ValueError:
                # Servers sometimes print banners on stdout
                logger.debug("mcp_stdio_line_skipped", line=line[:200])
                continue
            if isinstance(message, dict) and message.get("id") == request_id:
                return self._unwrap(message)

    async def _notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        payload: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params:
            payload["params"] = params
        await self._write(payload)

    async def _terminate(self) -> None:
        process, self._process = self._process, None
        if process is None or process.returncode is not None:
            return
        if process.stdin is not None:
            process.stdin.close()
        try:
            await asyncio.wait_for(process.wait(), timeout=2.0)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()


__all__ = ["BaseMcpClient", "McpHttpClient", "McpStdioClient"]
