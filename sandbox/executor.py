"""
Sandbox Executor — runs FUNCTIONAL handler procedures out of process.

Responsibility:
- Decode the stored procedure (base64 UTF-8) and validate it statically
- Run it in a separate interpreter with resource limits and a hard deadline
- Relay send_message() calls as they happen and proxy fetch() over httpx
- Always kill and reap the child, whatever the outcome

Nothing the procedure does can reach the host process: it talks to us over
JSON lines on stdin/stdout and only sees the capabilities the runner exposes.
"""

import asyncio
import base64
import binascii
import collections
import json
import logging
import os
import sys
import tempfile
import time
from pathlib import Path
from typing import Any, AsyncIterator

import httpx

from sandbox.validator import validate_procedure
from shared.errors import SandboxExecutionError
from shared.models import RequestContext, SandboxContext, SandboxEvent

logger = logging.getLogger(__name__)

RUNNER_PATH = Path(__file__).with_name("runner.py")

_CREDENTIAL_HEADERS = frozenset({"authorization", "cookie", "proxy-authorization", "x-api-key"})
_FETCH_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"})
_STDERR_TAIL_LINES = 20
_MAX_PROTOCOL_LINE = 8 * 1024 * 1024


def decode_procedure(encoded: str) -> str:
    """Strict base64 -> UTF-8 text."""
    try:
        raw = base64.b64decode((encoded or "").strip(), validate=True)
        return raw.decode("utf-8")
    except (binascii.Error, ValueError) as e:
        raise SandboxExecutionError(f"Handler procedure is not valid base64 UTF-8: {e}") from e


def sandbox_request_snapshot(request_context: RequestContext | None) -> dict[str, Any]:
    """Plain-data view of the inbound request, without credentials."""
    if request_context is None:
        return {}
    headers = {
        key: value
        for key, value in request_context.headers.items()
        if key.lower() not in _CREDENTIAL_HEADERS
    }
    return {
        "origin": request_context.origin,
        "referer": request_context.referer,
        "host": request_context.host,
        "method": request_context.method,
        "url": request_context.url,
        "client_ip": request_context.client_ip,
        "user_agent": request_context.user_agent,
        "headers": headers,
    }


class SandboxExecutor:
    """Runs one procedure per call; safe to share across concurrent requests."""

    def __init__(
        self,
        timeout_seconds: float | None = None,
        memory_limit_mb: int | None = None,
        fetch_timeout_seconds: float | None = None,
        fetch_max_bytes: int | None = None,
        python_executable: str | None = None,
    ):
        self.timeout_seconds = float(
            timeout_seconds if timeout_seconds is not None else os.getenv("SANDBOX_TIMEOUT_SECONDS", "60")
        )
        self.memory_limit_mb = int(
            memory_limit_mb if memory_limit_mb is not None else os.getenv("SANDBOX_MEMORY_LIMIT_MB", "512")
        )
        self.fetch_timeout_seconds = float(
            fetch_timeout_seconds
            if fetch_timeout_seconds is not None
            else os.getenv("SANDBOX_FETCH_TIMEOUT_SECONDS", "15")
        )
        self.fetch_max_bytes = int(
            fetch_max_bytes if fetch_max_bytes is not None else os.getenv("SANDBOX_FETCH_MAX_BYTES", str(1024 * 1024))
        )
        self.python_executable = python_executable or sys.executable

    async def execute(self, encoded_procedure: str, context: SandboxContext) -> AsyncIterator[SandboxEvent]:
        """
        Run a procedure, yielding a ``message`` event per send_message() call
        and one final ``result`` event.

        Raises SandboxExecutionError on rejection, failure or timeout. Events
        already yielded stay delivered.
        """
        source = decode_procedure(encoded_procedure)
        validate_procedure(source)

        deadline = time.monotonic() + self.timeout_seconds
        job = {
            "source": source,
            "params": context.params,
            "request": context.request,
            "limits": {
                "memory_mb": self.memory_limit_mb,
                "cpu_seconds": int(self.timeout_seconds) + 1,
            },
        }
        try:
            job_line = json.dumps(job, ensure_ascii=False) + "\n"
        except (TypeError, ValueError) as e:
            raise SandboxExecutionError(f"Handler parameters are not serializable: {e}") from e

        with tempfile.TemporaryDirectory(prefix="intent-sandbox-") as workdir:
            process = await asyncio.create_subprocess_exec(
                self.python_executable,
                "-I",
                str(RUNNER_PATH),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=workdir,
                env={"PYTHONIOENCODING": "utf-8"},
                limit=_MAX_PROTOCOL_LINE,
            )
            stderr_tail: collections.deque[str] = collections.deque(maxlen=_STDERR_TAIL_LINES)
            stderr_task = asyncio.create_task(self._drain_stderr(process, stderr_tail))
            try:
                async with httpx.AsyncClient(timeout=self.fetch_timeout_seconds, follow_redirects=True) as http:
                    await self._write_line(process, job_line)
                    while True:
                        message = await self._read_message(process, deadline, stderr_tail)
                        kind = message.get("type")
                        if kind == "emit":
                            yield SandboxEvent(kind="message", text=str(message.get("text", "")))
                        elif kind == "fetch":
                            reply = await self._proxy_fetch(http, message, deadline)
                            await self._write_line(process, json.dumps(reply, ensure_ascii=False) + "\n")
                        elif kind == "result":
                            yield SandboxEvent(kind="result", value=message.get("value"))
                            return
                        elif kind == "error":
                            raise SandboxExecutionError(
                                f"{message.get('error_type', 'Error')}: {message.get('message', '')}"
                            )
                        else:
                            raise SandboxExecutionError(f"Unexpected sandbox message type: {kind!r}")
            finally:
                await self._terminate(process)
                stderr_task.cancel()
                try:
                    await stderr_task
                except asyncio.CancelledError:
                    pass
                if stderr_tail:
                    logger.debug("Sandbox stderr tail:\n%s", "\n".join(stderr_tail))

    async def _read_message(
        self,
        process: asyncio.subprocess.Process,
        deadline: float,
        stderr_tail: collections.deque,
    ) -> dict[str, Any]:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise SandboxExecutionError(f"Handler procedure timed out after {self.timeout_seconds:g}s")
        try:
            line = await asyncio.wait_for(process.stdout.readline(), timeout=remaining)
        except asyncio.TimeoutError:
            raise SandboxExecutionError(f"Handler procedure timed out after {self.timeout_seconds:g}s") from None
        except ValueError as e:  # line longer than the stream limit
            raise SandboxExecutionError(f"Sandbox message too large: {e}") from e
        if not line:
            await process.wait()
            detail = stderr_tail[-1] if stderr_tail else "no output"
            raise SandboxExecutionError(
                f"Sandbox exited unexpectedly (code {process.returncode}): {detail}"
            )
        try:
            message = json.loads(line)
        except json.JSONDecodeError as e:
            raise SandboxExecutionError(f"Malformed sandbox message: {e}") from e
        if not isinstance(message, dict):
            raise SandboxExecutionError("Malformed sandbox message: expected an object")
        return message

    async def _proxy_fetch(self, http: httpx.AsyncClient, message: dict[str, Any], deadline: float) -> dict[str, Any]:
        request_id = message.get("id")
        outbound = message.get("request") or {}
        url = str(outbound.get("url", ""))
        method = str(outbound.get("method", "GET")).upper()
        reply: dict[str, Any] = {"type": "fetch_result", "id": request_id}

        try:
            parsed = httpx.URL(url)
        except httpx.InvalidURL:
            parsed = None
        if parsed is None or parsed.scheme not in ("http", "https") or not parsed.host:
            reply["error"] = f"unsupported url: {url!r}"
            return reply
        if method not in _FETCH_METHODS:
            reply["error"] = f"unsupported method: {method}"
            return reply

        kwargs: dict[str, Any] = {"headers": outbound.get("headers") or {}}
        if outbound.get("json") is not None:
            kwargs["json"] = outbound["json"]
        elif outbound.get("data") is not None:
            kwargs["content"] = str(outbound["data"]).encode("utf-8")

        remaining = max(0.0, deadline - time.monotonic())
        try:
            return await asyncio.wait_for(self._fetch(http, method, url, kwargs, reply), timeout=remaining)
        except asyncio.TimeoutError:
            reply["error"] = "fetch timed out"
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            reply["error"] = f"{type(e).__name__}: {e}"
        return reply

    async def _fetch(
        self,
        http: httpx.AsyncClient,
        method: str,
        url: str,
        kwargs: dict[str, Any],
        reply: dict[str, Any],
    ) -> dict[str, Any]:
        logger.info("Sandbox fetch: %s %s", method, url)
        async with http.stream(method, url, **kwargs) as response:
            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if len(body) > self.fetch_max_bytes:
                    reply["error"] = f"response exceeds {self.fetch_max_bytes} bytes"
                    return reply
            reply.update(
                status_code=response.status_code,
                headers=dict(response.headers),
                text=bytes(body).decode(response.encoding or "utf-8", errors="replace"),
                url=str(response.url),
            )
        return reply

    @staticmethod
    async def _write_line(process: asyncio.subprocess.Process, line: str) -> None:
        try:
            process.stdin.write(line.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise SandboxExecutionError(f"Sandbox channel closed: {e}") from e

    @staticmethod
    async def _drain_stderr(process: asyncio.subprocess.Process, tail: collections.deque) -> None:
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            tail.append(line.decode("utf-8", errors="replace").rstrip())

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning("Sandbox child %s did not exit after kill", process.pid)
