"""Minimal language server protocol client over a worker's stdio.

Speaks JSON-RPC 2.0 with ``Content-Length`` framing. Tracks a single
open document (the session's ``Untitled.py``) the way the playground's
browser client does, and exposes the handful of queries the playground
needs. In-flight requests can be failed en masse with ``cancel_pending``
so a session close never leaves callers waiting on a dead worker.
"""

import asyncio
import json
import os
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from pyright_playground.config import DOCUMENT_FILENAME
from pyright_playground.errors import (
    LanguageServerError,
    RequestCancelledError,
    WorkerConnectionClosed,
)

# DiagnosticTag.Unnecessary, DiagnosticTag.Deprecated
_DIAGNOSTIC_TAGS = [1, 2]


def encode_message(payload: dict) -> bytes:
    body = json.dumps(payload).encode("utf-8")
    header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
    return header + body


async def read_message(reader: asyncio.StreamReader) -> Optional[dict]:
    """Read one framed message; returns None at end of stream."""
    headers: dict[str, str] = {}
    while True:
        line = await reader.readline()
        if not line:
            return None
        text = line.decode("ascii", errors="replace").strip()
        if not text:
            if headers:
                break
            continue
        name, _, value = text.partition(":")
        headers[name.strip().lower()] = value.strip()

    length = int(headers["content-length"])
    try:
        body = await reader.readexactly(length)
    except asyncio.IncompleteReadError:
        return None
    return json.loads(body.decode("utf-8"))


class LspClient:
    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: Any,
        on_close: Optional[Callable[[], None]] = None,
        label: str = "",
    ):
        self._reader = reader
        self._writer = writer
        self._on_close = on_close
        self._label = label
        self._next_id = 0
        self._pending: dict[int, asyncio.Future] = {}
        self._diagnostic_waiters: dict[int, list[asyncio.Future]] = {}
        self._reader_task: Optional[asyncio.Task] = None
        self._closed = False

        self.document_uri: Optional[str] = None
        self.document_version = 1
        self.document_text = ""
        self._diagnostics: Optional[list] = None
        self._diagnostics_version: Optional[int] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def start(self) -> None:
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        try:
            while True:
                message = await read_message(self._reader)
                if message is None:
                    break
                await self._dispatch(message)
        except (ConnectionError, ValueError, KeyError) as e:
            logger.warning(f"Language server stream {self._label} failed: {e}")
        finally:
            self._connection_lost()

    def _connection_lost(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._fail_all(WorkerConnectionClosed("Language server connection closed"))
        if self._on_close is not None:
            self._on_close()

    def _fail_all(self, error: Exception) -> int:
        futures = list(self._pending.values())
        self._pending.clear()
        for waiters in self._diagnostic_waiters.values():
            futures.extend(waiters)
        self._diagnostic_waiters.clear()

        failed = 0
        for future in futures:
            if not future.done():
                future.set_exception(error)
                failed += 1
        return failed

    def cancel_pending(self) -> int:
        """Fail every in-flight request with RequestCancelledError; returns how many."""
        return self._fail_all(RequestCancelledError("Request canceled"))

    async def aclose(self) -> None:
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._connection_lost()

    # ------------------------------------------------------------------
    # Framing
    # ------------------------------------------------------------------

    async def _send(self, payload: dict) -> None:
        if self._closed:
            raise WorkerConnectionClosed("Language server connection closed")
        try:
            self._writer.write(encode_message(payload))
            await self._writer.drain()
        except (ConnectionError, RuntimeError) as e:
            raise WorkerConnectionClosed(f"Failed to write to language server: {e}") from e

    async def _dispatch(self, message: dict) -> None:
        method = message.get("method")
        if method is not None and "id" in message:
            await self._handle_server_request(message["id"], method, message.get("params"))
        elif method is not None:
            self._handle_notification(method, message.get("params") or {})
        elif "id" in message:
            self._handle_response(message)

    def _handle_response(self, message: dict) -> None:
        future = self._pending.pop(message["id"], None)
        if future is None or future.done():
            return
        error = message.get("error")
        if error is not None:
            future.set_exception(
                LanguageServerError(
                    error.get("code", 0), error.get("message", ""), error.get("data")
                )
            )
        else:
            future.set_result(message.get("result"))

    async def _handle_server_request(self, request_id: Any, method: str, params: Any) -> None:
        if method == "workspace/configuration":
            items = (params or {}).get("items", [])
            result: Any = [{} for _ in items]
        else:
            logger.debug(f"Unhandled language server request {method}")
            result = None
        try:
            await self._send({"jsonrpc": "2.0", "id": request_id, "result": result})
        except WorkerConnectionClosed:
            pass

    def _handle_notification(self, method: str, params: dict) -> None:
        if method == "textDocument/publishDiagnostics":
            self._handle_diagnostics(params)
        elif method == "window/logMessage":
            logger.debug(f"Language server log message: {params.get('message')}")

    def _handle_diagnostics(self, params: dict) -> None:
        if self.document_uri and params.get("uri") not in (None, self.document_uri):
            return
        version = params.get("version")
        if version is None:
            version = -1

        if self._diagnostics_version is None or version >= self._diagnostics_version:
            self._diagnostics = params.get("diagnostics", [])
            self._diagnostics_version = version

        ready = [v for v in self._diagnostic_waiters if version < 0 or v <= version]
        for waiter_version in ready:
            for future in self._diagnostic_waiters.pop(waiter_version):
                if not future.done():
                    future.set_result(self._diagnostics)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request(self, method: str, params: Any = None, timeout: Optional[float] = None) -> Any:
        if self._closed:
            raise WorkerConnectionClosed("Language server connection closed")
        self._next_id += 1
        request_id = self._next_id
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            await self._send(
                {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
            )
            if timeout is not None:
                return await asyncio.wait_for(future, timeout)
            return await future
        except (asyncio.CancelledError, asyncio.TimeoutError):
            if not self._closed:
                try:
                    await self.notify("$/cancelRequest", {"id": request_id})
                except WorkerConnectionClosed:
                    pass
            raise
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: Any = None) -> None:
        await self._send({"jsonrpc": "2.0", "method": method, "params": params})

    async def initialize(
        self,
        root_path: Path,
        files: dict[str, str],
        locale: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        root_uri = root_path.as_uri()
        self.document_uri = (root_path / DOCUMENT_FILENAME).as_uri()

        params: dict[str, Any] = {
            "processId": os.getpid(),
            "clientInfo": {"name": "pyright-playground"},
            "rootUri": root_uri,
            "rootPath": str(root_path),
            "workspaceFolders": [{"uri": root_uri, "name": root_path.name}],
            "capabilities": {
                "textDocument": {
                    "publishDiagnostics": {
                        "tagSupport": {"valueSet": _DIAGNOSTIC_TAGS},
                        "versionSupport": True,
                    },
                    "hover": {"contentFormat": ["markdown", "plaintext"]},
                    "signatureHelp": {},
                },
                "window": {"workDoneProgress": False},
            },
            "initializationOptions": {"files": files},
        }
        if locale:
            params["locale"] = locale

        result = await self.request("initialize", params, timeout=timeout)
        await self.notify("initialized", {})
        await self.notify("workspace/didChangeConfiguration", {"settings": {}})
        await self.notify(
            "textDocument/didOpen",
            {
                "textDocument": {
                    "uri": self.document_uri,
                    "languageId": "python",
                    "version": self.document_version,
                    "text": self.document_text,
                }
            },
        )
        return result

    # ------------------------------------------------------------------
    # Document queries
    # ------------------------------------------------------------------

    async def update_document(self, code: str) -> int:
        self.document_version += 1
        self.document_text = code
        logger.debug(f"Updating text document to version {self.document_version}")
        await self.notify(
            "textDocument/didChange",
            {
                "textDocument": {"uri": self.document_uri, "version": self.document_version},
                "contentChanges": [{"text": code}],
            },
        )
        return self.document_version

    async def _sync_document(self, code: str) -> int:
        if code != self.document_text:
            return await self.update_document(code)
        return self.document_version

    async def get_diagnostics(self, code: str, timeout: Optional[float] = None) -> list:
        if code == self.document_text and self._diagnostics is not None:
            return self._diagnostics

        changed = code != self.document_text
        version = self.document_version + 1 if changed else self.document_version
        future = asyncio.get_running_loop().create_future()
        self._diagnostic_waiters.setdefault(version, []).append(future)
        try:
            if changed:
                await self.update_document(code)
            if timeout is not None:
                return await asyncio.wait_for(future, timeout)
            return await future
        finally:
            self._discard_waiter(version, future)

    def _discard_waiter(self, version: int, future: asyncio.Future) -> None:
        waiters = self._diagnostic_waiters.get(version)
        if waiters is None:
            return
        if future in waiters:
            waiters.remove(future)
        if not waiters:
            del self._diagnostic_waiters[version]

    async def _query(self, method: str, params: Any) -> Any:
        try:
            return await self.request(method, params)
        except LanguageServerError as e:
            logger.debug(f"{method} failed: {e}")
            return None

    def _position_params(self, position: dict) -> dict:
        return {"textDocument": {"uri": self.document_uri}, "position": position}

    async def get_hover(self, code: str, position: dict) -> Any:
        await self._sync_document(code)
        return await self._query("textDocument/hover", self._position_params(position))

    async def get_signature_help(self, code: str, position: dict) -> Any:
        await self._sync_document(code)
        return await self._query("textDocument/signatureHelp", self._position_params(position))

    async def get_completion(self, code: str, position: dict) -> Any:
        await self._sync_document(code)
        return await self._query("textDocument/completion", self._position_params(position))

    async def resolve_completion(self, completion_item: dict) -> Any:
        return await self._query("completionItem/resolve", completion_item)

    async def get_rename_edits(self, code: str, position: dict, new_name: str) -> Any:
        await self._sync_document(code)
        params = self._position_params(position)
        params["newName"] = new_name
        return await self._query("textDocument/rename", params)
