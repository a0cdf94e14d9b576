from typing import Any, Awaitable, Optional

from fastapi import Body, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from loguru import logger

from pyright_playground.errors import (
    InvalidOptionsError,
    InvalidVersionError,
    PlaygroundError,
    RequestCancelledError,
    ResolutionError,
    SessionNotFoundError,
    WorkerConnectionClosed,
)
from pyright_playground.lsp_client import LspClient
from pyright_playground.manager import SessionManager
from pyright_playground.session import SessionOptions
from pyright_playground.versions import VersionIndex, get_pyright_versions


def _get_client(manager: SessionManager, session_id: str) -> LspClient:
    session = manager.get(session_id)
    if session is None or session.client is None:
        raise HTTPException(status_code=404, detail=str(SessionNotFoundError(session_id)))
    return session.client


def _require(body: Optional[dict], *keys: str) -> dict:
    body = body or {}
    missing = [key for key in keys if key not in body]
    if missing:
        raise HTTPException(
            status_code=400, detail=f"Missing required field(s): {', '.join(missing)}"
        )
    return body


async def _forward(session_id: str, call: Awaitable[Any]) -> Any:
    try:
        return await call
    except (RequestCancelledError, WorkerConnectionClosed) as e:
        logger.debug(f"Request for session {session_id[:8]}... abandoned: {e}")
        raise HTTPException(status_code=404, detail=str(SessionNotFoundError(session_id)))


async def _handle_status(manager: SessionManager) -> JSONResponse:
    return JSONResponse(manager.status())


async def _handle_list_versions(index: VersionIndex) -> JSONResponse:
    try:
        versions = await get_pyright_versions(index)
    except ResolutionError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return JSONResponse({"versions": versions})


async def _handle_create_session(manager: SessionManager, body: Optional[dict]) -> JSONResponse:
    try:
        session_id = await manager.create(SessionOptions.from_dict(body))
    except (InvalidOptionsError, InvalidVersionError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PlaygroundError as e:
        logger.error(f"Failed to create session: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    return JSONResponse({"sessionId": session_id})


async def _handle_close_session(manager: SessionManager, session_id: str) -> JSONResponse:
    await manager.close(session_id)
    return JSONResponse({})


async def _handle_diagnostics(
    manager: SessionManager, session_id: str, body: Optional[dict]
) -> JSONResponse:
    body = _require(body, "code")
    client = _get_client(manager, session_id)
    diagnostics = await _forward(session_id, client.get_diagnostics(body["code"]))
    return JSONResponse({"diagnostics": diagnostics})


async def _handle_hover(
    manager: SessionManager, session_id: str, body: Optional[dict]
) -> JSONResponse:
    body = _require(body, "code", "position")
    client = _get_client(manager, session_id)
    hover = await _forward(session_id, client.get_hover(body["code"], body["position"]))
    return JSONResponse({"hover": hover})


async def _handle_signature(
    manager: SessionManager, session_id: str, body: Optional[dict]
) -> JSONResponse:
    body = _require(body, "code", "position")
    client = _get_client(manager, session_id)
    signature_help = await _forward(
        session_id, client.get_signature_help(body["code"], body["position"])
    )
    return JSONResponse({"signatureHelp": signature_help})


async def _handle_completion(
    manager: SessionManager, session_id: str, body: Optional[dict]
) -> JSONResponse:
    body = _require(body, "code", "position")
    client = _get_client(manager, session_id)
    completion_list = await _forward(
        session_id, client.get_completion(body["code"], body["position"])
    )
    return JSONResponse({"completionList": completion_list})


async def _handle_completion_resolve(
    manager: SessionManager, session_id: str, body: Optional[dict]
) -> JSONResponse:
    body = _require(body, "completionItem")
    client = _get_client(manager, session_id)
    completion_item = await _forward(
        session_id, client.resolve_completion(body["completionItem"])
    )
    return JSONResponse({"completionItem": completion_item})


async def _handle_rename(
    manager: SessionManager, session_id: str, body: Optional[dict]
) -> JSONResponse:
    body = _require(body, "code", "position", "newName")
    client = _get_client(manager, session_id)
    edits = await _forward(
        session_id,
        client.get_rename_edits(body["code"], body["position"], body["newName"]),
    )
    return JSONResponse({"edits": edits})


def register_routes(app: FastAPI, manager: SessionManager, version_index: VersionIndex):
    @app.get("/api/status")
    async def status() -> JSONResponse:
        return await _handle_status(manager)

    @app.get("/api/pyright-versions")
    async def list_versions() -> JSONResponse:
        return await _handle_list_versions(version_index)

    @app.post("/api/session")
    async def create_session(body: Optional[dict] = Body(default=None)) -> JSONResponse:
        return await _handle_create_session(manager, body)

    @app.delete("/api/session/{session_id}")
    async def close_session(session_id: str) -> JSONResponse:
        return await _handle_close_session(manager, session_id)

    @app.post("/api/session/{session_id}/diagnostics")
    async def diagnostics(session_id: str, body: Optional[dict] = Body(default=None)):
        return await _handle_diagnostics(manager, session_id, body)

    @app.post("/api/session/{session_id}/hover")
    async def hover(session_id: str, body: Optional[dict] = Body(default=None)):
        return await _handle_hover(manager, session_id, body)

    @app.post("/api/session/{session_id}/signature")
    async def signature(session_id: str, body: Optional[dict] = Body(default=None)):
        return await _handle_signature(manager, session_id, body)

    @app.post("/api/session/{session_id}/completion")
    async def completion(session_id: str, body: Optional[dict] = Body(default=None)):
        return await _handle_completion(manager, session_id, body)

    @app.post("/api/session/{session_id}/completionresolve")
    async def completion_resolve(session_id: str, body: Optional[dict] = Body(default=None)):
        return await _handle_completion_resolve(manager, session_id, body)

    @app.post("/api/session/{session_id}/rename")
    async def rename(session_id: str, body: Optional[dict] = Body(default=None)):
        return await _handle_rename(manager, session_id, body)
