"""REST API routes for PeerShare."""

import asyncio
import logging

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from config import CHUNK_SIZE
from transfer.errors import (
    CapacityExhausted,
    ChecksumMismatch,
    ChunkOverflow,
    CodeExpired,
    CodeNotFound,
    InvalidFile,
    InvalidRole,
    SessionAlreadyJoined,
    SessionNotActive,
    SessionNotFound,
    TransferError,
    TransportError,
)
from transfer.models import FileDescriptor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# This will be injected by main.py at startup
_session_manager = None

ERROR_STATUS = {
    CodeNotFound: 404,
    SessionNotFound: 404,
    CodeExpired: 410,
    SessionAlreadyJoined: 409,
    SessionNotActive: 409,
    CapacityExhausted: 503,
    InvalidFile: 400,
    InvalidRole: 400,
    ChunkOverflow: 400,
    ChecksumMismatch: 422,
    TransportError: 502,
}


def init_routes(session_manager) -> None:
    """Inject the session manager into the routes module."""
    global _session_manager
    _session_manager = session_manager


def status_for(exc: TransferError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 500


async def transfer_error_handler(request: Request, exc: TransferError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.warning(f"{request.method} {request.url.path} -> {status}: {exc}")
    return JSONResponse(
        status_code=status,
        content={"error": exc.code, "detail": str(exc)},
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TransferError, transfer_error_handler)

# --- Health ---

@router.get("/health")
async def health():
    return {"status": "ok", "active_sessions": _session_manager.active_count}


# --- Upload side ---

class CreateSessionBody(BaseModel):
    name: str
    total_size: int
    checksum: str


@router.post("/sessions", status_code=201)
async def create_session(body: CreateSessionBody):
    """Register file metadata and issue a transfer code."""
    try:
        file = FileDescriptor(**body.model_dump())
    except ValueError as e:
        raise InvalidFile(str(e)) from e

    code, handle = await _session_manager.create_upload_session(file)
    return {
        "code": code,
        "handle": handle.model_dump(mode="json"),
        "status": _session_manager.get_status(handle).model_dump(mode="json"),
    }


@router.post("/sessions/{token}/wait")
async def wait_for_receiver(token: str, timeout: float = Query(30.0, gt=0, le=600)):
    """Block until the receiver joins, or 408 after ``timeout`` seconds."""
    handle = _session_manager.resolve(token)
    try:
        await _session_manager.wait_for_receiver(handle, timeout)
    except asyncio.TimeoutError:
        raise HTTPException(status_code=408, detail="No receiver joined yet")
    return _session_manager.get_status(handle).model_dump(mode="json")


@router.put("/sessions/{token}/chunks")
async def push_chunk(token: str, request: Request):
    """Append the raw request body as the next chunk of the file."""
    handle = _session_manager.resolve(token)
    chunk = await request.body()
    if len(chunk) > CHUNK_SIZE:
        raise HTTPException(
            status_code=413, detail=f"Chunks are limited to {CHUNK_SIZE} bytes"
        )
    status = await _session_manager.push_chunk(handle, chunk)
    return status.model_dump(mode="json")


# --- Download side ---

class JoinBody(BaseModel):
    code: str


@router.post("/sessions/join")
async def join_session(body: JoinBody):
    """Exchange a transfer code for file metadata and a receiver handle."""
    file, handle = await _session_manager.join_as_receiver(body.code)
    return {
        "file": file.model_dump(mode="json"),
        "handle": handle.model_dump(mode="json"),
        "status": _session_manager.get_status(handle).model_dump(mode="json"),
    }


@router.get("/sessions/{token}/download")
async def download(token: str):
    """Stream the file to the receiver as the sender pushes it."""
    handle = _session_manager.resolve(token)
    stream = _session_manager.receive(handle)
    file = _session_manager.session(handle).file

    return StreamingResponse(
        stream,
        media_type="application/octet-stream",
        headers={
            "Content-Disposition": f'attachment; filename="{file.name}"',
            "Content-Length": str(file.total_size),
            "X-Checksum-SHA256": file.checksum,
        },
    )


# --- Status & control ---

@router.get("/sessions/{token}")
async def get_status(token: str):
    handle = _session_manager.resolve(token)
    return _session_manager.get_status(handle).model_dump(mode="json")


@router.post("/sessions/{token}/cancel")
async def cancel_session(token: str):
    """Cancel as whichever side the token belongs to."""
    status = await _session_manager.cancel(_session_manager.resolve(token))
    return status.model_dump(mode="json")
