"""
modechat: multi-mode conversational relay.

POST /chat answers a message in medical, therapy, recipe or dental mode,
either as one JSON reply or as a server-push stream. GET /chat lists the
caller's stored history.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, Literal, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from modechat import __version__
from modechat.auth import current_identity
from modechat.errors import ChatError, RateLimited
from modechat.orchestrator import ChatOrchestrator, ChatRequest, Identity, build_orchestrator
from modechat.settings import MODES, settings

logger = logging.getLogger("modechat")

# How often a non-streamed send checks whether the client is still there.
_DISCONNECT_POLL_S = 0.5


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="modechat",
    version=__version__,
    description="Multi-mode conversational relay over an upstream LLM",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_orchestrator: Optional[ChatOrchestrator] = None


def get_orchestrator() -> ChatOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator(settings)
    return _orchestrator


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

def _error_response(status_code: int, body: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": body}, headers=headers)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after)}
        logger.info("Rate limited %s %s (retry in %ss)", request.method, request.url.path, exc.retry_after)
    return _error_response(exc.http_status, exc.to_dict(), headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    body = await request.body()
    logger.error(
        "Validation error on %s %s: %s\nBody: %s",
        request.method,
        request.url.path,
        exc.errors(),
        body[:2000].decode("utf-8", errors="replace"),
    )
    details = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return _error_response(400, {"code": "INVALID_INPUT", "message": "Invalid input.", "details": details})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    request_id = str(uuid.uuid4())
    logger.error("Unhandled error on %s %s (request %s): %s",
                 request.method, request.url.path, request_id, exc, exc_info=exc)
    return _error_response(500, {
        "code": "SERVER_ERROR",
        "message": f"An internal error occurred. Request ID: {request_id}",
    })


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

@app.on_event("startup")
async def startup():
    logger.info("=" * 60)
    logger.info("modechat starting...")
    config = settings.describe()
    logger.info("Provider:      %s", config["provider"])
    logger.info("Model:         %s", config["model"])
    logger.info("Store:         %s", config["store"])
    logger.info("Limits:        %s", config["limits"])
    if settings.REQUEST_LOG:
        logger.info("Request log:   %s", (settings.LOG_DIR / "requests.jsonl").resolve())
    token = settings.AUTH_TOKEN
    if token:
        logger.info("Auth:          %s***", token[:6] if len(token) >= 6 else token)
    elif settings.USERS_FILE:
        logger.info("Auth:          users file %s", settings.USERS_FILE)
    else:
        logger.info("Auth:          disabled (local-only)")

    from modechat.credentials import detect_provider, get_credential_source

    provider = detect_provider(settings.MODEL)
    if provider and provider != "ollama" and settings.PROVIDER != "mock":
        source = "MODECHAT_API_KEY" if settings.API_KEY else get_credential_source(provider)
        if source:
            logger.info("Credential:    %s → %s", provider, source)
        else:
            logger.warning("Credential:    %s → NOT CONFIGURED", provider)

    logger.info("Ready! Listening for requests...")
    logger.info("=" * 60)


# ---------------------------------------------------------------------------
# /chat
# ---------------------------------------------------------------------------

def _wants_stream(request: Request, body: ChatRequest) -> bool:
    return body.stream or "text/event-stream" in request.headers.get("accept", "")


async def _watch_disconnect(request: Request, cancel: asyncio.Event) -> None:
    while not cancel.is_set():
        if await request.is_disconnected():
            logger.info("Client disconnected; cancelling upstream call")
            cancel.set()
            return
        await asyncio.sleep(_DISCONNECT_POLL_S)


@app.post("/chat")
async def send_chat(
    body: ChatRequest,
    request: Request,
    identity: Identity = Depends(current_identity),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    if _wants_stream(request, body):
        session = await orchestrator.open_stream(identity, body)
        return EventSourceResponse(session.frames(), media_type="text/event-stream")

    cancel = asyncio.Event()
    watcher = asyncio.ensure_future(_watch_disconnect(request, cancel))
    try:
        reply = await orchestrator.handle_send(identity, body, cancel=cancel)
    finally:
        watcher.cancel()
    return reply.model_dump()


@app.get("/chat")
async def list_chat(
    mode: Optional[Literal["medical", "therapy", "recipe", "dental"]] = Query(None),
    identity: Identity = Depends(current_identity),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    messages = await orchestrator.handle_list(identity, mode)
    return {"messages": [m.public() for m in messages]}


# ---------------------------------------------------------------------------
# /health
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "version": __version__,
        "provider": settings.PROVIDER,
        "model": settings.MODEL,
    }


@app.get("/")
async def root():
    return {
        "name": "modechat",
        "version": __version__,
        "description": "Multi-mode conversational relay",
        "modes": list(MODES),
        "status": "ok",
    }
