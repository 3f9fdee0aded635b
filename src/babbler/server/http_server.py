"""Babbler HTTP Server -- learn and reply over HTTP.

Wraps a Brain in a Starlette ASGI app:
- POST /learn  {"text": ...}                          -> {"learned": true}
- POST /reply  {"text": ..., "loop_ms"?, "max_len"?}  -> {"reply": ...}
- GET  /health

A Brain is single-threaded, so every call into it holds one lock and runs in
Starlette's threadpool.
"""

import logging
import os
import secrets
import threading
from pathlib import Path
from typing import Optional

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

logger = logging.getLogger("babbler.server.http_server")

# Upper bound on a single reply budget; a reply holds the brain lock
MAX_LOOP_MS = 10000


def _babbler_home() -> Path:
    """Resolve BABBLER_HOME lazily so tests can override via env var."""
    return Path(os.environ.get("BABBLER_HOME", str(Path.home() / ".babbler")))


def get_or_create_api_key() -> str:
    """Load API key from $BABBLER_HOME/api_key, or generate one."""
    key_path = _babbler_home() / "api_key"
    if key_path.exists():
        return key_path.read_text().strip()
    key = secrets.token_urlsafe(32)
    key_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.write_text(key + "\n")
    key_path.chmod(0o600)
    return key


async def _read_payload(request: Request):
    """Return (payload, None) or (None, error response)."""
    try:
        payload = await request.json()
    except ValueError:
        return None, JSONResponse({"error": "Invalid JSON body"}, status_code=400)
    if not isinstance(payload, dict) or not isinstance(payload.get("text"), str):
        return None, JSONResponse({"error": "Missing 'text'"}, status_code=400)
    return payload, None


def create_http_app(brain, api_key: Optional[str] = None) -> Starlette:
    """Create a Starlette ASGI app serving a Brain.

    Args:
        brain: The Brain instance to learn into and reply from.
        api_key: Optional API key for authentication. None disables auth.
    """
    lock = threading.Lock()

    def _authorized(request: Request) -> bool:
        if not api_key:
            return True
        provided = request.headers.get("x-api-key") or request.query_params.get("api_key")
        return provided == api_key

    def _learn(text: str) -> None:
        with lock:
            brain.learn(text)

    def _reply(text: str, loop_ms: int, max_len: Optional[int]) -> str:
        with lock:
            return brain.reply(text, loop_ms=loop_ms, max_len=max_len)

    async def learn(request: Request):
        if not _authorized(request):
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        payload, error = await _read_payload(request)
        if error is not None:
            return error
        await run_in_threadpool(_learn, payload["text"])
        return JSONResponse({"learned": True})

    async def reply(request: Request):
        if not _authorized(request):
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        payload, error = await _read_payload(request)
        if error is not None:
            return error
        try:
            loop_ms = int(payload.get("loop_ms", 500))
            max_len = payload.get("max_len")
            max_len = int(max_len) if max_len is not None else None
        except (TypeError, ValueError):
            return JSONResponse({"error": "loop_ms and max_len must be integers"}, status_code=400)
        if not 0 <= loop_ms <= MAX_LOOP_MS:
            return JSONResponse({"error": f"loop_ms must be between 0 and {MAX_LOOP_MS}"}, status_code=400)
        text = await run_in_threadpool(_reply, payload["text"], loop_ms, max_len)
        return JSONResponse({"reply": text})

    async def health(request: Request):
        return JSONResponse({"status": "ok", "server": "babbler"})

    app = Starlette(
        routes=[
            Route("/learn", endpoint=learn, methods=["POST"]),
            Route("/reply", endpoint=reply, methods=["POST"]),
            Route("/health", endpoint=health),
        ],
    )
    return app


async def run_http(brain_path, host: str, port: int, api_key: Optional[str]) -> None:
    """Open the brain, create the HTTP app, run uvicorn."""
    import uvicorn

    from babbler.brain import Brain

    brain = Brain(brain_path)
    try:
        app = create_http_app(brain, api_key=api_key)
        config = uvicorn.Config(app, host=host, port=port, log_level="info")
        srv = uvicorn.Server(config)
        logger.info("Serving %s on %s:%d", brain_path, host, port)
        await srv.serve()
    finally:
        brain.close()
