"""HTTP surface: an OpenAI-compatible streaming endpoint plus login capture."""

import asyncio
import logging

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from zai_bridge.bridge import ChatBridge
from zai_bridge.config import BridgeSettings
from zai_bridge.exceptions import (
    BridgeError,
    BrowserUnavailable,
    InputTimeout,
    LoginCancelled,
    LoginTimeout,
    NavigationTimeout,
)
from zai_bridge.views import ChatRequest

logger = logging.getLogger(__name__)

app = FastAPI(title="zai-bridge")

# Shared bridge, created on first request
_bridge: ChatBridge | None = None


def get_bridge() -> ChatBridge:
    global _bridge
    if _bridge is None:
        _bridge = ChatBridge(BridgeSettings.from_env())
    return _bridge


def _status_for(error: BridgeError) -> int:
    if isinstance(error, BrowserUnavailable):
        return 503
    if isinstance(error, (NavigationTimeout, InputTimeout)):
        return 504
    if isinstance(error, (LoginTimeout, LoginCancelled)):
        return 408
    return 500


def _error_response(error: BridgeError) -> JSONResponse:
    return JSONResponse(
        status_code=_status_for(error),
        content={"error": {"type": type(error).__name__, "message": str(error)}},
    )


@app.on_event("shutdown")
async def shutdown_event():
    if _bridge is not None:
        await _bridge.close()


@app.get("/")
def read_root():
    return {"status": "zai-bridge running"}


@app.get("/health")
async def health(bridge: ChatBridge = Depends(get_bridge)):
    return {
        "browser": bridge.manager.state.value,
        "busy": bridge.busy,
        "target": bridge.settings.target_url,
    }


@app.post("/v1/chat/completions")
async def chat_completions(request: ChatRequest, bridge: ChatBridge = Depends(get_bridge)):
    try:
        chunks = await bridge.open_stream(request)
    except BridgeError as e:
        logger.error(f"Request failed before streaming: {e}")
        return _error_response(e)

    return StreamingResponse(
        chunks,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.post("/auth/login")
async def login(http_request: Request, bridge: ChatBridge = Depends(get_bridge)):
    """Open the browser and wait for the user to log in by hand.

    Polling stops early if the caller hangs up.
    """
    cancel = asyncio.Event()

    async def watch_disconnect():
        while not cancel.is_set():
            if await http_request.is_disconnected():
                logger.info("Login caller disconnected, cancelling")
                cancel.set()
                return
            await asyncio.sleep(1.0)

    watcher = asyncio.create_task(watch_disconnect())
    try:
        credential = await bridge.login(cancel)
    except BridgeError as e:
        logger.error(f"Login failed: {e}")
        return _error_response(e)
    finally:
        cancel.set()
        watcher.cancel()
    return credential.as_auth_record()


def main():
    settings = BridgeSettings.from_env()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port, log_level="info")


if __name__ == "__main__":
    main()
