"""HTTP front end: Gmail push webhook plus liveness/readiness checks.

Usage:
    mail-sorter-serve                          # model/ bundle, port 3000
    mail-sorter-serve --model-dir model --port 8080
    uvicorn mail_sorter.server:create_app --factory
"""

from __future__ import annotations

import argparse
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse

from .config import Settings, get_settings
from .dispatcher import Dispatcher, PushEvent
from .errors import ArtifactError, GmailError, InvalidEvent
from .logging_config import configure_logging
from .predictor import Predictor

logger = structlog.get_logger(__name__)


def build_dispatcher(settings: Settings) -> Dispatcher:
    """Load the model bundle and authenticate with Gmail.

    Raises:
        ArtifactError: the bundle is missing or inconsistent; do not serve.
        GmailError: credentials are unavailable.
    """
    from .gmail import GmailClient

    ready = Predictor(settings.MODEL_DIR).load()
    client = GmailClient.from_settings(settings)
    return Dispatcher(client, ready)


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as e:
        # covers JSONDecodeError and UnicodeDecodeError
        raise InvalidEvent("Request body is not valid JSON.") from e


def create_app(settings: Settings | None = None, dispatcher: Dispatcher | None = None) -> FastAPI:
    """Create the FastAPI app.

    When no dispatcher is passed, the lifespan handler builds one on startup,
    so a missing model bundle stops the server before it accepts requests.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.dispatcher is None:
            app.state.dispatcher = build_dispatcher(settings)
        logger.info("server_ready")
        yield

    app = FastAPI(title="Mail Sorter", version="0.1.0", lifespan=lifespan)
    app.state.dispatcher = dispatcher

    @app.get("/", response_class=PlainTextResponse)
    def root() -> str:
        return "Mail sorter is running!"

    @app.get("/health", response_class=PlainTextResponse)
    def health(request: Request) -> PlainTextResponse:
        if request.app.state.dispatcher is None:
            return PlainTextResponse("not ready", status_code=503)
        return PlainTextResponse("ready")

    @app.post("/webhook")
    async def webhook(request: Request) -> JSONResponse:
        dispatcher: Dispatcher | None = request.app.state.dispatcher
        if dispatcher is None:
            return JSONResponse({"success": False, "error": "NotReady"}, status_code=503)
        try:
            event = PushEvent.from_pubsub(await _read_json(request))
        except InvalidEvent as e:
            logger.warning("invalid_push_event", error=e.message)
            return JSONResponse({"success": False, "error": "InvalidEvent", "message": e.message},
                                status_code=400)
        # Gmail calls and the forward pass block, keep them off the event loop
        try:
            outcome = await run_in_threadpool(dispatcher.dispatch, event)
        except Exception:
            logger.exception("webhook_failed", checkpoint=event.checkpoint)
            return JSONResponse({"success": False, "error": "Internal Server Error"}, status_code=500)
        return JSONResponse(outcome.to_ack())

    return app


def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Serve the Gmail push webhook.")
    parser.add_argument("--model-dir", type=Path, default=settings.MODEL_DIR,
                        help=f"Trained bundle directory (default: {settings.MODEL_DIR})")
    parser.add_argument("--host", default=settings.HOST, help=f"Bind address (default: {settings.HOST})")
    parser.add_argument("--port", type=int, default=settings.PORT, help=f"Port (default: {settings.PORT})")
    args = parser.parse_args()

    configure_logging(settings.LOG_LEVEL, settings.ENVIRONMENT)
    settings = settings.model_copy(update={"MODEL_DIR": args.model_dir})

    try:
        dispatcher = build_dispatcher(settings)
    except ArtifactError as e:
        sys.exit(f"{e.message}\nRun mail-sorter-train first.")
    except GmailError as e:
        sys.exit(e.message)

    uvicorn.run(create_app(settings, dispatcher), host=args.host, port=args.port,
                log_config=None)


if __name__ == "__main__":
    main()
