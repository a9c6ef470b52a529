from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from pairbot.engine import Engine

LOGGER = logging.getLogger(__name__)


def create_app(engine: Engine) -> FastAPI:
    app = FastAPI(title="pairbot webhook")

    @app.post("/webhook")
    async def webhook(request: Request) -> JSONResponse:
        try:
            payload: Any = await request.json()
        except ValueError:
            return JSONResponse(status_code=400, content={"ok": False, "error": "Body must be JSON"})
        LOGGER.info("Webhook received: %s", payload)
        result = await engine.router.handle(payload)
        return JSONResponse(status_code=result.status_code, content=result.body)

    @app.get("/_health", response_class=PlainTextResponse)
    async def health() -> str:
        return "OK"

    @app.get("/status")
    async def status() -> dict[str, Any]:
        return engine.status()

    return app
