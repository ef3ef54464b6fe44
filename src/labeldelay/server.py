from __future__ import annotations

import hashlib
import hmac
import json
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool

from labeldelay.events import WebhookEvent, as_object_dict
from labeldelay.observability import log_event, log_warning_event
from labeldelay.router import EventRouter


LOGGER = logging.getLogger("labeldelay.server")


def verify_signature(secret: str, body: bytes, signature_header: str) -> bool:
    if not signature_header.startswith("sha256="):
        return False
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header)


def create_app(router: EventRouter, *, webhook_secret: str | None) -> FastAPI:
    app = FastAPI(title="labeldelay", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/health", response_class=PlainTextResponse)
    def health() -> str:
        return "OK"

    @app.post("/webhook")
    async def webhook(request: Request) -> JSONResponse:
        body = await request.body()
        event_name = request.headers.get("x-github-event", "").strip()
        delivery_id = request.headers.get("x-github-delivery")
        if webhook_secret and not verify_signature(
            webhook_secret, body, request.headers.get("x-hub-signature-256", "")
        ):
            log_warning_event(
                LOGGER, "webhook_rejected", reason="bad_signature", delivery_id=delivery_id
            )
            return JSONResponse(status_code=401, content={"ok": False, "error": "bad signature"})
        if not event_name:
            return JSONResponse(
                status_code=400, content={"ok": False, "error": "missing X-GitHub-Event"}
            )
        try:
            payload = as_object_dict(json.loads(body.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError):
            payload = None
        if payload is None:
            return JSONResponse(status_code=400, content={"ok": False, "error": "invalid JSON"})

        event = WebhookEvent(name=event_name, payload=payload, delivery_id=delivery_id)
        result = await run_in_threadpool(router.dispatch, event)
        if not result.ok:
            return JSONResponse(
                status_code=500,
                content={
                    "ok": False,
                    "handled": list(result.handled),
                    "failed": list(result.failed),
                },
            )
        log_event(
            LOGGER,
            "webhook_accepted",
            event_name=event.qualified_name,
            handled=",".join(result.handled) or "<none>",
        )
        return JSONResponse(status_code=202, content={"ok": True, "handled": list(result.handled)})

    return app
