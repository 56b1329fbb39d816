"""
FastAPI entry point. Run with: uvicorn main:app --port 8000

Routes stay thin: they read the request and hand off to
`WebhookService`. `create_app()` builds the repo, activity log and
service for one app instance so tests can point them at a temp
directory.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from activity_log import ActivityLogger
from repo_profiles import build_repo
from service_webhook import WebhookError, WebhookService
from settings import Settings, settings

WEBHOOK_PATH = "/api/sahha/webhook"

log = logging.getLogger(__name__)


def create_app(cfg: Settings | None = None) -> FastAPI:
    cfg = cfg or settings
    logging.basicConfig(
        level=cfg.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    repo = build_repo(cfg)
    activity = ActivityLogger(cfg.activity_log_file)
    svc = WebhookService(repo, activity, cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if cfg.signature_bypass_enabled:
            log.warning("X-Bypass-Signature is honoured (APP_ENV=%s)", cfg.environment)
        if not cfg.webhook_secret:
            log.warning("SAHHA_WEBHOOK_SECRET is not set; signed deliveries will fail with 500")
        activity.start()
        yield
        await activity.stop()

    app = FastAPI(title="Wellness Webhook Backend", lifespan=lifespan)
    app.state.service = svc

    @app.exception_handler(WebhookError)
    async def webhook_error_handler(request: Request, exc: WebhookError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())

    @app.get("/health")
    async def health():
        try:
            await repo.ping()
            return {"ok": True}
        except Exception as e:
            raise HTTPException(status_code=500, detail=f"Store health check failed: {e}")

    @app.post(WEBHOOK_PATH)
    async def receive_webhook(request: Request):
        # Raw bytes: the signature covers the body exactly as sent.
        body = await request.body()
        return await svc.receive(request.headers, body)

    @app.get(WEBHOOK_PATH)
    async def read_webhook_data(
        mode: str | None = None,
        external_id: str | None = Query(None, alias="externalId"),
    ):
        return await svc.read(mode, external_id)

    @app.delete(WEBHOOK_PATH)
    async def clear_webhook_data(confirm: str = "false"):
        return await svc.clear(confirm.lower() == "true")

    @app.get(WEBHOOK_PATH + "/stats")
    async def webhook_stats():
        return await svc.stats()

    @app.get("/api/profiles")
    async def display_profiles(mode: str = "webhook"):
        return await svc.display_profiles(mode)

    return app


app = create_app()
