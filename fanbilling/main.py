from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fanbilling.core.errors import BillingError
from fanbilling.core.settings import S
from fanbilling.metrics import METRICS_ENABLED, metrics_endpoint, metrics_middleware, set_app_info
from fanbilling.routers.artist import router as artist_router
from fanbilling.routers.billing_cycle import router as billing_cycle_router
from fanbilling.routers.misc import router as misc_router
from fanbilling.routers.payments import router as payments_router
from fanbilling.routers.subscriptions import router as subscriptions_router

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    logging.basicConfig(level=S.log_level, format=LOG_FORMAT)


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [{"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()]
    return JSONResponse(status_code=400, content={"error": "Invalid request", "details": details})


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Fan Billing", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if METRICS_ENABLED:
        app.middleware("http")(metrics_middleware)
        set_app_info(app.title, app.version)
        app.get("/metrics")(metrics_endpoint)

    app.add_exception_handler(BillingError, billing_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.include_router(misc_router)
    app.include_router(payments_router)
    app.include_router(billing_cycle_router)
    app.include_router(subscriptions_router)
    app.include_router(artist_router)

    return app

app = create_app()
