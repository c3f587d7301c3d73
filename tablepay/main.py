import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tablepay.config import settings
from tablepay.db import Base, engine
from tablepay.errors import SettlementError
from tablepay.middleware import RequestIdMiddleware
from tablepay import models  # noqa: F401  registers tables
from tablepay.providers import build_registry
from tablepay.routers import coupons, orders, payments
from tablepay.services.notifier import build_notifier
from tablepay.services.settlement import SettlementOrchestrator

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("tablepay")

app = FastAPI(title="Tablepay API", version="0.1.0")


@app.on_event("startup")
def init_app():
    Base.metadata.create_all(bind=engine)
    notifier = build_notifier(settings)
    app.state.notifier = notifier
    app.state.orchestrator = SettlementOrchestrator(
        adapters=build_registry(settings),
        notifier=notifier,
        staff_room=settings.STAFF_ROOM,
        default_currency=settings.DEFAULT_CURRENCY,
        retries=settings.PROVIDER_RETRIES,
    )
    logger.info("tablepay started env=%s", settings.APP_ENV)


@app.exception_handler(SettlementError)
async def settlement_error(request: Request, exc: SettlementError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(orders.router)
app.include_router(payments.router)
app.include_router(coupons.router)


@app.get("/healthz")
def healthz():
    return {"ok": True}
