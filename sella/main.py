import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from sella import config
from sella.db import Base, engine

# 1) Import every model before create_all(),
#    so SQLAlchemy knows all classes and relationships
import sella.models  # noqa: F401

from sqlalchemy.orm import configure_mappers
configure_mappers()

# 2) Create tables
Base.metadata.create_all(bind=engine)

config.setup_logging()
logger = logging.getLogger(__name__)

from sella.payments.payfast import PayFastService
from sella.routers import merchant_orders, orders, payments, rewards

# ==== FastAPI app ====
app = FastAPI(title=config.APP_NAME)

# Session cookie carries user_id / role from the auth service
app.add_middleware(SessionMiddleware, secret_key=config.SECRET_KEY)

# Gateway client: built once here, handed to routes through sella.deps.get_payfast
app.state.payfast = PayFastService(config.load_payfast_config())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        {"error": "Invalid request data", "details": jsonable_encoder(exc.errors())},
        status_code=400,
    )


# ==== Routers ====
app.include_router(orders.router)
app.include_router(payments.router)
app.include_router(merchant_orders.router)
app.include_router(rewards.router)


@app.on_event("startup")
async def startup_event():
    logger.info("Starting %s (%s), PayFast sandbox=%s", config.APP_NAME, config.ENV, app.state.payfast.settings.sandbox)
