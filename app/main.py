import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from app.config import settings
from app.database import engine, SessionLocal
from app.exceptions import ReconciliationError
from app.logging_config import setup_logging
from app import models

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create tables
    models.Base.metadata.create_all(bind=engine)
    # Seed demo data if asked and empty
    if settings.SEED_DEMO_DATA:
        db = SessionLocal()
        try:
            count = db.query(models.Transaction).count()
            if count == 0:
                import subprocess
                import sys
                subprocess.run([sys.executable, "scripts/generate_test_data.py"], check=False)
        finally:
            db.close()
    logger.info("%s %s started (%s)", settings.APP_NAME, settings.APP_VERSION, settings.APP_ENV)
    yield


app = FastAPI(
    title=settings.APP_NAME,
    description="Reconciles POS payment transactions with Stripe, PayPal and Braintree webhooks",
    version=settings.APP_VERSION,
    lifespan=lifespan,
)


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "detail": exc.message},
    )


@app.get("/health")
def health_check():
    return {"status": "ok", "service": "pos-payments-reconciliation"}


from app.routers import transactions, webhooks  # noqa: E402
app.include_router(transactions.router, prefix=f"{settings.API_PREFIX}/transactions", tags=["transactions"])
app.include_router(webhooks.router, prefix=f"{settings.API_PREFIX}/webhooks", tags=["webhooks"])
