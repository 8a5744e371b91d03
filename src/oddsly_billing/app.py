from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from oddsly_billing.config import Settings, get_settings
from oddsly_billing.db.init_db import init_db
from oddsly_billing.errors import BillingError
from oddsly_billing.logging_config import setup_logging
from oddsly_billing.routers import billing_router
from oddsly_billing.stripe_integration import configure_stripe


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_dir)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_stripe(settings)
        init_db()
        yield

    app = FastAPI(title="Oddsly Billing", lifespan=lifespan)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg')}" if field else "Invalid request"
        return JSONResponse(status_code=400, content={"message": message})

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError):
        return JSONResponse(status_code=exc.status_code, content={"message": exc.message, "code": exc.code})

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    app.include_router(billing_router.router, prefix=settings.api_prefix)
    return app


app = create_app()
