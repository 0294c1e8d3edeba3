from typing import Optional

import structlog
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from storefront import __version__
from storefront.database import Base, SessionLocal, engine
from storefront.errors import InvalidSignature, MalformedEvent, WebhookNotConfigured
from storefront.log import configure_logging
from storefront.routes import router
from storefront.settlement import WebhookOutcome, process_webhook

configure_logging()
logger = structlog.get_logger(component="main")

app = FastAPI(title="Storefront Checkout Service", version=__version__)

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": {"code": "INVALID_REQUEST", "message": "Invalid request", "errors": jsonable_encoder(exc.errors())}},
    )


@app.get("/health")
def health_check():
    return {"status": "healthy", "version": __version__, "service": "storefront-checkout"}


def _settle(payload: bytes, signature: Optional[str]) -> WebhookOutcome:
    db = SessionLocal()
    try:
        return process_webhook(db, payload, signature)
    finally:
        db.close()


# Providers differ on the verb they deliver with
@app.api_route("/webhooks/gateway", methods=["POST", "PUT"])
async def gateway_webhook(request: Request, x_hub_signature: Optional[str] = Header(None)):
    payload = await request.body()

    try:
        outcome = await run_in_threadpool(_settle, payload, x_hub_signature)
    except InvalidSignature:
        raise HTTPException(status_code=401, detail="Invalid signature")
    except MalformedEvent as e:
        raise HTTPException(status_code=400, detail=f"Invalid payload: {e}")
    except WebhookNotConfigured as e:
        logger.error("webhook_not_configured", error=str(e))
        raise HTTPException(status_code=500, detail="Webhook secret is not configured")

    return {"received": True, "handled": outcome.handled}
