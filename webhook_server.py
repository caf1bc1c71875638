"""
FastAPI Webhook Server for payment gateway callbacks
Verifies each callback with its provider and routes it to capture confirmation
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config import Config
from database import create_tables
from jobs.escrow_automation import EscrowAutomation
from jobs.scheduler import EscrowScheduler
from models import PaymentProvider
from services.escrow_orchestrator import EscrowOrchestrator
from utils.exceptions import (
    EscrowEngineError, GatewayRejected, GatewayUnavailable, InvalidTransition, NotFound,
    PaymentPendingRetry, ValidationError, WebhookVerificationError
)

logger = logging.getLogger(__name__)

SLOW_WEBHOOK_MS = 500

ERROR_STATUS = (
    (WebhookVerificationError, 401),
    (NotFound, 404),
    (ValidationError, 400),
    (InvalidTransition, 409),
    (GatewayRejected, 422),
    (GatewayUnavailable, 503),
    (PaymentPendingRetry, 503),
)


def status_for(error: EscrowEngineError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 409


def create_app(orchestrator: Optional[EscrowOrchestrator] = None, scheduler=None) -> FastAPI:
    """Build the app; tests pass their own orchestrator"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        create_tables()
        if scheduler is not None:
            scheduler.start()
        logger.info(f"✅ Webhook server ready ({Config.ENVIRONMENT})")
        yield
        if scheduler is not None:
            scheduler.shutdown()
        logger.info("🔄 Webhook server shutting down")

    app = FastAPI(
        title="Escrow Settlement Webhooks",
        description="Payment gateway callbacks for contract escrow",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    def get_orchestrator() -> EscrowOrchestrator:
        if app.state.orchestrator is None:
            app.state.orchestrator = EscrowOrchestrator()
        return app.state.orchestrator

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": "escrow-webhooks",
            "providers": [provider.value for provider in PaymentProvider],
        }

    @app.post("/webhooks/{provider}")
    async def gateway_webhook(provider: str, request: Request):
        started = time.perf_counter()
        body = await request.body()
        client_ip = request.client.host if request.client else "unknown"

        try:
            result = await get_orchestrator().process_gateway_webhook(provider, dict(request.headers), body)
        except EscrowEngineError as e:
            status = status_for(e)
            log = logger.warning if status < 500 else logger.error
            log(f"WEBHOOK_FAILED: provider={provider} ip={client_ip} status={status} code={e.code}: {e.message}")
            return JSONResponse(content={"error": e.to_dict()}, status_code=status)

        elapsed_ms = (time.perf_counter() - started) * 1000
        if elapsed_ms > SLOW_WEBHOOK_MS:
            logger.warning(f"⚠️ SLOW_WEBHOOK: {provider} took {elapsed_ms:.1f}ms")
        logger.info(f"WEBHOOK_OK: provider={provider} ip={client_ip} status={result['status']} in {elapsed_ms:.1f}ms")
        return JSONResponse(content=result, status_code=200)

    return app


app = create_app()


def main():
    """Serve webhooks with the sweep scheduler running in the same event loop"""
    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    Config.log_environment_config()
    orchestrator = EscrowOrchestrator()
    scheduler = EscrowScheduler(EscrowAutomation(orchestrator))
    uvicorn.run(create_app(orchestrator=orchestrator, scheduler=scheduler),
                host=Config.WEBHOOK_HOST, port=Config.WEBHOOK_PORT)


if __name__ == "__main__":
    main()
