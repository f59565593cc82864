"""FastAPI application: intent intake, fee estimates, status and health."""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from relayb0t.config import get_settings
from relayb0t.data.models import (
    FeeEstimateRequest,
    FeeEstimateResponse,
    IntentAccepted,
    IntentStatusResponse,
    IntentSubmission,
    SupportedAssetsResponse,
)
from relayb0t.data.storage import get_session, init_db
from relayb0t.errors import (
    CancellationError,
    FeeExceedsMaximum,
    IntentNotFound,
    InvalidState,
    LedgerUnavailable,
    PricingError,
    ProfitabilityError,
    RelayError,
    ReplayError,
    ValidationError,
)
from relayb0t.execution.intents import IntentManager, IntentRecord
from relayb0t.services.relay_engine import RelayEngine

logger = logging.getLogger(__name__)

STATUS_CODES: dict[type[RelayError], int] = {
    ValidationError: 422,
    ReplayError: 409,
    PricingError: 400,
    ProfitabilityError: 400,
    FeeExceedsMaximum: 400,
    IntentNotFound: 404,
    CancellationError: 409,
    InvalidState: 409,
    LedgerUnavailable: 503,
}


def _status_code(exc: RelayError) -> int:
    for cls in type(exc).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return 400


def _status_response(record: IntentRecord) -> IntentStatusResponse:
    return IntentStatusResponse(
        intent_id=record.intent_id,
        status=record.status.value,
        attempt_count=record.attempt_count,
        settlement_reference=record.settlement_reference,
        computed_fee=record.computed_fee,
        actual_fee=record.actual_fee,
        last_error=record.last_error,
        broadcasts=[b.to_dict() for b in record.broadcasts],
    )


def create_app(engine: RelayEngine | None = None, start_engine: bool = True) -> FastAPI:
    """Build the API.

    Args:
        engine: Pre-built engine; built from settings at startup when omitted.
        start_engine: Start workers, sampling and recovery with the app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        relay = engine
        if relay is None:
            settings = get_settings()
            init_db(settings.db_url)
            relay = RelayEngine.build(settings, IntentManager(get_session()))
        app.state.engine = relay
        if start_engine:
            await relay.start()
        try:
            yield
        finally:
            if start_engine:
                await relay.close()

    app = FastAPI(
        title="RelayB0T API",
        description="Gasless transfer relay: signed intents in, settled transfers out",
        version="0.1.0",
        lifespan=lifespan,
    )

    def get_engine(request: Request) -> RelayEngine:
        return request.app.state.engine

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        status_code = _status_code(exc)
        if status_code >= 500:
            logger.error(f"{request.url.path}: {exc}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        detail = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        return JSONResponse(
            status_code=422,
            content={
                "error": ValidationError.code,
                "cause": ValidationError.MALFORMED,
                "detail": detail,
            },
        )

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint."""
        return {"name": "RelayB0T", "version": "0.1.0", "status": "running"}

    @app.get("/health")
    async def health(request: Request) -> Any:
        """Health check endpoint.

        Returns:
            Health status, 503 while the relay is degraded.
        """
        relay = get_engine(request)
        status_dict = relay.health.to_dict()
        status_dict["queue_depth"] = len(relay.queue)
        status_dict["in_flight"] = relay.queue.in_flight
        status_dict["fee_rate"] = relay.monitor.to_dict()

        if relay.health.is_degraded:
            return JSONResponse(status_code=503, content=status_dict)
        return status_dict

    @app.post("/intents", response_model=IntentAccepted, status_code=202)
    async def submit_intent(submission: IntentSubmission, request: Request) -> IntentAccepted:
        record = await get_engine(request).submit_intent(submission)
        return IntentAccepted(intent_id=record.intent_id, status=record.status.value)

    @app.post("/fees/estimate", response_model=FeeEstimateResponse)
    async def estimate_fee(body: FeeEstimateRequest, request: Request) -> FeeEstimateResponse:
        return await get_engine(request).estimate_fee(body)

    @app.get("/intents/{intent_id}", response_model=IntentStatusResponse)
    async def intent_status(intent_id: str, request: Request) -> IntentStatusResponse:
        return _status_response(get_engine(request).get_status(intent_id))

    @app.post("/intents/{intent_id}/cancel", response_model=IntentStatusResponse)
    async def cancel_intent(intent_id: str, request: Request) -> IntentStatusResponse:
        return _status_response(await get_engine(request).cancel(intent_id))

    @app.post("/intents/{intent_id}/resubmit", response_model=IntentStatusResponse)
    async def resubmit_intent(intent_id: str, request: Request) -> IntentStatusResponse:
        return _status_response(await get_engine(request).resubmit(intent_id))

    @app.get("/assets", response_model=SupportedAssetsResponse)
    async def supported_assets(request: Request) -> SupportedAssetsResponse:
        snapshot = get_engine(request).supported_assets()
        return SupportedAssetsResponse(
            version=snapshot.version,
            assets=list(snapshot.assets.values()),
            paused=sorted(key for key in snapshot.assets if snapshot.is_paused(key)),
        )

    @app.get("/queue")
    async def queue_snapshot(request: Request) -> dict[str, Any]:
        relay = get_engine(request)
        return {**relay.queue.snapshot(), "senders": relay.sequencer.snapshot()}

    return app


app = create_app()
