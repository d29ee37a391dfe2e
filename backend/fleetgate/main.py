import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fleetgate.config import Settings, settings
from fleetgate.errors import CommandError, CommandTimeoutError, GatewayError, PersistenceError, UpstreamError
from fleetgate.gateway import Gateway
from fleetgate.routers import devices, positions, sms
from fleetgate.store import LocationStore

logger = logging.getLogger(__name__)


def _error_status(exc: GatewayError) -> int:
    if isinstance(exc, CommandTimeoutError):
        return 504
    if isinstance(exc, (CommandError, UpstreamError)):
        return 502
    if isinstance(exc, PersistenceError):
        return 503
    return 400


def create_app(config: Optional[Settings] = None, store: Optional[LocationStore] = None, **gateway_kwargs) -> FastAPI:
    config = config or settings
    app = FastAPI(title="FleetGate")
    app.state.gateway = Gateway(config, store=store, **gateway_kwargs)

    @app.on_event("startup")
    async def startup_event():
        logger.info("Starting ingestion services...")
        await app.state.gateway.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        await app.state.gateway.stop()

    @app.exception_handler(GatewayError)
    async def gateway_exception_handler(request: Request, exc: GatewayError):
        return JSONResponse(
            status_code=_error_status(exc),
            content={"detail": str(exc), "type": exc.category},
        )

    @app.get("/health")
    async def health(request: Request):
        return {"status": "ok", **request.app.state.gateway.status()}

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(positions.router)
    app.include_router(devices.router)
    app.include_router(sms.router)
    return app


app = create_app()

if __name__ == "__main__":
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format='%(asctime)s - [GATEWAY] - %(levelname)s - %(message)s'
    )
    uvicorn.run("fleetgate.main:app", host="0.0.0.0", port=8000)
