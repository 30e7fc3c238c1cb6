import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from marketplace.api.v1.router import router as v1_router
from marketplace.core.config import settings
from marketplace.core.errors import HubError
from marketplace.core.telemetry import setup_telemetry
from marketplace.schemas.common import ErrorResponse

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
log = logging.getLogger(__name__)

app = FastAPI(title="Listings API", version="0.1.0")


@app.exception_handler(HubError)
async def hub_error_handler(request: Request, exc: HubError) -> JSONResponse:
    if exc.status_code >= 500:
        log.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    body = ErrorResponse(code=exc.code, message=exc.message, details=exc.details)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


setup_telemetry(app)
app.include_router(v1_router)
