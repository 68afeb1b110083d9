from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from lastmile.api.v1.router import router as v1_router
from lastmile.core.errors import DomainError, ValidationError
from lastmile.core.logging import configure_logging
from lastmile.core.telemetry import setup_telemetry

configure_logging()

app = FastAPI(title="Last-mile Delivery API", version="0.1.0")


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # same shape as service-level validation errors
    err = ValidationError.from_pydantic(exc, drop_roots=("body", "query", "path", "header"))
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


setup_telemetry(app)
app.include_router(v1_router)
