import logging
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.exceptions import (
    DeploymentError,
    NotFound,
    DuplicateRevision,
    RunInProgress,
    RunFinalized,
    ApprovalAlreadyDecided,
    CancellationNotAllowed,
    InvalidTransition,
    BuildFailure,
    ProvisioningError,
    RoutingConflict,
)

logger = logging.getLogger(__name__)

ERROR_STATUS = [
    (NotFound, 404),
    (DuplicateRevision, 409),
    (RunInProgress, 409),
    (RunFinalized, 409),
    (ApprovalAlreadyDecided, 409),
    (CancellationNotAllowed, 409),
    (InvalidTransition, 409),
    (BuildFailure, 502),
    (ProvisioningError, 503),
    (RoutingConflict, 500),
]


def status_for(error: DeploymentError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 400


async def deployment_error_handler(request: Request, exc: DeploymentError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__}
    )


def setup_middlewares(app: FastAPI) -> None:
    """CORS, journalisation des requêtes et traduction des erreurs métier en HTTP"""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms:.1f} ms)")
        return response

    app.add_exception_handler(DeploymentError, deployment_error_handler)
