from __future__ import annotations

import logging

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth_routes import router as auth_router
from .config import Settings, get_settings
from .errors import InvalidInput, SubmissionError
from .question_routes import router as question_router

settings = get_settings()
logging.basicConfig(level=settings.log_level)

app = FastAPI(title="Question Bank API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_allow_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(auth_router)
app.include_router(question_router)


def _error_envelope(kind: str, message: str, debug: str | None = None) -> dict:
    error: dict[str, str] = {"kind": kind, "message": message}
    if debug and get_settings().debug_errors:
        error["debug"] = debug
    return {"verdict": "INVALID", "error": error}


@app.exception_handler(SubmissionError)
def handle_submission_error(_request: Request, exc: SubmissionError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_envelope(exc.kind, exc.message, exc.debug),
    )


@app.exception_handler(RequestValidationError)
def handle_request_validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    fields = sorted(
        {".".join(str(part) for part in err.get("loc", ())[1:]) for err in errors} - {""}
    )
    message = "Invalid request."
    if fields:
        message = f"Invalid request fields: {', '.join(fields)}"
    return JSONResponse(
        status_code=InvalidInput.status_code,
        content=_error_envelope(InvalidInput.kind, message, str(errors)),
    )


@app.get("/health")
def health(settings: Settings = Depends(get_settings)) -> dict[str, str]:
    return {"status": "ok", "environment": settings.app_env}
