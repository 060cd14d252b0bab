"""
    Centralized exception handling for the FastAPI application.
"""
from typing import Optional
from fastapi import Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import logging

log = logging.getLogger(__name__)

class APIException(Exception):
    """Base class for API exceptions."""
    error = "Request failed"

    def __init__(self, status_code: int, detail: str, error: Optional[str] = None):
        self.status_code = status_code
        self.detail = detail
        if error:
            self.error = error
        super().__init__(self.detail)

class ValidationException(APIException):
    """Bad or missing caller input. Never retried."""
    error = "Invalid request"

    def __init__(self, detail: str):
        super().__init__(status_code=400, detail=detail)

class MissingFieldException(ValidationException):
    """A required request field is absent or empty."""
    def __init__(self, *fields: str):
        self.fields = list(fields)
        super().__init__(f"Missing required parameter: {', '.join(fields)}")

class InvalidTypeException(ValidationException):
    """Upload is not an image."""
    def __init__(self, content_type: Optional[str]):
        super().__init__(f"Invalid file type '{content_type}'. Please upload an image file.")

class TooLargeException(ValidationException):
    """Upload exceeds the configured size limit."""
    def __init__(self, size: int, limit: int):
        super().__init__(
            f"File too large ({size} bytes). Please upload an image smaller than {limit // (1024 * 1024)}MB."
        )

class ForbiddenException(APIException):
    """Proxy target is not a storage-signed URL."""
    error = "Forbidden"

    def __init__(self, detail: str = "Only S3 presigned URLs are allowed"):
        super().__init__(status_code=400, detail=detail)

class ImageNotFoundException(APIException):
    """Exception for when an image is not found."""
    error = "Not found"

    def __init__(self, image_id: str):
        super().__init__(status_code=404, detail=f"Image with ID '{image_id}' not found.")

class UploadNotFoundException(APIException):
    """Exception for an unknown upload session."""
    error = "Not found"

    def __init__(self, upload_id: str):
        super().__init__(status_code=404, detail=f"Upload with ID '{upload_id}' not found.")

class InvalidStateException(APIException):
    """An upload was asked to move to a state it cannot reach."""
    error = "Invalid upload state"

    def __init__(self, detail: str):
        super().__init__(status_code=409, detail=detail)

class NotConfiguredException(APIException):
    """Credentials or keys are missing from the environment."""
    error = "Service not configured"

    def __init__(self, detail: str):
        super().__init__(status_code=500, detail=detail)

class UpstreamException(APIException):
    """Storage or metadata store rejected the call."""
    error = "Upstream failure"

    def __init__(self, detail: str, error: Optional[str] = None):
        super().__init__(status_code=500, detail=detail, error=error)

class AnalysisException(APIException):
    """Both the vision model and the local heuristic failed."""
    error = "Failed to analyze image"

    def __init__(self, detail: str):
        super().__init__(status_code=500, detail=detail)

async def api_exception_handler(request: Request, exc: APIException):
    """Handles API exceptions."""
    if exc.status_code >= 500:
        log.error(f"API Exception: {exc.detail}", exc_info=exc)
    else:
        log.warning(f"API Exception: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "detail": exc.detail},
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Maps request validation errors to 400, naming the offending fields."""
    fields = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path", "form")]
        if loc:
            fields.append(".".join(loc))
    detail = f"Missing or invalid parameter: {', '.join(fields)}" if fields else "Invalid request"
    log.warning(f"Validation Exception: {detail}")
    return JSONResponse(
        status_code=400,
        content={"error": ValidationException.error, "detail": detail},
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    """Handles FastAPI HTTP exceptions."""
    log.error(f"HTTP Exception: {exc.detail}", exc_info=exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
    )

async def generic_exception_handler(request: Request, exc: Exception):
    """Handles all other exceptions."""
    log.error(f"Unhandled Exception: {str(exc)}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": "An unexpected error occurred.", "detail": str(exc)},
    )

def add_exception_handlers(app):
    """Adds exception handlers to the FastAPI app."""
    app.add_exception_handler(APIException, api_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
