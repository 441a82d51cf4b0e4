from fastapi import Request
from fastapi.responses import JSONResponse

class PagewrightException(Exception):
    """Base exception for Pagewright API errors."""

    def __init__(self, message: str, status_code: int = 500, details: dict | None = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundException(PagewrightException):
    """Resource not found (404)."""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            message=f"{resource} with id '{resource_id}' not found",
            status_code=404,
            details={"resource": resource, "id": resource_id},
        )


class UnauthorizedException(PagewrightException):
    """Authentication required or failed (401)."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message=message, status_code=401)


class ForbiddenException(PagewrightException):
    """User doesn't have permission (403)."""

    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message=message, status_code=403)


class InfrastructureError(PagewrightException):
    """Sandbox, dependency install or storage failure. Aborts the pipeline."""

    def __init__(self, message: str, status_code: int = 500, details: dict | None = None):
        super().__init__(message=message, status_code=status_code, details=details)


class SandboxError(InfrastructureError):
    """The sandbox provider could not create, drive or reach a sandbox."""


class StorageError(InfrastructureError):
    """Object storage I/O failed for a reason other than a missing object."""


class CodeError(PagewrightException):
    """Generated code failed to typecheck or compile (422).

    These are recoverable: the diagnostics are handed back to the caller
    so a repair flow can act on them.
    """

    def __init__(self, stage: str, message: str, diagnostics: str = ""):
        super().__init__(
            message=message,
            status_code=422,
            details={"stage": stage, "diagnostics": diagnostics},
        )
        self.stage = stage
        self.diagnostics = diagnostics


class BuildAlreadyFinalized(PagewrightException):
    """A build left the 'building' state already (409)."""

    def __init__(self, build_id: str):
        super().__init__(
            message=f"Build '{build_id}' is already finalized",
            status_code=409,
            details={"build_id": build_id},
        )


async def pagewright_exception_handler(request: Request, exc: PagewrightException) -> JSONResponse:
    """Converts our custom exceptions into clean JSON error responses."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": exc.message,
                "details": exc.details,
            }
        },
    )
