from fastapi import Request
from fastapi.responses import JSONResponse
from loguru import logger


class EssenceError(Exception):
    status_code = 500

    def __init__(self, message: str = ''):
        super().__init__(message)
        self.message = message


class ValidationError(EssenceError):
    """Malformed or missing input. The job is never created."""
    status_code = 400


class NotFoundError(EssenceError):
    status_code = 404


class ConflictError(EssenceError):
    status_code = 409


class SignatureError(EssenceError):
    status_code = 401


class SubmissionError(EssenceError):
    """The provider rejected or could not be reached at submission time."""
    status_code = 502


class InvalidInputError(EssenceError):
    """Provider input could not be built from a stored job."""
    status_code = 400


class WebhookMappingError(EssenceError):
    """Webhook payload that cannot be mapped onto a job. Acknowledged, never fatal."""
    status_code = 200


class RegistrationError(EssenceError):
    """Registration failed after every attempt. Recorded on the job, status untouched."""
    status_code = 502


class RegistrationDeferred(EssenceError):
    """Parent assets are still registering; try again later."""
    status_code = 409


class StorageError(EssenceError):
    status_code = 502


def install_exception_handlers(app):
    @app.exception_handler(EssenceError)
    async def essence_exception_handler(request: Request, exc: EssenceError):
        if exc.status_code >= 500:
            logger.error(f'{request.method} {request.url.path} failed: {exc.message}')
        return JSONResponse({'detail': exc.message}, status_code=exc.status_code)
