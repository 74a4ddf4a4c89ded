import logging

from starlette.requests import Request
from starlette.responses import JSONResponse

from stratus.services.errors import (
    ApprovalRequiredException,
    DeploymentInProgressException,
    IntegrityException,
    NotFoundException,
    StratusException,
    TemplateValidationException,
)

ERROR_STATUS = {
    IntegrityException: 409,
    DeploymentInProgressException: 409,
    NotFoundException: 404,
    ApprovalRequiredException: 403,
    TemplateValidationException: 422,
}

logger = logging.getLogger(__name__)


def _exception_handler(request: Request, exc: Exception):
    status = ERROR_STATUS.get(type(exc), 500)
    if status >= 500:
        logger.exception("Unhandled application error for path=%s: %s", request.url.path, exc)
    else:
        logger.warning("Request failed path=%s status=%s error=%s", request.url.path, status, exc)
    return JSONResponse({"detail": str(exc)}, status_code=status)


def register_exception_handlers(app):
    app.exception_handler(StratusException)(_exception_handler)
