"""
業務異常 -> HTTP 狀態碼

- ValidationError        -> 400
- NotFound               -> 404
- ConflictError          -> 409
- InvalidPhaseTransition -> 409
"""
from fastapi import HTTPException

from core.exceptions import (
    ConflictError,
    InvalidPhaseTransition,
    JammingException,
    NotFound,
    ValidationError,
)


def to_http_exception(error: JammingException) -> HTTPException:
    if isinstance(error, ValidationError):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, NotFound):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (ConflictError, InvalidPhaseTransition)):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))
