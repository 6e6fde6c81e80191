from fastapi import HTTPException

from upload_pipeline.core.exceptions import (
    DuplicateSession,
    IncompleteRequiredFiles,
    InvalidRequest,
    InvalidTransition,
    NotFound,
    PathConflict,
    SessionExpired,
)
from upload_pipeline.service.coordinator import OperationResult

STATUS_BY_CODE = {
    error_class.code: error_class.status_code
    for error_class in (
        InvalidTransition,
        IncompleteRequiredFiles,
        NotFound,
        SessionExpired,
        PathConflict,
        DuplicateSession,
        InvalidRequest,
    )
}


def unwrap(result: OperationResult):
    """Return the result data, or raise the HTTPException matching its error code."""
    if result.success:
        return result.data
    raise HTTPException(
        status_code=STATUS_BY_CODE.get(result.error.code, 400),
        detail=result.error.model_dump(),
    )
