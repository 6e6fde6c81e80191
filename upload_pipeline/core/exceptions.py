"""
Error taxonomy for the upload pipeline.

Every error is recoverable and carries a stable ``code`` so the coordinator can
turn it into a structured result and the routers can map it to an HTTP status.
"""


class UploadPipelineError(Exception):
    """Base exception for upload lifecycle errors."""
    code = "UPLOAD_PIPELINE_ERROR"
    status_code = 400
    default_message = "Upload pipeline error"

    def __init__(self, message=None, **details):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class InvalidTransition(UploadPipelineError):
    """Status graph violated, or the status changed underneath the caller."""
    code = "INVALID_TRANSITION"
    status_code = 409
    default_message = "Invalid status transition"


class IncompleteRequiredFiles(UploadPipelineError):
    """Finalize attempted before every required file was completed."""
    code = "INCOMPLETE_REQUIRED_FILES"
    status_code = 409
    default_message = "Required files are not completed"

    def __init__(self, missing: int, required: int, message=None, **details):
        self.missing = missing
        self.required = required
        super().__init__(
            message or f"{missing} of {required} required files not completed",
            missing=missing,
            required=required,
            **details,
        )


class NotFound(UploadPipelineError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Resource not found"


class SessionExpired(UploadPipelineError):
    code = "SESSION_EXPIRED"
    status_code = 410
    default_message = "Upload session expired"


class PathConflict(UploadPipelineError):
    code = "PATH_CONFLICT"
    status_code = 409
    default_message = "Storage path already registered"


class DuplicateSession(UploadPipelineError):
    code = "DUPLICATE_SESSION"
    status_code = 409
    default_message = "An active upload session already exists for this file"


class InvalidRequest(UploadPipelineError):
    """Malformed arguments: bad chunk index, sizes, or unsupported file kind."""
    code = "INVALID_REQUEST"
    status_code = 422
    default_message = "Invalid request"
