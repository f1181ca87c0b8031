"""Error taxonomy shared by the core components and the HTTP layer.

Every error carries an HTTP ``status`` and a stable ``code`` so the API can
render it without string matching on messages.
"""
from typing import Optional


class CustodyError(Exception):
    status = 500
    code = "internal_error"
    title = "Request failed"

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.title)
        self.detail = detail or self.title


class ValidationError(CustodyError):
    status = 400
    code = "validation_error"
    title = "Invalid input"


class NotFoundError(CustodyError):
    status = 404
    code = "not_found"
    title = "Not found"


class NotAuthenticatedError(CustodyError):
    status = 401
    code = "not_authenticated"
    title = "Not authenticated"


class AuthorizationError(CustodyError):
    status = 403
    code = "forbidden"
    title = "Forbidden"


class MissingRoleError(AuthorizationError):
    code = "missing_role"


class WrongDepartmentError(AuthorizationError):
    code = "wrong_department"


class MissingDepartmentAssignmentError(AuthorizationError):
    code = "missing_department_assignment"


class ConflictError(CustodyError):
    status = 409
    code = "conflict"
    title = "Conflict"


class UploadNotFoundError(ConflictError):
    code = "upload_not_found"


class UpstreamServiceError(CustodyError):
    status = 502
    code = "upstream_error"
    title = "Upstream service failure"

    def __init__(
        self,
        detail: str = "",
        *,
        service: str = "",
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(detail)
        self.service = service
        self.status_code = status_code
        self.error_code = error_code


class ExtractionTimeoutError(UpstreamServiceError):
    status = 504
    code = "extraction_timeout"
    title = "Text extraction timed out"
