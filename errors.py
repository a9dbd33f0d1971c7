class ServiceError(Exception):
    status_code = 500
    code = "server_error"

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.code)
        self.detail = detail or self.code


class ValidationError(ServiceError):
    status_code = 400
    code = "validation_error"


class NotFoundError(ServiceError):
    status_code = 404
    code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    code = "conflict"


class AuthError(ServiceError):
    """Credential problems. The message is deliberately generic."""
    status_code = 401
    code = "unauthorized"

    def __init__(self, detail: str = "Invalid credentials."):
        super().__init__(detail)


class ExpiredError(ServiceError):
    status_code = 400
    code = "expired"


class UpstreamError(ServiceError):
    status_code = 502
    code = "upstream_error"


class TimeoutError(ServiceError):
    status_code = 504
    code = "timeout"


class StorageError(ServiceError):
    status_code = 500
    code = "storage_error"
