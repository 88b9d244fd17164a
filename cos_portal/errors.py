"""Exception types shared by every pipeline stage.

Each error carries a machine-readable ``code`` so the HTTP layer can hand
the client something better than a generic message.
"""


class CosPortalError(Exception):
    """Base class for all errors raised by the portal."""
    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ConfigError(CosPortalError):
    code = "CONFIG_ERROR"


# --- Document text extraction ---

class ExtractionFailure(CosPortalError):
    """Text could not be obtained from a document."""
    code = "EXTRACTION_FAILED"
    http_status = 422


class UnsupportedFormat(ExtractionFailure):
    code = "UNSUPPORTED_FORMAT"


class ParseFailure(ExtractionFailure):
    code = "PARSE_FAILURE"


class EmptyResult(ExtractionFailure):
    code = "EMPTY_RESULT"


# --- LLM completion ---

class LLMError(CosPortalError):
    code = "UPSTREAM_ERROR"
    http_status = 502


class MalformedResponse(LLMError):
    """The completion was not valid JSON in the expected shape."""
    code = "MALFORMED_RESPONSE"

    def __init__(self, message: str, raw_response: str = ""):
        super().__init__(message)
        self.raw_response = raw_response


class RateLimited(LLMError):
    code = "RATE_LIMITED"
    http_status = 429


class LLMTimeout(LLMError):
    code = "TIMEOUT"
    http_status = 408


class UpstreamError(LLMError):
    code = "UPSTREAM_ERROR"


class MergeFailure(CosPortalError):
    """The merge step failed as a whole; no records are emitted."""
    code = "MERGE_FAILED"
    http_status = 502

    def __init__(self, message: str, raw_response: str = "", code: str = None):
        super().__init__(message, code)
        self.raw_response = raw_response


# --- Delegated access, validation, persistence ---

class AuthExpired(CosPortalError):
    code = "REFRESH_TOKEN_ERROR"
    http_status = 401


class PermissionRequired(CosPortalError):
    code = "GMAIL_PERMISSION_ERROR"
    http_status = 403


class ValidationFailure(CosPortalError):
    code = "VALIDATION_ERROR"
    http_status = 400


class NotFound(CosPortalError):
    code = "NOT_FOUND"
    http_status = 404


class StorageError(CosPortalError):
    code = "STORAGE_ERROR"
    http_status = 502


class OperationCancelled(CosPortalError):
    code = "CANCELLED"
    http_status = 409
