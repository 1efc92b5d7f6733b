"""Error taxonomy for the photo pipeline."""


class PhotoPipelineError(RuntimeError):
    """Base class for pipeline failures attached to photos or batches."""


class NetworkError(PhotoPipelineError):
    """The backend could not be reached or no response arrived."""


class ServerValidationError(PhotoPipelineError):
    """The backend rejected the request with a 4xx response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PayloadTooLargeError(ServerValidationError):
    """The backend refused the request body as too large."""


class ServerFaultError(PhotoPipelineError):
    """The backend failed with a 5xx response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ApiFormatError(PhotoPipelineError):
    """The backend answered with a payload the client cannot interpret."""


class AnalysisEmptyError(PhotoPipelineError):
    """The analysis call succeeded but carried no analysis data."""


class IdentityResolutionError(PhotoPipelineError):
    """A photo has no identifier usable for the requested operation."""


class LocalConversionError(PhotoPipelineError):
    """A local representation could not be produced from the file data."""


class InvalidTransitionError(PhotoPipelineError):
    """A photo status change is not allowed by the state machine."""


def describe_error(exc: BaseException) -> str:
    """Return a short user-facing message for an exception."""
    if isinstance(exc, NetworkError):
        return f"Network error: {exc}"
    if isinstance(exc, PayloadTooLargeError):
        return "File is too large for the server"
    message = str(exc).strip()
    return message or type(exc).__name__
