"""Error taxonomy for reconstruction jobs and provider calls."""


class ReconstructionError(Exception):
    """Base class for errors surfaced to API clients."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(ReconstructionError):
    """Raised before any provider call when the request cannot be processed."""

    status_code = 400


class JobNotFound(ReconstructionError):
    """Raised when a job or session id is unknown."""

    status_code = 404


class JobConflict(ReconstructionError):
    """Raised when a job is in a state that forbids the requested action."""

    status_code = 409


class ProviderError(ReconstructionError):
    """Base class for failures reported by the provider gateway."""

    status_code = 502

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class ProviderUnavailable(ProviderError):
    """Transport, auth or timeout failure talking to a provider."""


class ProviderRateLimited(ProviderError):
    """Provider asked the caller to back off."""

    status_code = 429


class ProviderMalformedResponse(ProviderError):
    """Provider answered, but the response could not be parsed into the expected shape."""
