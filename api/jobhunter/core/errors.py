class JobHunterError(Exception):
    """Base error for failures the service reports to its callers."""

    status_code = 500


class ValidationError(JobHunterError):
    """Raised when a submission or send payload is malformed."""

    status_code = 400


class AuthExchangeError(JobHunterError):
    """Raised when an authorization code or state token cannot be trusted."""

    status_code = 400


class CredentialError(JobHunterError):
    """Raised when no active or refreshable delegated credential exists."""

    status_code = 400


class ProviderError(JobHunterError):
    """Raised when a scraping, discovery or mail provider call fails."""

    status_code = 502


class PersistenceError(JobHunterError):
    """Raised when the store is unavailable or not configured."""

    status_code = 500
