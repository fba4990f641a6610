"""
Exception types shared by the mail subsystem.

Every error carries the HTTP status the API layer reports for it, so route
handlers can surface them without re-classifying.
"""

from typing import Optional


class MailError(Exception):
    """Base class for all mail subsystem errors."""

    status_code = 500
    code = "mail_error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ConfigurationError(MailError):
    """Missing or malformed configuration, e.g. the encryption key."""

    code = "configuration_error"


class AuthenticationFailure(MailError):
    """Ciphertext failed authentication, or the provider rejected the credentials.

    Callers should prompt the user to re-link the account.
    """

    status_code = 403
    code = "relink_required"

    def __init__(self, message: str = "", account_id: Optional[str] = None):
        super().__init__(message)
        self.account_id = account_id


class AccessDenied(MailError):
    """Caller is not authenticated or does not own the account."""

    code = "access_denied"

    def __init__(self, message: str = "", authenticated: bool = True):
        super().__init__(message)
        self.authenticated = authenticated
        # 401 when there is no identity at all, 404 when the account is not theirs
        self.status_code = 404 if authenticated else 401


class RateLimited(MailError):
    """Caller exceeded the request quota for the current window."""

    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str = "", key: Optional[str] = None, retry_after: Optional[float] = None):
        super().__init__(message)
        self.key = key
        self.retry_after = retry_after


class ProviderError(MailError):
    """Adapter-level failure: network, provider 4xx/5xx, or a malformed response."""

    code = "provider_error"

    def __init__(self, message: str = "", account_id: Optional[str] = None, provider: Optional[str] = None):
        super().__init__(message)
        self.account_id = account_id
        self.provider = provider
