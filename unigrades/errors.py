"""Exception taxonomy shared by the portal flow, the HTTP layer and the worker."""

from __future__ import annotations


class UniGradesError(Exception):
    """Base class for every error raised by this package."""


class CredentialError(UniGradesError):
    """The portal rejected the username or password."""

    UNKNOWN_USERNAME = "unknown_username"
    WRONG_PASSWORD = "wrong_password"
    OTHER = "other"

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message


class IncorrectCaptchaError(UniGradesError):
    """The portal reported that the submitted captcha code was wrong."""

    def __init__(self, message: str = "Incorrect captcha code. Please try again."):
        super().__init__(message)


class VerificationTimeoutError(UniGradesError):
    """No success or error signal appeared after submitting the captcha."""


class NavigationError(UniGradesError):
    """The portal could not be reached or rendered."""


class FrameNotFoundError(UniGradesError):
    """The captcha/grades frame did not appear in time."""


class CaptchaElementError(UniGradesError):
    """The captcha image, input field or submit button is missing."""


class BrowserLostError(UniGradesError):
    """The browser owning a session disconnected."""


class SessionExpiredError(UniGradesError):
    """The token does not refer to a live session."""

    def __init__(self, message: str = "Session expired"):
        super().__init__(message)


class CaptchaUnsolvedError(UniGradesError):
    """Unattended flow exhausted its automatic captcha attempts."""


class ProviderError(UniGradesError):
    """A recognition provider failed technically (rate limit, transport, bad response)."""


class StoreUnavailableError(UniGradesError):
    """The document store is disabled or unreachable."""
