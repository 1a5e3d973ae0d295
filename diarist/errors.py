from __future__ import annotations


class DiaristError(Exception):
    """Base class for every error raised by the sync engine."""


class FatalConfigError(DiaristError):
    pass


class TransientFetchError(DiaristError):
    def __init__(self, service_id: str, message: str) -> None:
        super().__init__(f"{service_id}: {message}")
        self.service_id = service_id


class DataParseError(DiaristError):
    def __init__(self, message: str, *, external_id: str = "") -> None:
        super().__init__(message)
        self.external_id = external_id


class RateLimitError(DiaristError):
    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class CalendarWriteError(DiaristError):
    pass


class DuplicateWriteConflict(DiaristError):
    def __init__(self, message: str, *, entry_id: str = "") -> None:
        super().__init__(message)
        self.entry_id = entry_id


class AuthError(DiaristError):
    pass


class CredentialRejectedError(AuthError):
    """The calendar refused the bearer token that was sent."""

    def __init__(self, message: str, *, access_token: str = "") -> None:
        super().__init__(message)
        self.access_token = access_token


class ConsentError(AuthError):
    """The interactive consent flow could not produce a credential."""


class CycleTimeoutError(DiaristError):
    pass
