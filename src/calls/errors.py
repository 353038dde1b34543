"""Domain-specific exceptions for call relay operations.

These exceptions are safe to import from API layers without pulling in provider SDKs.
"""

from __future__ import annotations


class CallRelayError(Exception):
    status_code: int = 500
    default_detail: str = "Call relay error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class ValidationError(CallRelayError):
    status_code = 400
    default_detail = "Invalid call request."


class ConfigurationError(CallRelayError):
    status_code = 500
    default_detail = "Required provider configuration is missing."

    def __init__(self, detail: str | None = None, *, missing: list[str] | None = None) -> None:
        self.missing = list(missing or [])
        if detail is None and self.missing:
            detail = f"Missing: {', '.join(self.missing)}"
        super().__init__(detail)


class ProviderError(CallRelayError):
    """A telephony or voice-AI provider rejected a request."""

    status_code = 502
    default_detail = "Provider rejected the request."

    def __init__(
        self,
        detail: str | None = None,
        *,
        provider: str,
        code: int | str | None = None,
        provider_status: int | None = None,
    ) -> None:
        super().__init__(detail)
        self.provider = provider
        self.code = code
        self.provider_status = provider_status
        if provider_status in {400, 404, 422}:
            self.status_code = 400
        elif provider_status == 429:
            self.status_code = 429


class SessionNotFoundError(CallRelayError):
    status_code = 404
    default_detail = "Call session not found."


class SessionExistsError(CallRelayError):
    status_code = 409
    default_detail = "Call session already exists."


class CallSidAlreadyBoundError(CallRelayError):
    status_code = 409
    default_detail = "Call session is already bound to a different call SID."


class TerminationTimedOutError(CallRelayError):
    status_code = 504
    default_detail = "Call termination timed out."


class BridgeFailureError(CallRelayError):
    status_code = 502
    default_detail = "Voice AI leg could not be established."
