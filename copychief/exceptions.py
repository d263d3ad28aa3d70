"""Exception hierarchy for the relay, the ledger and the streaming client.

Every error carries the HTTP status it maps to and a JSON payload, so the API
layer can render it with a single exception handler and the client can rebuild
the same exception from an error response.
"""


class CopyChiefError(Exception):
    """Base class for all CopyChief errors."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def to_payload(self) -> dict:
        return {"error": self.code, "message": str(self)}


class BadRequest(CopyChiefError):
    """Malformed or incomplete input. Surfaced immediately, never retried."""

    status_code = 400
    code = "BAD_REQUEST"

    def __init__(self, message: str, missing_fields: list[str] | None = None):
        super().__init__(message)
        self.missing_fields = missing_fields or []

    def to_payload(self) -> dict:
        payload = super().to_payload()
        if self.missing_fields:
            payload["missingFields"] = self.missing_fields
        return payload


class InsufficientTokens(CopyChiefError):
    """The account cannot cover the pre-flight estimate of an operation."""

    status_code = 402
    code = "INSUFFICIENT_TOKENS"

    def __init__(self, required: int, available: int):
        super().__init__(f"Operation requires {required} tokens, {available} available")
        self.required = required
        self.available = available

    def to_payload(self) -> dict:
        return {
            "error": self.code,
            "requiredTokens": self.required,
            "availableTokens": self.available,
        }


class NoActiveConnection(CopyChiefError):
    """A send arrived but no event stream is registered to receive the answer."""

    status_code = 409
    code = "NO_ACTIVE_CONNECTION"


class ExchangeSuperseded(CopyChiefError):
    """A newer send on the same session cancelled this exchange."""

    status_code = 409
    code = "SUPERSEDED"


class ProviderError(CopyChiefError):
    """Upstream completion-service failure that aborts the turn."""

    status_code = 500
    code = "PROVIDER_ERROR"


class LedgerCommitError(CopyChiefError):
    """Post-completion usage commit failed. Retried in the background."""

    code = "LEDGER_COMMIT_FAILED"


class AccountNotFound(CopyChiefError):
    status_code = 404
    code = "ACCOUNT_NOT_FOUND"


class ReservationNotFound(CopyChiefError):
    status_code = 404
    code = "RESERVATION_NOT_FOUND"


class ConnectionClosed(CopyChiefError):
    """An event could not be delivered because the stream is gone."""

    status_code = 409
    code = "CONNECTION_CLOSED"


class InvalidTransition(CopyChiefError):
    """An exchange was moved to a state its current state cannot reach."""


class StreamConnectionError(CopyChiefError):
    """Client side: the event stream could not be opened or dropped."""

    status_code = 503
    code = "STREAM_CONNECTION_ERROR"


class SendRejected(CopyChiefError):
    """Client side: a send was refused locally (busy or not connected)."""

    status_code = 409
    code = "SEND_REJECTED"


_BY_CODE = {
    cls.code: cls
    for cls in (
        BadRequest,
        NoActiveConnection,
        ExchangeSuperseded,
        ProviderError,
        AccountNotFound,
    )
}


def error_from_response(status_code: int, payload: dict) -> CopyChiefError:
    """Rebuild the server-side exception from an error response body."""
    code = payload.get("error") if isinstance(payload, dict) else None
    if code == InsufficientTokens.code:
        return InsufficientTokens(
            required=int(payload.get("requiredTokens", 0)),
            available=int(payload.get("availableTokens", 0)),
        )
    message = ""
    if isinstance(payload, dict):
        message = payload.get("message") or payload.get("detail") or ""
    cls = _BY_CODE.get(code)
    if cls is BadRequest:
        return BadRequest(message or "Bad request", payload.get("missingFields"))
    if cls is not None:
        return cls(message or code)
    err = CopyChiefError(message or f"HTTP {status_code}")
    err.status_code = status_code
    return err
