from __future__ import annotations


class BotError(RuntimeError):
    pass


class SchemaError(BotError):
    """A JSON value does not match the record it is decoded into."""

    def __init__(self, field: str, expected: str, actual: str) -> None:
        self.field = field
        self.expected = expected
        self.actual = actual
        super().__init__(f"field {field!r}: expected {expected}, got {actual}")


class ProtocolError(BotError):
    """Well-formed response that breaks the `{ok, result}` envelope contract."""


class TransportError(BotError):
    def __init__(self, status: int, reason: str, *, method: str | None = None) -> None:
        self.status = status
        self.reason = reason
        self.method = method
        where = f"{method}: " if method else ""
        super().__init__(f"{where}HTTP {status} {reason}".rstrip())


class SessionConnectionError(BotError):
    """The connection failed or broke during an exchange."""


class SessionAbortedError(SessionConnectionError):
    """The exchange was cancelled by `abort()`."""


class SessionResetError(SessionConnectionError):
    """The peer closed the connection."""


class SessionStateError(BotError):
    """A request was issued while the session was not active."""


class IdentityMismatchError(BotError):
    pass


class StoreError(BotError):
    pass
