"""Exception types shared across the offline client."""


class CopytabError(Exception):
    """Base class for all errors raised by copytab."""

    pass


class StorageUnavailable(CopytabError):
    """Raised when the local database cannot be read or written.

    Covers a store that was never opened or has been closed, as well as
    any sqlite failure (locked, corrupted or missing medium). Never retried
    automatically; the caller must handle it explicitly.
    """

    pass


class GatewayError(CopytabError):
    """Raised when a call to the remote store fails."""

    pass


class GatewayUnreachable(GatewayError):
    """Raised when the remote store cannot be reached (transport failure)."""

    pass


class GatewayRejected(GatewayError):
    """Raised when the remote store answers with a logical error.

    The server's message is kept verbatim so it can be shown to the user.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CompletionError(CopytabError):
    """Raised when the text-generation backend fails."""

    pass


class ConfigurationError(CopytabError):
    """Raised at startup when required configuration is missing or invalid."""

    pass
