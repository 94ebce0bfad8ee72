"""Infrastructure errors shared by the stores and the counter cache."""

from __future__ import annotations


class BackendUnavailableError(Exception):
    """Raised when the key store, usage ledger, or counter cache fails or times out.

    The authentication gate converts this into a BACKEND_UNAVAILABLE denial
    (fail closed). Admin operations surface it as HTTP 503.
    """

    code: str = "backend_unavailable"

    def __init__(self, message: str = "Backend unavailable", backend: str = "unknown") -> None:
        super().__init__(message)
        self.message = message
        self.backend = backend
