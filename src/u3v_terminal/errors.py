"""Exception hierarchy shared by every layer of :mod:`u3v_terminal`."""

from __future__ import annotations

import os

__all__ = [
    "U3VError",
    "TransportError",
    "ProtocolError",
    "PendingAckError",
    "SessionError",
    "AuthenticationError",
    "SessionTimeoutError",
    "UsageError",
    "FileTransferError",
]


class U3VError(RuntimeError):
    """Base class for every failure raised by the terminal client."""


class TransportError(U3VError):
    """Raised when a bulk transfer fails, times out or is truncated."""


class ProtocolError(U3VError):
    """Raised when a UVCP response is malformed or does not match its request."""


class PendingAckError(ProtocolError):
    """Raised when the device keeps answering PENDING_ACK past the retry ceiling."""


class SessionError(U3VError):
    """Raised when the terminal session cannot be initialised or started."""


class AuthenticationError(SessionError):
    """Raised when the terminal stays locked after an authentication attempt."""


class SessionTimeoutError(SessionError):
    """Raised when the terminal does not report ready before the deadline."""


class UsageError(U3VError):
    """Raised for malformed ``u3vget``/``u3vput`` invocations."""


class FileTransferError(U3VError):
    """Raised when the device-side file channel reports an error.

    ``errno`` holds the value of the file result register (0 when the device
    did not provide one) and ``strerror`` its human readable meaning.
    """

    def __init__(self, message: str, errno: int = 0) -> None:
        self.errno = errno
        self.strerror = os.strerror(errno) if errno else ""
        if errno:
            message = f"{message}: errno={errno} ({self.strerror})"
        super().__init__(message)
