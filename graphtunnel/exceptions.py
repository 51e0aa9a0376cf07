"""Exceptions raised by the SSH tunnel subsystem."""

from typing import Optional


class TunnelError(Exception):
    """Base exception for all tunnel errors.
    
    Carries a short machine-readable ``kind`` and the underlying cause so
    callers can tell misconfiguration apart from network or trust failures.
    """
    
    default_kind = "tunnel-error"
    
    def __init__(self, message: str, kind: Optional[str] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message)
        self.kind = kind or self.default_kind
        self.cause = cause
    
    def __str__(self) -> str:
        return f"[{self.kind}] {super().__str__()}"


class ConfigurationError(TunnelError, ValueError):
    """Raised when tunnel configuration is invalid, before any network I/O."""
    
    default_kind = "invalid-configuration"


class TrustVerificationError(TunnelError):
    """Raised when the SSH host's identity is rejected by the trust policy."""
    
    default_kind = "host-key-rejected"


class ConnectError(TunnelError):
    """Raised when the SSH session or the local forward cannot be established."""
    
    default_kind = "connect-failed"


class TunnelStateError(TunnelError):
    """Raised when a transport operation is called in the wrong state."""
    
    default_kind = "invalid-state"
