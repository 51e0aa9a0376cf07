"""Data models for the SSH tunnel subsystem."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

from .config import Config
from .exceptions import ConfigurationError
from .paths import parse_endpoint


def _as_bool(value: Any, default: bool) -> bool:
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _blank_to_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class TunnelState(str, Enum):
    """Lifecycle states of an SSH tunnel session."""
    
    IDLE = "idle"
    CONNECTING = "connecting"
    FORWARDING = "forwarding"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass(frozen=True)
class TunnelConfig:
    """Immutable parameters for one SSH tunnel to a database endpoint."""
    
    ssh_host: str = ""
    ssh_port: int = Config.DEFAULT_SSH_PORT
    ssh_user: str = ""
    private_key_path: str = ""
    known_hosts_path: Optional[str] = None
    strict_host_key_checking: bool = True
    target_host: str = ""
    target_port: int = 0
    private_key_passphrase: Optional[str] = None
    enabled: bool = True
    
    def __post_init__(self):
        """Validate the tunnel configuration."""
        if not self.enabled:
            return
        if not self.ssh_host:
            raise ConfigurationError("SSH host is required", kind="invalid-property")
        if not self.ssh_user:
            raise ConfigurationError("SSH user is required", kind="invalid-property")
        if not self.private_key_path:
            raise ConfigurationError("SSH private key file is required", kind="invalid-property")
        if not self.target_host:
            raise ConfigurationError("Target host is required", kind="invalid-property")
        if self.ssh_port < 1 or self.ssh_port > 65535:
            raise ConfigurationError("Invalid SSH port", kind="invalid-property")
        if self.target_port < 1 or self.target_port > 65535:
            raise ConfigurationError("Invalid target port", kind="invalid-property")
    
    @property
    def target(self) -> str:
        return f"{self.target_host}:{self.target_port}"
    
    @classmethod
    def disabled(cls) -> "TunnelConfig":
        """Configuration for a connection that does not use a tunnel."""
        return cls(enabled=False)
    
    @classmethod
    def from_properties(cls, properties: Mapping[str, Any]) -> "TunnelConfig":
        """
        Build a tunnel configuration from connection properties.
        
        Args:
            properties: Mapping with ``ssh_tunnel_enabled``, ``ssh_host``
                (``host[:port]``), ``ssh_user``, ``ssh_private_key_file``,
                ``ssh_private_key_passphrase``, ``ssh_known_hosts_file``,
                ``ssh_strict_host_key_checking``, ``target_host`` and
                ``target_port``
        
        Returns:
            The tunnel configuration, disabled when tunneling is not requested
        """
        if not _as_bool(properties.get("ssh_tunnel_enabled"), False):
            return cls.disabled()
        
        ssh_host, ssh_port = parse_endpoint(str(properties.get("ssh_host") or ""))
        
        try:
            target_port = int(properties.get("target_port") or 0)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"Invalid target port: {properties.get('target_port')!r}",
                kind="invalid-property",
                cause=e,
            ) from e
        
        return cls(
            ssh_host=ssh_host,
            ssh_port=ssh_port,
            ssh_user=str(properties.get("ssh_user") or "").strip(),
            private_key_path=str(properties.get("ssh_private_key_file") or "").strip(),
            private_key_passphrase=properties.get("ssh_private_key_passphrase") or None,
            known_hosts_path=_blank_to_none(properties.get("ssh_known_hosts_file")),
            strict_host_key_checking=_as_bool(
                properties.get("ssh_strict_host_key_checking"), True
            ),
            target_host=str(properties.get("target_host") or "").strip(),
            target_port=target_port,
        )


@dataclass(frozen=True)
class EndpointOverride:
    """Local endpoint that replaces the database endpoint while a tunnel is up."""
    
    host: str
    port: int
