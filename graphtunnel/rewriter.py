"""Point a downstream endpoint at the local end of an SSH tunnel."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional
from urllib.parse import urlsplit, urlunsplit

from .exceptions import ConfigurationError

if TYPE_CHECKING:
    from .tunnel import SshTunnel

logger = logging.getLogger(__name__)


def _netloc(host: str, port: int) -> str:
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    return f"{host}:{port}"


def rewrite_endpoint_uri(endpoint: str, host: str, port: int) -> str:
    """
    Replace the host and port of an endpoint URI.
    
    Scheme, user info, path, query and fragment are kept.
    
    Raises:
        ConfigurationError: If the endpoint has no scheme or host
    """
    parts = urlsplit(endpoint)
    if not parts.scheme or not parts.hostname:
        raise ConfigurationError(f"Invalid endpoint URI '{endpoint}'", kind="invalid-endpoint")
    
    userinfo = parts.netloc.rpartition("@")[0]
    netloc = _netloc(host, port)
    if userinfo:
        netloc = f"{userinfo}@{netloc}"
    
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


class TunnelEndpointTarget(ABC):
    """Downstream connection settings that can be redirected through a tunnel."""
    
    @abstractmethod
    def ssh_tunnel_override(self, port: int, host: str = "localhost") -> None:
        """Redirect the endpoint to the tunnel's local host and port."""


@dataclass
class HostPortEndpoint(TunnelEndpointTarget):
    """Endpoint held as a separate host and port."""
    
    host: str
    port: int
    
    def ssh_tunnel_override(self, port: int, host: str = "localhost") -> None:
        self.host = host
        self.port = port


@dataclass
class UriEndpoint(TunnelEndpointTarget):
    """Endpoint held as a URI such as ``bolt://db.internal:7687``."""
    
    endpoint: str
    preserve_host: bool = False
    
    @property
    def scheme(self) -> str:
        return urlsplit(self.endpoint).scheme
    
    @property
    def hostname(self) -> Optional[str]:
        return urlsplit(self.endpoint).hostname
    
    @property
    def port(self) -> Optional[int]:
        return urlsplit(self.endpoint).port
    
    def ssh_tunnel_override(self, port: int, host: str = "localhost") -> None:
        # keeping the host leaves TLS host name checks working when it resolves locally
        new_host = self.hostname if self.preserve_host else host
        self.endpoint = rewrite_endpoint_uri(self.endpoint, new_host, port)


def apply_tunnel_override(tunnel: "SshTunnel", target: TunnelEndpointTarget) -> bool:
    """
    Redirect ``target`` to the local end of ``tunnel``.
    
    Does nothing unless the tunnel is forwarding.
    
    Returns:
        True if the endpoint was rewritten
    """
    override = tunnel.endpoint_override()
    if override is None:
        return False
    
    target.ssh_tunnel_override(override.port, override.host)
    logger.info(f"Endpoint redirected to {override.host}:{override.port}")
    return True
