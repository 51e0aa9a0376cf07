"""SSH tunnel session: connect, forward a local port, disconnect."""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from .config import Config
from .exceptions import ConfigurationError, ConnectError, TunnelError
from .logging import (
    log_tunnel_closed,
    log_tunnel_established,
    log_tunnel_failed,
    log_tunnel_opening,
)
from .models import EndpointOverride, TunnelConfig, TunnelState
from .paths import resolve_path
from .rewriter import TunnelEndpointTarget, apply_tunnel_override
from .transport import ParamikoTransport, SSHTransport, SessionParams
from .trust import HostTrustVerifier


@dataclass(frozen=True)
class _ActiveForward:
    """Connected transport and its bound local port, held only while forwarding."""
    
    transport: SSHTransport
    local_port: int


class SshTunnel:
    """
    SSH tunnel from a local ephemeral port to a database endpoint.
    
    The tunnel is established on construction when the configuration asks for
    one, otherwise the instance stays idle and every query returns an inert
    value. Callers must call ``disconnect`` (or use the instance as a context
    manager) to release the local port and the SSH session.
    """
    
    def __init__(self, config: Optional[TunnelConfig],
                 transport_factory: Callable[[], SSHTransport] = ParamikoTransport,
                 verifier: Optional[HostTrustVerifier] = None,
                 connect_timeout_ms: Optional[int] = None,
                 local_bind_port: Optional[int] = None,
                 local_host: Optional[str] = None):
        """
        Initialize the tunnel and connect it if tunneling is requested.
        
        Args:
            config: Tunnel configuration, None or disabled for no tunnel
            transport_factory: Creates the SSH transport for this session
            verifier: Resolves the host key policy
            connect_timeout_ms: Bound on the SSH connect and handshake
            local_bind_port: Local port to request, 0 lets the OS choose
            local_host: Loopback host the forward listens on
        
        Raises:
            ConfigurationError: On invalid configuration, before network I/O
            TrustVerificationError: If the SSH host's key is rejected
            ConnectError: If the session or the forward cannot be established
        """
        self.logger = logging.getLogger(__name__)
        self.config = config
        self.transport_factory = transport_factory
        self.verifier = verifier or HostTrustVerifier()
        self.connect_timeout_ms = (
            Config.CONNECT_TIMEOUT_MS if connect_timeout_ms is None else connect_timeout_ms
        )
        self.local_bind_port = (
            Config.LOCAL_BIND_PORT if local_bind_port is None else local_bind_port
        )
        self.local_host = local_host or Config.LOCAL_HOST
        self._state = TunnelState.IDLE
        self._active: Optional[_ActiveForward] = None
        
        if config is None or not config.enabled:
            return
        
        self._connect(config)
    
    @property
    def state(self) -> TunnelState:
        """Current lifecycle state."""
        return self._state
    
    def _connect(self, config: TunnelConfig):
        """Establish the SSH session and bind the local forward."""
        self._state = TunnelState.CONNECTING
        log_tunnel_opening(self.logger, config.ssh_user, config.ssh_host,
                           config.ssh_port, config.target)
        
        transport = None
        try:
            private_key = resolve_path(config.private_key_path)
            if not private_key.is_file():
                raise ConfigurationError(
                    f"Private key file '{private_key}' not found", kind="private-key-not-found"
                )
            
            trust = self.verifier.resolve(config)
            
            params = SessionParams(
                host=config.ssh_host,
                port=config.ssh_port,
                user=config.ssh_user,
                private_key_path=private_key,
                passphrase=config.private_key_passphrase,
            )
            
            transport = self.transport_factory()
            transport.connect(params, trust, self.connect_timeout_ms / 1000.0)
            local_port = transport.open_local_forward(
                self.local_host, self.local_bind_port, config.target_host, config.target_port
            )
        
        except TunnelError as e:
            self._fail(config, transport, e)
            raise
        except Exception as e:
            error = ConnectError(
                f"Could not establish SSH tunnel via {config.ssh_host}: {e}",
                kind="connect-failed",
                cause=e,
            )
            self._fail(config, transport, error)
            raise error from e
        except BaseException as e:
            # interrupted mid-connect
            self._fail(config, transport, ConnectError(
                f"Interrupted while connecting via {config.ssh_host}",
                kind="connect-failed",
                cause=e,
            ))
            raise
        
        self._active = _ActiveForward(transport=transport, local_port=local_port)
        self._state = TunnelState.FORWARDING
        log_tunnel_established(self.logger, config.ssh_host, self.local_host,
                               local_port, config.target)
    
    def _fail(self, config: TunnelConfig, transport: Optional[SSHTransport],
              error: TunnelError):
        """Roll back partial state after a failed connect."""
        self._active = None
        self._state = TunnelState.FAILED
        if transport is not None:
            self._release(transport)
        log_tunnel_failed(self.logger, config.ssh_host, config.target, error.kind, str(error))
    
    def _release(self, transport: SSHTransport):
        try:
            transport.disconnect()
        except Exception as e:
            self.logger.warning(f"Error releasing SSH transport: {e}")
    
    def tunnel_host(self) -> str:
        """Get host for tunnel."""
        return self.local_host
    
    def tunnel_port(self) -> int:
        """Get port for tunnel, 0 when no tunnel is forwarding."""
        return self._active.local_port if self._active else 0
    
    def is_valid(self) -> bool:
        """Return whether the tunnel is forwarding."""
        return self._state is TunnelState.FORWARDING
    
    def endpoint_override(self) -> Optional[EndpointOverride]:
        """Local endpoint to substitute for the database endpoint, if forwarding."""
        if not self.is_valid():
            return None
        return EndpointOverride(host=self.tunnel_host(), port=self.tunnel_port())
    
    def disconnect(self):
        """Disconnect the SSH tunnel. Safe to call more than once."""
        active = self._active
        if active is None:
            return
        
        self._active = None
        self._state = TunnelState.CLOSED
        self._release(active.transport)
        log_tunnel_closed(self.logger, self.config.ssh_host, active.local_port)
    
    def __enter__(self) -> "SshTunnel":
        return self
    
    def __exit__(self, *args) -> None:
        self.disconnect()
    
    def __repr__(self) -> str:
        return f"SshTunnel(state={self._state.value}, port={self.tunnel_port()})"


@contextmanager
def tunnel_scope(config: Optional[TunnelConfig],
                 target: Optional[TunnelEndpointTarget] = None,
                 **kwargs) -> Iterator[SshTunnel]:
    """
    Open a tunnel for the duration of a block.
    
    When the tunnel is forwarding, ``target`` (a TunnelEndpointTarget) is
    pointed at the local endpoint before the block runs. The tunnel is
    disconnected on every exit path.
    """
    tunnel = SshTunnel(config, **kwargs)
    try:
        if target is not None:
            apply_tunnel_override(tunnel, target)
        yield tunnel
    finally:
        tunnel.disconnect()
