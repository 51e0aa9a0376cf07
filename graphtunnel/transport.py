"""SSH transport and local port forwarding using Paramiko."""

import logging
import select
import socket
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

import paramiko
from paramiko.pkey import UnknownKeyType

from .exceptions import ConfigurationError, ConnectError, TunnelStateError
from .trust import TrustDecision, known_hosts_name

BUFFER_SIZE = 16384
ACCEPT_POLL_INTERVAL = 0.5


@dataclass(frozen=True)
class SessionParams:
    """Parameters for one SSH session to the intermediate host."""
    
    host: str
    port: int
    user: str
    private_key_path: Path
    passphrase: Optional[str] = None


class SSHTransport(ABC):
    """Narrow interface over the SSH client used by a tunnel session."""
    
    @abstractmethod
    def connect(self, params: SessionParams, trust: TrustDecision, timeout: float) -> None:
        """Open and authenticate the SSH session, applying the trust policy."""
    
    @abstractmethod
    def open_local_forward(self, bind_host: str, bind_port: int,
                           target_host: str, target_port: int) -> int:
        """Bind a local listener relaying to the target; return the bound port."""
    
    @abstractmethod
    def disconnect(self) -> None:
        """Release the forward and close the SSH session."""


class LocalForwardServer:
    """Local listener that relays each accepted connection over a direct-tcpip channel."""
    
    def __init__(self, transport: paramiko.Transport, target_host: str, target_port: int,
                 bind_host: str = "localhost", bind_port: int = 0):
        """Initialize the forward server."""
        self.transport = transport
        self.target_host = target_host
        self.target_port = target_port
        self.bind_host = bind_host
        self.bind_port = bind_port
        self.logger = logging.getLogger(__name__)
        self.server_socket: Optional[socket.socket] = None
        self.accept_thread: Optional[threading.Thread] = None
        self.local_port: Optional[int] = None
        self.running = False
        self.active_connections: Dict[str, Tuple[socket.socket, paramiko.Channel]] = {}
        self.connection_lock = threading.Lock()
    
    def start(self) -> int:
        """
        Bind the listener and start accepting connections.
        
        Returns:
            The local port chosen by the operating system
        """
        self.server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self.server_socket.bind((self.bind_host, self.bind_port))
            self.server_socket.listen(100)
            self.server_socket.settimeout(ACCEPT_POLL_INTERVAL)
        except OSError:
            self.server_socket.close()
            self.server_socket = None
            raise
        
        self.local_port = self.server_socket.getsockname()[1]
        self.running = True
        
        self.accept_thread = threading.Thread(
            target=self._serve,
            name=f"graphtunnel-forward-{self.local_port}",
            daemon=True
        )
        self.accept_thread.start()
        
        self.logger.info(
            f"Forwarding {self.bind_host}:{self.local_port} -> "
            f"{self.target_host}:{self.target_port}"
        )
        return self.local_port
    
    def stop(self):
        """Stop accepting, close live connections and release the port."""
        self.running = False
        
        if self.server_socket:
            try:
                self.server_socket.close()
            except OSError as e:
                self.logger.warning(f"Error closing forward listener: {e}")
            self.server_socket = None
        
        with self.connection_lock:
            connection_ids = list(self.active_connections.keys())
        
        for connection_id in connection_ids:
            self._cleanup_connection(connection_id)
        
        if self.accept_thread and self.accept_thread is not threading.current_thread():
            self.accept_thread.join(timeout=ACCEPT_POLL_INTERVAL * 4)
        self.accept_thread = None
        
        self.logger.info(f"Forward on local port {self.local_port} stopped")
    
    def get_active_connections_count(self) -> int:
        """Get number of relayed connections."""
        with self.connection_lock:
            return len(self.active_connections)
    
    def _serve(self):
        """Accept loop."""
        server_socket = self.server_socket
        while self.running:
            try:
                client_socket, client_address = server_socket.accept()
            except socket.timeout:
                continue
            except OSError as e:
                # listener closed by stop()
                if self.running:
                    self.logger.error(f"Error accepting forwarded connection: {e}")
                break
            
            client_socket.settimeout(None)
            connection_thread = threading.Thread(
                target=self._handle_connection,
                args=(client_socket, client_address),
                daemon=True
            )
            connection_thread.start()
    
    def _handle_connection(self, client_socket: socket.socket, client_address: tuple):
        """Open a channel to the target and relay one client connection."""
        connection_id = f"{client_address[0]}:{client_address[1]}"
        
        try:
            channel = self.transport.open_channel(
                "direct-tcpip",
                (self.target_host, self.target_port),
                (client_address[0], client_address[1])
            )
        except (paramiko.SSHException, OSError, EOFError) as e:
            self.logger.error(
                f"Could not open channel to {self.target_host}:{self.target_port} "
                f"for {connection_id}: {e}"
            )
            client_socket.close()
            return
        
        with self.connection_lock:
            self.active_connections[connection_id] = (client_socket, channel)
        
        self.logger.debug(f"Relay started for {connection_id}")
        try:
            self._relay_data(client_socket, channel, connection_id)
        finally:
            self._cleanup_connection(connection_id)
    
    def _relay_data(self, client_socket: socket.socket, channel: paramiko.Channel,
                    relay_id: str):
        """Copy bytes both ways until either side closes."""
        try:
            while self.running:
                if channel.closed:
                    break
                
                ready, _, _ = select.select([client_socket, channel], [], [], 1.0)
                
                if client_socket in ready:
                    data = client_socket.recv(BUFFER_SIZE)
                    if not data:
                        break
                    channel.sendall(data)
                
                if channel in ready:
                    data = channel.recv(BUFFER_SIZE)
                    if not data:
                        break
                    client_socket.sendall(data)
        
        except (OSError, ValueError, paramiko.SSHException) as e:
            self.logger.debug(f"Relay {relay_id} data transfer error: {e}")
        
        finally:
            self.logger.debug(f"Relay {relay_id} terminated")
    
    def _cleanup_connection(self, connection_id: str):
        """Close one relayed connection."""
        with self.connection_lock:
            conn_info = self.active_connections.pop(connection_id, None)
        
        if conn_info is None:
            return
        
        client_socket, channel = conn_info
        for resource in (channel, client_socket):
            try:
                resource.close()
            except OSError as e:
                self.logger.debug(f"Error closing {connection_id}: {e}")


class ParamikoTransport(SSHTransport):
    """SSH transport backed by a paramiko.Transport."""
    
    def __init__(self):
        """Initialize an unconnected transport."""
        self.logger = logging.getLogger(__name__)
        self.sock: Optional[socket.socket] = None
        self.transport: Optional[paramiko.Transport] = None
        self.forward: Optional[LocalForwardServer] = None
    
    @staticmethod
    def load_private_key(params: SessionParams) -> paramiko.PKey:
        """Load the identity used for public key authentication."""
        try:
            passphrase = params.passphrase.encode() if params.passphrase else None
            return paramiko.PKey.from_path(params.private_key_path, passphrase)
        except paramiko.PasswordRequiredException as e:
            raise ConfigurationError(
                f"Private key '{params.private_key_path}' is encrypted and no passphrase was given",
                kind="private-key-invalid",
                cause=e,
            ) from e
        except (OSError, ValueError, UnknownKeyType, paramiko.SSHException) as e:
            raise ConfigurationError(
                f"Could not load private key '{params.private_key_path}': {e}",
                kind="private-key-invalid",
                cause=e,
            ) from e
    
    def connect(self, params: SessionParams, trust: TrustDecision, timeout: float) -> None:
        if self.transport is not None:
            raise TunnelStateError("SSH transport is already connected")
        
        pkey = self.load_private_key(params)
        endpoint = f"{params.host}:{params.port}"
        
        try:
            self.sock = socket.create_connection((params.host, params.port), timeout=timeout)
            
            self.transport = paramiko.Transport(self.sock)
            self.transport.banner_timeout = timeout
            self.transport.handshake_timeout = timeout
            self.transport.auth_timeout = timeout
            
            options = self.transport.get_security_options()
            options.key_types = trust.ordered_key_types(options.key_types)
            
            self.transport.start_client(timeout=timeout)
            
            # Host identity is checked before any credentials are sent
            trust.verify(known_hosts_name(params.host, params.port),
                         self.transport.get_remote_server_key())
            
            self.transport.auth_publickey(params.user, pkey)
        
        except paramiko.AuthenticationException as e:
            self.disconnect()
            raise ConnectError(
                f"Authentication rejected for {params.user}@{endpoint}: {e}",
                kind="authentication",
                cause=e,
            ) from e
        except paramiko.SSHException as e:
            self.disconnect()
            raise ConnectError(
                f"SSH handshake with {endpoint} failed: {e}", kind="handshake", cause=e
            ) from e
        except socket.timeout as e:
            self.disconnect()
            raise ConnectError(
                f"Timed out connecting to {endpoint} after {timeout:.1f}s",
                kind="timeout",
                cause=e,
            ) from e
        except OSError as e:
            self.disconnect()
            raise ConnectError(
                f"Could not reach SSH host {endpoint}: {e}", kind="network", cause=e
            ) from e
        except BaseException:
            self.disconnect()
            raise
        
        if not self.transport.is_authenticated():
            self.disconnect()
            raise ConnectError(
                f"Authentication incomplete for {params.user}@{endpoint}",
                kind="authentication",
            )
        
        self.logger.info(f"SSH session established to {params.user}@{endpoint}")
    
    def open_local_forward(self, bind_host: str, bind_port: int,
                           target_host: str, target_port: int) -> int:
        if self.transport is None or not self.transport.is_active():
            raise TunnelStateError("SSH transport is not connected")
        if self.forward is not None:
            raise TunnelStateError("A local forward is already bound for this session")
        
        forward = LocalForwardServer(self.transport, target_host, target_port,
                                     bind_host=bind_host, bind_port=bind_port)
        try:
            local_port = forward.start()
        except OSError as e:
            raise ConnectError(
                f"Could not bind local forward on {bind_host}:{bind_port}: {e}",
                kind="forward-bind",
                cause=e,
            ) from e
        
        self.forward = forward
        return local_port
    
    def disconnect(self) -> None:
        if self.forward is not None:
            self.forward.stop()
            self.forward = None
        
        if self.transport is not None:
            try:
                self.transport.close()
            except (OSError, paramiko.SSHException) as e:
                self.logger.warning(f"Error closing SSH transport: {e}")
            self.transport = None
        
        if self.sock is not None:
            try:
                self.sock.close()
            except OSError as e:
                self.logger.warning(f"Error closing SSH socket: {e}")
            self.sock = None
