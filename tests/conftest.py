"""Shared pytest fixtures for graphtunnel tests."""

import select
import socket
import threading

import paramiko
import pytest

from graphtunnel.transport import SSHTransport


class FakeTransport(SSHTransport):
    """SSH transport double that records calls and never touches the network."""
    
    def __init__(self, local_port=54321, fail_on=None, error=None, disconnect_error=None):
        self.local_port = local_port
        self.fail_on = fail_on
        self.error = error or RuntimeError("boom")
        self.disconnect_error = disconnect_error
        self.calls = []
        self.connect_args = None
        self.forward_args = None
    
    def connect(self, params, trust, timeout):
        self.calls.append("connect")
        self.connect_args = (params, trust, timeout)
        if self.fail_on == "connect":
            raise self.error
    
    def open_local_forward(self, bind_host, bind_port, target_host, target_port):
        self.calls.append("open_local_forward")
        self.forward_args = (bind_host, bind_port, target_host, target_port)
        if self.fail_on == "forward":
            raise self.error
        return self.local_port
    
    def disconnect(self):
        self.calls.append("disconnect")
        if self.disconnect_error is not None:
            raise self.disconnect_error


class TunnelTestServer(paramiko.ServerInterface):
    """SSH server interface accepting one public key and direct-tcpip channels."""
    
    def __init__(self, authorized_key, username):
        self.authorized_key = authorized_key
        self.username = username
        self.destinations = {}
    
    def check_auth_publickey(self, username, key):
        if username == self.username and key.asbytes() == self.authorized_key.asbytes():
            return paramiko.AUTH_SUCCESSFUL
        return paramiko.AUTH_FAILED
    
    def get_allowed_auths(self, username):
        return "publickey"
    
    def check_channel_request(self, kind, chanid):
        return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED
    
    def check_channel_direct_tcpip_request(self, chanid, origin, destination):
        self.destinations[chanid] = destination
        return paramiko.OPEN_SUCCEEDED


class SSHServerHarness:
    """In-process SSH server that relays direct-tcpip channels to routed addresses."""
    
    def __init__(self, host_key, authorized_key, username="tunnel", routes=None):
        self.host_key = host_key
        self.authorized_key = authorized_key
        self.username = username
        self.routes = routes or {}
        self.requested_destinations = []
        self.transports = []
        self.running = True
        self.listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.listener.bind(("127.0.0.1", 0))
        self.listener.listen(10)
        self.listener.settimeout(0.2)
        self.port = self.listener.getsockname()[1]
        self.thread = threading.Thread(target=self._serve, daemon=True)
        self.thread.start()
    
    def _serve(self):
        while self.running:
            try:
                client, _ = self.listener.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            threading.Thread(target=self._handle, args=(client,), daemon=True).start()
    
    def _handle(self, client):
        transport = paramiko.Transport(client)
        transport.add_server_key(self.host_key)
        server = TunnelTestServer(self.authorized_key, self.username)
        self.transports.append(transport)
        try:
            transport.start_server(server=server)
        except (paramiko.SSHException, EOFError, OSError):
            return
        
        while self.running and transport.is_active():
            channel = transport.accept(0.2)
            if channel is None:
                continue
            destination = server.destinations.get(channel.get_id())
            self.requested_destinations.append(destination)
            threading.Thread(
                target=self._relay, args=(channel, destination), daemon=True
            ).start()
    
    def _relay(self, channel, destination):
        address = self.routes.get(destination, destination)
        upstream = socket.create_connection(address, timeout=5)
        try:
            while True:
                ready, _, _ = select.select([upstream, channel], [], [], 0.5)
                if upstream in ready:
                    data = upstream.recv(4096)
                    if not data:
                        break
                    channel.sendall(data)
                if channel in ready:
                    data = channel.recv(4096)
                    if not data:
                        break
                    upstream.sendall(data)
        except OSError:
            pass
        finally:
            channel.close()
            upstream.close()
    
    def known_hosts_line(self, key=None):
        key = key or self.host_key
        return f"[127.0.0.1]:{self.port} {key.get_name()} {key.get_base64()}\n"
    
    def stop(self):
        self.running = False
        self.listener.close()
        for transport in self.transports:
            transport.close()
        self.thread.join(timeout=2)


class EchoServer:
    """TCP server standing in for the database endpoint."""
    
    def __init__(self):
        self.listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.listener.bind(("127.0.0.1", 0))
        self.listener.listen(10)
        self.listener.settimeout(0.2)
        self.address = self.listener.getsockname()
        self.running = True
        self.thread = threading.Thread(target=self._serve, daemon=True)
        self.thread.start()
    
    def _serve(self):
        while self.running:
            try:
                client, _ = self.listener.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            threading.Thread(target=self._echo, args=(client,), daemon=True).start()
    
    @staticmethod
    def _echo(client):
        with client:
            while True:
                data = client.recv(4096)
                if not data:
                    break
                client.sendall(data)
    
    def stop(self):
        self.running = False
        self.listener.close()
        self.thread.join(timeout=2)


@pytest.fixture(scope="session")
def host_key():
    """Host key of the test SSH server."""
    return paramiko.RSAKey.generate(2048)


@pytest.fixture(scope="session")
def other_host_key():
    """A host key that does not belong to the test SSH server."""
    return paramiko.ECDSAKey.generate()


@pytest.fixture(scope="session")
def client_key():
    """Identity authorized on the test SSH server."""
    return paramiko.RSAKey.generate(2048)


@pytest.fixture
def client_key_file(tmp_path, client_key):
    """Private key file for the authorized identity."""
    path = tmp_path / "id_rsa"
    client_key.write_private_key_file(str(path))
    return path


@pytest.fixture
def key_file(tmp_path):
    """Placeholder private key file for tests using a fake transport."""
    path = tmp_path / "id_placeholder"
    path.write_text("not a real key\n")
    return path


@pytest.fixture
def echo_server():
    server = EchoServer()
    yield server
    server.stop()


@pytest.fixture
def ssh_server(host_key, client_key, echo_server):
    """SSH server routing db.internal:7687 to the echo server."""
    server = SSHServerHarness(
        host_key, client_key, routes={("db.internal", 7687): echo_server.address}
    )
    yield server
    server.stop()
