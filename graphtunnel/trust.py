"""Host key trust policy for SSH tunnel sessions."""

import base64
import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Tuple

import paramiko
from paramiko.hostkeys import HostKeyEntry, InvalidHostKey

from .config import Config
from .exceptions import ConfigurationError, TrustVerificationError
from .logging import log_host_key_added, log_trust_disabled, log_trust_enforced
from .models import TunnelConfig
from .paths import resolve_path

logger = logging.getLogger(__name__)

# A known_hosts "ssh-rsa" record is negotiated with the SHA-2 signature variants first
RSA_KEY_ALGORITHMS = ("rsa-sha2-512", "rsa-sha2-256", "ssh-rsa")

# OpenSSH key types that may appear in known_hosts but that paramiko skips on load
OPENSSH_ONLY_KEY_TYPES = frozenset([
    "ssh-dss",
    "sk-ssh-ed25519@openssh.com",
    "sk-ecdsa-sha2-nistp256@openssh.com",
])
CERT_KEY_TYPE_SUFFIX = "-cert-v01@openssh.com"


def known_hosts_name(host: str, port: int) -> str:
    """Host name as recorded in an OpenSSH known_hosts file."""
    if port == Config.DEFAULT_SSH_PORT:
        return host
    return f"[{host}]:{port}"


def host_key_fingerprint(key: paramiko.PKey) -> str:
    """Calculate the SHA256 fingerprint of a host key."""
    sha256_hash = hashlib.sha256(key.asbytes()).digest()
    return "SHA256:" + base64.b64encode(sha256_hash).decode().rstrip('=')


class TrustDecision(ABC):
    """Resolved host key verification policy for one session."""
    
    enforced = False
    
    @abstractmethod
    def verify(self, host_id: str, key: paramiko.PKey) -> None:
        """Accept the server's host key or raise TrustVerificationError."""
    
    def ordered_key_types(self, available: Sequence[str]) -> Tuple[str, ...]:
        """Server host key algorithms to offer, in preference order."""
        return tuple(available)


@dataclass
class TrustDisabled(TrustDecision):
    """Host key verification skipped at the caller's request."""
    
    def verify(self, host_id: str, key: paramiko.PKey) -> None:
        logger.debug(f"Skipping host key verification for {host_id} ({key.get_name()})")


@dataclass
class TrustEnforced(TrustDecision):
    """Host key must match a record in the trust store."""
    
    trust_store_path: Path
    host_keys: paramiko.HostKeys
    preferred_key_algorithm: Optional[str] = None
    hash_known_hosts: bool = True
    accept_new_hosts: bool = False
    
    enforced = True
    
    def ordered_key_types(self, available: Sequence[str]) -> Tuple[str, ...]:
        if not self.preferred_key_algorithm:
            return tuple(available)
        
        if self.preferred_key_algorithm == "ssh-rsa":
            wanted = RSA_KEY_ALGORITHMS
        else:
            wanted = (self.preferred_key_algorithm,)
        
        first = [name for name in wanted if name in available]
        return tuple(first) + tuple(name for name in available if name not in first)
    
    def verify(self, host_id: str, key: paramiko.PKey) -> None:
        if self.host_keys.check(host_id, key):
            logger.debug(f"Host key for {host_id} matches {self.trust_store_path}")
            return
        
        fingerprint = host_key_fingerprint(key)
        known = self.host_keys.lookup(host_id)
        if known is not None:
            raise TrustVerificationError(
                f"Host key for {host_id} does not match the record in "
                f"{self.trust_store_path} ({key.get_name()} {fingerprint})",
                kind="host-key-mismatch",
            )
        
        if not self.accept_new_hosts:
            raise TrustVerificationError(
                f"Host {host_id} is not present in {self.trust_store_path} "
                f"({key.get_name()} {fingerprint})",
                kind="unknown-host",
            )
        
        self._remember(host_id, key, fingerprint)
    
    def _remember(self, host_id: str, key: paramiko.PKey, fingerprint: str):
        """Append the key of a newly trusted host, leaving existing lines untouched."""
        entry_name = paramiko.HostKeys.hash_host(host_id) if self.hash_known_hosts else host_id
        self.host_keys.add(entry_name, key.get_name(), key)
        line = HostKeyEntry([entry_name], key).to_line()
        
        try:
            with open(self.trust_store_path, "r+") as f:
                existing = f.read()
                if existing and not existing.endswith("\n"):
                    line = "\n" + line
                f.write(line)
        except OSError as e:
            logger.warning(f"Could not update trust store {self.trust_store_path}: {e}")
            return
        
        log_host_key_added(logger, host_id, key.get_name(), fingerprint,
                           str(self.trust_store_path))


class HostTrustVerifier:
    """Resolves the host key verification policy before any network I/O."""
    
    def __init__(self, default_known_hosts: Optional[str] = None,
                 accept_new_hosts: Optional[bool] = None):
        """Initialize the verifier with trust store defaults."""
        self.default_known_hosts = default_known_hosts or Config.KNOWN_HOSTS_FILE
        self.accept_new_hosts = (
            Config.ACCEPT_NEW_HOSTS if accept_new_hosts is None else accept_new_hosts
        )
    
    def resolve(self, config: TunnelConfig) -> TrustDecision:
        """
        Decide how the SSH host's identity is checked.
        
        Args:
            config: Tunnel configuration
        
        Returns:
            TrustDisabled when strict checking is off, else TrustEnforced
        
        Raises:
            ConfigurationError: If the trust store is missing or unreadable
        """
        # If strict checking is disabled, nothing else is read.
        if not config.strict_host_key_checking:
            log_trust_disabled(logger, config.ssh_host)
            return TrustDisabled()
        
        trust_store = resolve_path(config.known_hosts_path or self.default_known_hosts)
        if not trust_store.is_file():
            raise ConfigurationError(
                f"Known hosts file '{trust_store}' not found", kind="trust-store-not-found"
            )
        
        host_keys = self.load_trust_store(trust_store)
        preferred = self.preferred_key_algorithm(
            host_keys, known_hosts_name(config.ssh_host, config.ssh_port)
        )
        
        log_trust_enforced(logger, config.ssh_host, str(trust_store), preferred)
        
        return TrustEnforced(
            trust_store_path=trust_store,
            host_keys=host_keys,
            preferred_key_algorithm=preferred,
            hash_known_hosts=True,
            accept_new_hosts=self.accept_new_hosts,
        )
    
    @staticmethod
    def load_trust_store(trust_store: Path) -> paramiko.HostKeys:
        """
        Load an OpenSSH known_hosts file.
        
        Lines paramiko would skip are rejected, except comments and OpenSSH
        key types that paramiko does not implement.
        """
        host_keys = paramiko.HostKeys()
        try:
            with open(trust_store, "r") as f:
                for lineno, line in enumerate(f, 1):
                    HostTrustVerifier._check_trust_store_line(trust_store, lineno, line)
            host_keys.load(str(trust_store))
        except (OSError, UnicodeDecodeError, InvalidHostKey, paramiko.SSHException) as e:
            raise ConfigurationError(
                f"Could not load known hosts file '{trust_store}': {e}",
                kind="trust-store-invalid",
                cause=e,
            ) from e
        return host_keys
    
    @staticmethod
    def _check_trust_store_line(trust_store: Path, lineno: int, line: str):
        line = line.strip()
        if not line or line.startswith("#"):
            return
        
        fields = line.split()
        if len(fields) < 3:
            raise ConfigurationError(
                f"Malformed entry at line {lineno} of known hosts file '{trust_store}'",
                kind="trust-store-invalid",
            )
        
        key_type = fields[1]
        if key_type in OPENSSH_ONLY_KEY_TYPES or key_type.endswith(CERT_KEY_TYPE_SUFFIX):
            return
        
        if HostKeyEntry.from_line(line, lineno) is None:
            raise ConfigurationError(
                f"Unsupported key type '{key_type}' at line {lineno} of "
                f"known hosts file '{trust_store}'",
                kind="trust-store-invalid",
            )
    
    @staticmethod
    def preferred_key_algorithm(host_keys: paramiko.HostKeys, host_id: str) -> Optional[str]:
        """
        Key type to prefer in server host key negotiation.
        
        Uses the type recorded for ``host_id`` if there is one, otherwise the
        type of the first record in the trust store.
        """
        recorded = host_keys.lookup(host_id)
        if recorded:
            return next(iter(recorded.keys()), None)
        
        for name in host_keys.keys():
            entry = host_keys.lookup(name)
            if entry:
                return next(iter(entry.keys()), None)
        
        return None
