"""Configuration module for the SSH tunnel subsystem."""

import os
from dotenv import load_dotenv

from .exceptions import ConfigurationError

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Configuration class for the SSH tunnel subsystem."""
    
    # Tunnel configuration
    CONNECT_TIMEOUT_MS = int(os.getenv("GRAPHTUNNEL_CONNECT_TIMEOUT_MS", "3000"))
    LOCAL_HOST = os.getenv("GRAPHTUNNEL_LOCAL_HOST", "localhost")
    LOCAL_BIND_PORT = int(os.getenv("GRAPHTUNNEL_LOCAL_BIND_PORT", "0"))
    
    # SSH configuration
    DEFAULT_SSH_PORT = 22
    KNOWN_HOSTS_FILE = os.getenv("GRAPHTUNNEL_KNOWN_HOSTS_FILE", "~/.ssh/known_hosts")
    ACCEPT_NEW_HOSTS = _env_bool("GRAPHTUNNEL_ACCEPT_NEW_HOSTS", "false")
    
    # Logging configuration
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE = os.getenv("LOG_FILE", "")
    
    @classmethod
    def connect_timeout_seconds(cls) -> float:
        """Connect timeout converted for socket and paramiko APIs."""
        return cls.CONNECT_TIMEOUT_MS / 1000.0
    
    @classmethod
    def validate(cls):
        """Validate the configuration."""
        if cls.CONNECT_TIMEOUT_MS < 1:
            raise ConfigurationError("Invalid connect timeout", kind="invalid-property")
        
        if cls.LOCAL_BIND_PORT < 0 or cls.LOCAL_BIND_PORT > 65535:
            raise ConfigurationError("Invalid local bind port", kind="invalid-property")
        
        if not cls.LOCAL_HOST:
            raise ConfigurationError("Local host is required", kind="invalid-property")
