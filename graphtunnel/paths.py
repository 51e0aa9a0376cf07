"""Filesystem path and ``host[:port]`` helpers used to build SSH session parameters."""

import os
import re
from pathlib import Path
from typing import Optional, Tuple

from .config import Config
from .exceptions import ConfigurationError

HOME_PATH_PREFIX = re.compile(r"^~[/\\]")
PORT_PATTERN = re.compile(r"[0-9]+")


def resolve_path(file_path: str, home: Optional[str] = None) -> Path:
    """
    Get an absolute path for a user-supplied file path.
    
    A leading ``~/`` (or ``~\\``) is replaced by the user's home directory.
    The file is not required to exist.
    
    Args:
        file_path: The path to resolve
        home: Home directory override, defaults to the current user's
    
    Returns:
        Absolute, normalised path
    """
    if HOME_PATH_PREFIX.match(file_path):
        home_dir = home if home is not None else str(Path.home())
        file_path = os.path.join(home_dir, file_path[2:])
    return Path(os.path.abspath(file_path))


def parse_endpoint(value: str, default_port: int = Config.DEFAULT_SSH_PORT) -> Tuple[str, int]:
    """
    Split a ``host[:port]`` string into host and port.
    
    Raises:
        ConfigurationError: If the host is empty or the port is not a valid
            unsigned integer in range
    """
    host, separator, port_text = value.strip().partition(":")
    if not host:
        raise ConfigurationError(f"Missing host in endpoint '{value}'", kind="invalid-endpoint")
    
    if not separator:
        return host, default_port
    
    if not PORT_PATTERN.fullmatch(port_text):
        raise ConfigurationError(
            f"Invalid port '{port_text}' in endpoint '{value}'", kind="invalid-endpoint"
        )
    
    port = int(port_text)
    if port < 1 or port > 65535:
        raise ConfigurationError(
            f"Port {port} out of range in endpoint '{value}'", kind="invalid-endpoint"
        )
    
    return host, port
