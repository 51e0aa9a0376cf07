"""Logging configuration for the SSH tunnel subsystem."""

import logging
import logging.handlers
import sys
from typing import Optional

from .config import Config


class TunnelLogger:
    """Custom logger for the SSH tunnel subsystem."""
    
    def __init__(self, name: str = "graphtunnel", log_file: Optional[str] = None):
        """Initialize the tunnel logger."""
        self.logger = logging.getLogger(name)
        self.log_file = log_file or Config.LOG_FILE
        self.log_level = getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO)
        
        self._setup_logger()
    
    def _setup_logger(self):
        """Setup logger with console and optional file handlers."""
        # Clear existing handlers
        self.logger.handlers.clear()
        
        self.logger.setLevel(self.log_level)
        
        formatter = logging.Formatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        
        # stderr keeps stdout free for the endpoint printed by the CLI
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(self.log_level)
        console_handler.setFormatter(formatter)
        self.logger.addHandler(console_handler)
        
        if not self.log_file:
            return
        
        # File handler with rotation
        try:
            file_handler = logging.handlers.RotatingFileHandler(
                self.log_file,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5
            )
            file_handler.setLevel(self.log_level)
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)
        except OSError as e:
            self.logger.warning(f"Could not setup file logging: {e}")
    
    def get_logger(self) -> logging.Logger:
        """Get the configured logger."""
        return self.logger


def setup_logging(log_file: Optional[str] = None) -> logging.Logger:
    """Setup logging for the graphtunnel package."""
    tunnel_logger = TunnelLogger(log_file=log_file)
    return tunnel_logger.get_logger()


def log_tunnel_opening(logger: logging.Logger, ssh_user: str, ssh_host: str,
                       ssh_port: int, target: str):
    """Log a tunnel connection attempt."""
    logger.info(
        f"Tunnel OPENING - SSH: {ssh_user}@{ssh_host}:{ssh_port}, "
        f"Target: {target}"
    )


def log_tunnel_established(logger: logging.Logger, ssh_host: str,
                           local_host: str, local_port: int, target: str):
    """Log a successfully established tunnel."""
    logger.info(
        f"Tunnel ESTABLISHED - {local_host}:{local_port} -> "
        f"{ssh_host} -> {target}"
    )


def log_tunnel_failed(logger: logging.Logger, ssh_host: str, target: str,
                      kind: str, error: str):
    """Log a tunnel that could not be established."""
    logger.error(
        f"Tunnel FAILED - SSH: {ssh_host}, Target: {target}, "
        f"Kind: {kind}, Error: {error}"
    )


def log_tunnel_closed(logger: logging.Logger, ssh_host: str, local_port: int):
    """Log a tunnel teardown."""
    logger.info(f"Tunnel CLOSED - SSH: {ssh_host}, Local port: {local_port}")


def log_trust_disabled(logger: logging.Logger, ssh_host: str):
    """Log an explicit, caller-requested host key verification downgrade."""
    logger.warning(
        f"Host key verification DISABLED - SSH: {ssh_host}, "
        f"the server identity will not be checked"
    )


def log_trust_enforced(logger: logging.Logger, ssh_host: str,
                       trust_store: str, algorithm: Optional[str]):
    """Log the enforced host key verification policy."""
    logger.info(
        f"Host key verification ENFORCED - SSH: {ssh_host}, "
        f"Trust store: {trust_store}, Preferred key type: {algorithm or 'any'}"
    )


def log_host_key_added(logger: logging.Logger, host_id: str, key_type: str,
                       fingerprint: str, trust_store: str):
    """Log a host key persisted for a newly trusted host."""
    logger.warning(
        f"Host key ADDED - Host: {host_id}, Type: {key_type}, "
        f"Fingerprint: {fingerprint[:23]}..., Trust store: {trust_store}"
    )
