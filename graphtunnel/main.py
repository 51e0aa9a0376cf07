"""Command line entry point for opening and checking SSH tunnels."""

import argparse
import signal
import sys
import threading

from .config import Config
from .exceptions import TunnelError
from .logging import setup_logging
from .models import TunnelConfig
from .paths import parse_endpoint, resolve_path
from .trust import HostTrustVerifier
from .tunnel import SshTunnel


class TunnelMain:
    """Main application class for the tunnel CLI."""
    
    def __init__(self):
        """Initialize the tunnel application."""
        self.logger = setup_logging()
        self.tunnel = None
        self.stop_event = threading.Event()
    
    def setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            self.logger.info(f"Received signal {signum}, shutting down...")
            self.stop_event.set()
        
        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)
    
    def open_tunnel(self, config: TunnelConfig, accept_new_hosts: bool = False) -> int:
        """Open a tunnel and keep it up until interrupted."""
        try:
            Config.validate()
            self.tunnel = SshTunnel(
                config, verifier=HostTrustVerifier(accept_new_hosts=accept_new_hosts)
            )
        except TunnelError as e:
            self.logger.error(f"Could not open tunnel: {e}")
            return 1
        
        try:
            self.setup_signal_handlers()
            print(f"{self.tunnel.tunnel_host()}:{self.tunnel.tunnel_port()}", flush=True)
            
            while not self.stop_event.is_set():
                self.stop_event.wait(1.0)
        finally:
            self.shutdown()
        
        return 0
    
    def shutdown(self):
        """Disconnect the tunnel."""
        if self.tunnel is not None:
            self.logger.info("Closing tunnel...")
            self.tunnel.disconnect()
    
    def check_config(self, config: TunnelConfig) -> int:
        """Validate configuration and the trust store without connecting."""
        try:
            Config.validate()
            self.logger.info("Configuration validation passed")
            
            private_key = resolve_path(config.private_key_path)
            if not private_key.is_file():
                self.logger.error(f"Private key file not found: {private_key}")
                return 1
            self.logger.info(f"Private key file exists: {private_key}")
            
            decision = HostTrustVerifier().resolve(config)
            if decision.enforced:
                self.logger.info(f"Trust store loaded: {decision.trust_store_path}")
            
            self.logger.info("Configuration check completed successfully")
            return 0
        
        except TunnelError as e:
            self.logger.error(f"Configuration check failed: {e}")
            return 1


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = argparse.ArgumentParser(description="SSH tunnel to a graph database endpoint")
    subparsers = parser.add_subparsers(dest='command', help='Available commands')
    
    open_parser = subparsers.add_parser('open', help='Open a tunnel and print its local endpoint')
    check_parser = subparsers.add_parser('check', help='Check configuration without connecting')
    
    for sub in (open_parser, check_parser):
        sub.add_argument('--ssh-host', required=True, help='SSH host as host[:port]')
        sub.add_argument('--ssh-user', required=True, help='SSH username')
        sub.add_argument('--private-key', required=True, help='SSH private key file')
        sub.add_argument('--passphrase', default=None, help='Private key passphrase')
        sub.add_argument('--known-hosts', default=None,
                         help=f'Known hosts file (default: {Config.KNOWN_HOSTS_FILE})')
        sub.add_argument('--no-strict-host-key-checking', action='store_true',
                         help='Do not verify the SSH host key')
        sub.add_argument('--target-host', required=True, help='Database host behind the SSH host')
        sub.add_argument('--target-port', type=int, required=True, help='Database port')
    
    open_parser.add_argument('--accept-new-hosts', action='store_true',
                             default=Config.ACCEPT_NEW_HOSTS,
                             help='Trust and record unknown SSH hosts (hashed)')
    
    return parser


def config_from_args(args: argparse.Namespace) -> TunnelConfig:
    """Build a tunnel configuration from parsed arguments."""
    ssh_host, ssh_port = parse_endpoint(args.ssh_host)
    return TunnelConfig(
        ssh_host=ssh_host,
        ssh_port=ssh_port,
        ssh_user=args.ssh_user,
        private_key_path=args.private_key,
        private_key_passphrase=args.passphrase,
        known_hosts_path=args.known_hosts or None,
        strict_host_key_checking=not args.no_strict_host_key_checking,
        target_host=args.target_host,
        target_port=args.target_port,
    )


def main(argv=None):
    """Main function with command line argument parsing."""
    parser = build_parser()
    args = parser.parse_args(argv)
    
    if args.command is None:
        parser.print_help()
        sys.exit(1)
    
    app = TunnelMain()
    
    try:
        config = config_from_args(args)
    except TunnelError as e:
        app.logger.error(f"Invalid arguments: {e}")
        sys.exit(2)
    
    if args.command == 'open':
        sys.exit(app.open_tunnel(config, accept_new_hosts=args.accept_new_hosts))
    
    sys.exit(app.check_config(config))


if __name__ == '__main__':
    main()
