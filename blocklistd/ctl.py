"""
blocklistctl

Sends a single command to a running blocklistd over its control socket.
The daemon does not reply; check its log for the outcome.
"""

import argparse
import logging
import socket
from typing import List, Optional

from .config import DaemonConfig
from .daemon import Command

logger = logging.getLogger(__name__)


def send_command(socket_path: str, command: Command, timeout: int = 5) -> None:
    """
    Deliver one command line to the daemon.

    The connect blocks while the daemon is busy with an earlier command;
    ``timeout`` only bounds the send.

    Raises:
        OSError: If the socket cannot be reached
    """
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
        client.connect(socket_path)
        client.settimeout(timeout)
        client.sendall(f"{command.value}\n".encode('utf-8'))


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='Send a control command to blocklistd',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  update          Fetch the feed if the rate limit allows, then rebuild the chain
  force-update    Fetch the feed now, then rebuild the chain
  reload-cache    Rebuild the chain from the cached entries
  status          Log and mail a status report
  stop            Remove the chain and stop the daemon
        """
    )
    parser.add_argument(
        'command',
        choices=[command.value for command in Command],
        help='Command to send'
    )
    parser.add_argument(
        '--socket', '-s',
        type=str,
        default=DaemonConfig.SOCKET,
        help=f'Path to the control socket (default: {DaemonConfig.SOCKET})'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose (debug) logging'
    )

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    command = Command(args.command)
    try:
        send_command(args.socket, command)
    except OSError as e:
        logger.error(f"Could not send {command.value} to {args.socket}: {e}")
        return 1

    logger.debug(f"Sent {command.value} to {args.socket}")
    return 0


if __name__ == "__main__":
    exit(main())
