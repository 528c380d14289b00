"""
blocklistd daemon

Installs an iptables chain built from a threat intelligence drop list,
then waits on a unix socket for control commands. Commands run one at a
time; ``stop`` removes the chain and ends the process.
"""

import argparse
import logging
import os
import signal
import socket
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from .config import DaemonConfig
from .errors import BlocklistdError, CacheError, ChannelError, FetchError, RuleApplyError, TeardownError
from .feed import FeedCache, FeedFetcher, fetch_allowed
from .filter_chain import IptablesBackend, RuleApplicator
from .notifier import Notifier

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = '/etc/blocklistd.conf'


class Command(Enum):
    """Control verbs accepted on the control socket."""

    UPDATE = 'update'
    FORCE_UPDATE = 'force-update'
    RELOAD_CACHE = 'reload-cache'
    STATUS = 'status'
    STOP = 'stop'

    @classmethod
    def parse(cls, text: str) -> Optional['Command']:
        """Return the matching command, or None for unrecognized text."""
        try:
            return cls(text.strip().lower())
        except ValueError:
            return None


class DaemonState(Enum):
    RUNNING = 'running'
    STOPPING = 'stopping'


class BlocklistDaemon:
    """Control loop tying the feed cache, fetcher, chain and notifier together."""

    MAX_COMMAND_LENGTH = 256
    ACCEPT_RETRY_DELAY = 1

    def __init__(self, config: DaemonConfig, cache: FeedCache, fetcher: FeedFetcher,
                 applicator: RuleApplicator, notifier: Notifier,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.cache = cache
        self.fetcher = fetcher
        self.applicator = applicator
        self.notifier = notifier
        self.clock = clock
        self.server: Optional[socket.socket] = None

        self._handlers: Dict[Command, Callable[[], DaemonState]] = {
            Command.UPDATE: self._handle_update,
            Command.FORCE_UPDATE: self._handle_force_update,
            Command.RELOAD_CACHE: self._handle_reload_cache,
            Command.STATUS: self._handle_status,
            Command.STOP: self._handle_stop,
        }

    @classmethod
    def from_config(cls, config: DaemonConfig, dry_run: bool = False) -> 'BlocklistDaemon':
        """Build a daemon wired to iptables, requests and sendmail."""
        backend = IptablesBackend(config.IPTABLES, timeout=config.COMMAND_TIMEOUT, dry_run=dry_run)
        return cls(
            config=config,
            cache=FeedCache(config.CACHE_DIR),
            fetcher=FeedFetcher(config.FEED_URL, comment_char=config.COMMENT_CHAR,
                                timeout=config.FETCH_TIMEOUT),
            applicator=RuleApplicator(backend, chain=config.CHAIN,
                                      input_chain=config.INPUT_CHAIN, action=config.ACTION),
            notifier=Notifier(config.SENDMAIL, config.ADMIN_EMAIL, config.FROM_EMAIL,
                              timeout=config.COMMAND_TIMEOUT, dry_run=dry_run),
        )

    # Command handling

    def handle(self, command: Command) -> DaemonState:
        """
        Run one command to completion.

        Errors are logged here and never escape, so the loop always gets a
        state back.
        """
        logger.info(f"Processing command: {command.value}")
        try:
            return self._handlers[command]()
        except BlocklistdError as e:
            logger.error(f"Command {command.value} failed: {e}")
        except Exception:
            logger.exception(f"Unexpected error while processing {command.value}")
        return DaemonState.RUNNING

    def _handle_update(self) -> DaemonState:
        last_fetch = self.cache.last_fetch_time()
        now = self.clock()
        if not fetch_allowed(last_fetch, now, self.config.RATE_LIMIT):
            wait = int(last_fetch + self.config.RATE_LIMIT - now)
            logger.info(f"Rate limited: last fetch {int(now - last_fetch)}s ago, next fetch allowed in {wait}s")
            return DaemonState.RUNNING
        self._fetch_and_apply()
        return DaemonState.RUNNING

    def _handle_force_update(self) -> DaemonState:
        self._fetch_and_apply()
        return DaemonState.RUNNING

    def _handle_reload_cache(self) -> DaemonState:
        entries = self.cache.read_entries()
        if entries is None:
            logger.warning("No cached entries to reload, chain left unchanged")
            return DaemonState.RUNNING
        self._apply(entries)
        return DaemonState.RUNNING

    def _handle_status(self) -> DaemonState:
        report = self.status_report()
        for line in report.splitlines():
            logger.info(line)
        self.notifier.status(report)
        return DaemonState.RUNNING

    def _handle_stop(self) -> DaemonState:
        logger.info("Stop requested")
        return DaemonState.STOPPING

    def _fetch_and_apply(self) -> None:
        try:
            entries = self.fetcher.fetch(self.cache, now=self.clock())
        except FetchError as e:
            logger.error(f"{e}; skipping rule update")
            return
        self._apply(entries)

    def _apply(self, entries: List[str]) -> bool:
        try:
            self.applicator.apply(entries)
        except RuleApplyError as e:
            logger.error(str(e))
            self.notifier.update_failed(e)
            return False
        self.notifier.rules_updated(entries)
        return True

    def status_report(self) -> str:
        entries = self.cache.read_entries()
        last_fetch = self.cache.last_fetch_time()
        lines = [
            f"Feed: {self.config.FEED_URL}",
            f"Chain: {self.config.CHAIN} (hooked from {self.config.INPUT_CHAIN}, action {self.config.ACTION})",
            f"Cached entries: {len(entries) if entries is not None else 'none'}",
        ]
        if last_fetch is None:
            lines.append("Last fetch: never")
            lines.append("Next fetch allowed: now")
        else:
            lines.append(f"Last fetch: {_format_time(last_fetch)}")
            lines.append(f"Next fetch allowed: {_format_time(last_fetch + self.config.RATE_LIMIT)}")
        return '\n'.join(lines) + '\n'

    # Lifecycle

    def start(self) -> None:
        """Fetch if allowed, otherwise reuse the cache, then install the chain."""
        logger.info("=== Starting blocklistd ===")
        entries = None

        if fetch_allowed(self.cache.last_fetch_time(), self.clock(), self.config.RATE_LIMIT):
            try:
                entries = self.fetcher.fetch(self.cache, now=self.clock())
            except (FetchError, CacheError) as e:
                logger.error(f"{e}; falling back to cached entries")
        else:
            logger.info("Cache is fresh, skipping initial fetch")

        if entries is None:
            entries = self.cache.read_entries() or []
            logger.info(f"Using {len(entries)} cached entries")

        self._apply(entries)
        self.notifier.daemon_started(len(entries))

    def check_channel(self) -> None:
        """
        Make sure no other daemon owns the control socket.

        A socket file nobody listens on is removed.

        Raises:
            ChannelError: If another process accepts connections on the path
        """
        path = self.config.SOCKET
        if not os.path.lexists(path):
            return

        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
                client.settimeout(self.config.READ_TIMEOUT or None)
                client.connect(path)
        except ConnectionRefusedError:
            logger.info(f"Removing stale control socket {path}")
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                raise ChannelError(f"Could not remove stale control socket {path}: {e}") from e
            return
        except OSError as e:
            raise ChannelError(f"Control socket {path} is unusable: {e}") from e

        raise ChannelError(f"Another blocklistd is already listening on {path}")

    def open_channel(self) -> None:
        """
        Bind the control socket.

        Raises:
            ChannelError: If the socket is in use or cannot be bound
        """
        self.check_channel()
        path = self.config.SOCKET
        try:
            server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                server.bind(path)
                os.chmod(path, 0o600)
                server.listen(socket.SOMAXCONN)
            except OSError:
                server.close()
                raise
        except OSError as e:
            raise ChannelError(f"Could not bind control socket {path}: {e}") from e

        self.server = server
        logger.info(f"Listening for commands on {path}")

    def receive(self) -> Optional[Command]:
        """Accept one connection and read its command line."""
        try:
            conn, _ = self.server.accept()
        except OSError as e:
            logger.warning(f"Accept failed on control socket: {e}")
            time.sleep(self.ACCEPT_RETRY_DELAY)
            return None

        with conn:
            conn.settimeout(self.config.READ_TIMEOUT or None)
            try:
                with conn.makefile('rb') as stream:
                    line = stream.readline(self.MAX_COMMAND_LENGTH)
            except (socket.timeout, OSError) as e:
                logger.warning(f"Could not read command: {e}")
                return None

        text = line.decode('utf-8', 'replace').strip()
        if not text:
            logger.debug("Control connection closed without a command")
            return None
        command = Command.parse(text)
        if command is None:
            logger.warning(f"Ignoring unrecognized command: {text!r}")
        return command

    def serve(self) -> None:
        """Process commands until one of them stops the daemon."""
        state = DaemonState.RUNNING
        while state is DaemonState.RUNNING:
            command = self.receive()
            if command is not None:
                state = self.handle(command)

    def close_channel(self) -> None:
        if self.server is None:
            return
        self.server.close()
        self.server = None
        try:
            os.unlink(self.config.SOCKET)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove control socket {self.config.SOCKET}: {e}")

    def shutdown(self) -> None:
        """Remove the chain and release resources. Failures are reported, not raised."""
        logger.info("Shutting down")
        self.close_channel()

        try:
            self.applicator.teardown()
        except TeardownError as e:
            logger.error(str(e))
            self.notifier.teardown_failed(e)
        else:
            self.notifier.daemon_stopped()

        self.fetcher.close()
        logger.info("=== blocklistd stopped ===")

    def run(self) -> int:
        """
        Run the daemon until stopped.

        Returns:
            Process exit code
        """
        try:
            self.cache.ensure_dir()
            self.check_channel()
        except (CacheError, ChannelError) as e:
            logger.error(f"Fatal error: {e}")
            return 1

        try:
            self.start()
            self.open_channel()
            self.serve()
        except ChannelError as e:
            logger.error(f"Fatal error: {e}")
            return 1
        finally:
            self.shutdown()
        return 0


def _format_time(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')


def handle_sigterm(signum, frame) -> None:
    """Turn SIGTERM into a normal exit so teardown runs; later signals are ignored."""
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    logger.info("Received SIGTERM, stopping")
    raise SystemExit(0)


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Configure logging with appropriate level and handlers."""
    level = logging.DEBUG if verbose else logging.INFO

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='Maintain an iptables drop chain from a threat intelligence feed',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                              # Run with /etc/blocklistd.conf if present
  %(prog)s --config /path/to/conf       # Use a specific config file
  %(prog)s --dry-run --verbose          # Log iptables and mail actions only
        """
    )
    parser.add_argument(
        '--config', '-c',
        type=str,
        help=f'Path to config file (default: {DEFAULT_CONFIG_PATH})'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Log iptables and mail actions instead of running them'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose (debug) logging'
    )
    parser.add_argument(
        '--log-file',
        type=str,
        help='Also log to this file (overrides LOG_FILE)'
    )

    args = parser.parse_args(argv)

    try:
        if args.config:
            config = DaemonConfig.from_file(args.config)
        else:
            config = DaemonConfig.from_file(DEFAULT_CONFIG_PATH, required=False)
    except BlocklistdError as e:
        setup_logging(args.verbose, args.log_file)
        logger.error(f"Fatal error: {e}")
        return 1

    setup_logging(args.verbose, args.log_file or config.get_log_file())
    if args.dry_run:
        logger.info("=== DRY RUN MODE - No changes will be made ===")

    daemon = BlocklistDaemon.from_config(config, dry_run=args.dry_run)
    signal.signal(signal.SIGTERM, handle_sigterm)
    try:
        return daemon.run()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130


if __name__ == "__main__":
    exit(main())
