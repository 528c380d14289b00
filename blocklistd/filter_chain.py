"""
Packet filter chain management.

RuleApplicator owns one chain and the single hook rule in the main input
chain that jumps to it. The packet filter itself is reached through a
FilterBackend so that the iptables implementation can be swapped out.
"""

import logging
import subprocess  # nosec B404 - subprocess usage is intentional and controlled
from abc import ABC, abstractmethod
from typing import List, Sequence

from .errors import RuleApplyError, TeardownError

logger = logging.getLogger(__name__)


class FilterBackendError(Exception):
    """Raised by a FilterBackend when a packet filter operation fails."""
    pass


class FilterBackend(ABC):
    """Narrow interface to the packet filter."""

    @abstractmethod
    def chain_exists(self, chain: str) -> bool:
        ...

    @abstractmethod
    def create_chain(self, chain: str) -> None:
        ...

    @abstractmethod
    def flush_chain(self, chain: str) -> None:
        ...

    @abstractmethod
    def delete_chain(self, chain: str) -> None:
        ...

    @abstractmethod
    def hook_exists(self, parent: str, chain: str) -> bool:
        ...

    @abstractmethod
    def insert_hook(self, parent: str, chain: str) -> None:
        """Insert a jump to ``chain`` at the top of ``parent``."""

    @abstractmethod
    def remove_hook(self, parent: str, chain: str) -> None:
        ...

    @abstractmethod
    def append_rule(self, chain: str, network: str, action: str) -> None:
        ...


class IptablesBackend(FilterBackend):
    """FilterBackend driving the iptables executable."""

    def __init__(self, iptables: str = '/usr/sbin/iptables', timeout: int = 30,
                 dry_run: bool = False):
        self.iptables = iptables
        self.timeout = timeout or None
        self.dry_run = dry_run

    def _run(self, args: Sequence[str]) -> None:
        command = [self.iptables, '-w', *args]
        if self.dry_run:
            logger.info(f"DRY RUN: Would run: {' '.join(command)}")
            return

        logger.debug(f"Running: {' '.join(command)}")
        try:
            subprocess.run(  # nosec B603 - controlled input, no shell
                command,
                check=True,
                timeout=self.timeout,
                capture_output=True,
                text=True
            )
        except subprocess.CalledProcessError as e:
            raise FilterBackendError(f"{' '.join(command)} failed: {e.stderr.strip()}") from e
        except subprocess.TimeoutExpired as e:
            raise FilterBackendError(f"Timeout while running {' '.join(command)}") from e
        except OSError as e:
            raise FilterBackendError(f"Could not execute {self.iptables}: {e}") from e

    def _check(self, args: Sequence[str]) -> bool:
        command = [self.iptables, '-w', *args]
        if self.dry_run:
            return False

        try:
            result = subprocess.run(  # nosec B603 - controlled input, no shell
                command,
                check=False,
                timeout=self.timeout,
                capture_output=True,
                text=True
            )
        except subprocess.TimeoutExpired as e:
            raise FilterBackendError(f"Timeout while running {' '.join(command)}") from e
        except OSError as e:
            raise FilterBackendError(f"Could not execute {self.iptables}: {e}") from e
        return result.returncode == 0

    def chain_exists(self, chain: str) -> bool:
        return self._check(['-n', '-L', chain])

    def create_chain(self, chain: str) -> None:
        self._run(['-N', chain])

    def flush_chain(self, chain: str) -> None:
        self._run(['-F', chain])

    def delete_chain(self, chain: str) -> None:
        self._run(['-X', chain])

    def hook_exists(self, parent: str, chain: str) -> bool:
        return self._check(['-C', parent, '-j', chain])

    def insert_hook(self, parent: str, chain: str) -> None:
        self._run(['-I', parent, '1', '-j', chain])

    def remove_hook(self, parent: str, chain: str) -> None:
        self._run(['-D', parent, '-j', chain])

    def append_rule(self, chain: str, network: str, action: str) -> None:
        self._run(['-A', chain, '-s', network, '-j', action])


class RuleApplicator:
    """Rebuilds the daemon's chain from a list of networks."""

    def __init__(self, backend: FilterBackend, chain: str = 'BLOCKLISTD',
                 input_chain: str = 'INPUT', action: str = 'DROP'):
        self.backend = backend
        self.chain = chain
        self.input_chain = input_chain
        self.action = action

    def _prepare_chain(self) -> None:
        if self.backend.chain_exists(self.chain):
            logger.info(f"Flushing existing chain {self.chain}")
            self.backend.flush_chain(self.chain)
            if not self.backend.hook_exists(self.input_chain, self.chain):
                logger.warning(f"Hook from {self.input_chain} to {self.chain} missing, reinserting")
                self.backend.insert_hook(self.input_chain, self.chain)
            return

        logger.info(f"Creating chain {self.chain} and hooking it into {self.input_chain}")
        self.backend.create_chain(self.chain)
        self.backend.insert_hook(self.input_chain, self.chain)

    def apply(self, entries: List[str]) -> int:
        """
        Make the chain contain exactly one rule per entry, in order.

        A failure part way through leaves the chain partially filled.

        Returns:
            The number of rules applied

        Raises:
            RuleApplyError: If any packet filter operation fails
        """
        logger.info(f"Applying {len(entries)} rules to chain {self.chain}")
        try:
            self._prepare_chain()
            for count, network in enumerate(entries, 1):
                self.backend.append_rule(self.chain, network, self.action)
                if count % 1000 == 0:
                    logger.debug(f"Appended {count}/{len(entries)} rules")
        except FilterBackendError as e:
            raise RuleApplyError(f"Could not update chain {self.chain}: {e}") from e

        logger.info(f"Chain {self.chain} now holds {len(entries)} rules")
        return len(entries)

    def teardown(self) -> None:
        """
        Remove the hook, then flush and delete the chain.

        Raises:
            TeardownError: If any removal step fails
        """
        logger.info(f"Removing chain {self.chain}")
        try:
            if self.backend.hook_exists(self.input_chain, self.chain):
                self.backend.remove_hook(self.input_chain, self.chain)
            if self.backend.chain_exists(self.chain):
                self.backend.flush_chain(self.chain)
                self.backend.delete_chain(self.chain)
        except FilterBackendError as e:
            raise TeardownError(f"Could not remove chain {self.chain}: {e}") from e
        logger.info(f"Chain {self.chain} removed")
