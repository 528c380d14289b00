"""Shared fixtures: an in-memory packet filter, fake HTTP session and notifier."""

from typing import Dict, List, Optional, Tuple

import pytest
import requests

from blocklistd.config import DaemonConfig
from blocklistd.daemon import BlocklistDaemon
from blocklistd.feed import FeedCache, FeedFetcher
from blocklistd.filter_chain import FilterBackend, FilterBackendError, RuleApplicator
from blocklistd.notifier import Notifier

NOW = 1_700_000_000.0
SAMPLE_FEED = b";comment\n1.2.3.0/24\n5.6.7.8\n"


class FakeBackend(FilterBackend):
    """Packet filter kept in dictionaries, recording every mutating call."""

    def __init__(self):
        self.chains: Dict[str, List[Tuple[str, str]]] = {'INPUT': []}
        self.hooks: Dict[str, List[str]] = {'INPUT': []}
        self.calls: List[tuple] = []
        self.fail_on: Optional[str] = None
        self.fail_after_rules: Optional[int] = None

    def _record(self, *call):
        self.calls.append(call)
        if self.fail_on == call[0]:
            raise FilterBackendError(f"{call[0]} failed")

    def chain_exists(self, chain):
        return chain in self.chains

    def create_chain(self, chain):
        self._record('create_chain', chain)
        self.chains[chain] = []

    def flush_chain(self, chain):
        self._record('flush_chain', chain)
        self.chains[chain] = []

    def delete_chain(self, chain):
        self._record('delete_chain', chain)
        if self.chains[chain]:
            raise FilterBackendError("chain not empty")
        if any(chain in targets for targets in self.hooks.values()):
            raise FilterBackendError("chain still referenced")
        del self.chains[chain]

    def hook_exists(self, parent, chain):
        return chain in self.hooks[parent]

    def insert_hook(self, parent, chain):
        self._record('insert_hook', parent, chain)
        if chain not in self.chains:
            raise FilterBackendError("no such chain")
        self.hooks[parent].insert(0, chain)

    def remove_hook(self, parent, chain):
        self._record('remove_hook', parent, chain)
        self.hooks[parent].remove(chain)

    def append_rule(self, chain, network, action):
        if self.fail_after_rules is not None and len(self.chains[chain]) >= self.fail_after_rules:
            raise FilterBackendError(f"bad address {network}")
        self.chains[chain].append((network, action))


class FakeResponse:
    def __init__(self, content: bytes, status_code: int = 200):
        self.content = content
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")


class FakeSession:
    """Stands in for requests.Session; returns queued responses or raises."""

    def __init__(self, content: bytes = SAMPLE_FEED):
        self.content = content
        self.status_code = 200
        self.error: Optional[Exception] = None
        self.requests: List[str] = []
        self.closed = False

    def get(self, url, timeout=None):
        self.requests.append(url)
        if self.error is not None:
            raise self.error
        return FakeResponse(self.content, self.status_code)

    def close(self):
        self.closed = True


class RecordingNotifier(Notifier):
    def __init__(self):
        super().__init__('/usr/sbin/sendmail', 'admin@example.com', 'blocklistd@example.com',
                         hostname='testhost')
        self.sent: List[Tuple[str, str]] = []

    def send(self, subject, body):
        self.sent.append((subject, body))
        return True

    @property
    def subjects(self):
        return [subject for subject, _ in self.sent]


class Clock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def cache(tmp_path):
    feed_cache = FeedCache(tmp_path / 'cache')
    feed_cache.ensure_dir()
    return feed_cache


@pytest.fixture
def config(tmp_path):
    return DaemonConfig(SOCKET=str(tmp_path / 'ctl.sock'), CACHE_DIR=str(tmp_path / 'cache'),
                        RATE_LIMIT=3600, READ_TIMEOUT=2)


@pytest.fixture
def daemon(config, cache, session, backend, notifier, clock):
    fetcher = FeedFetcher(config.FEED_URL, session=session)
    applicator = RuleApplicator(backend, chain=config.CHAIN, input_chain=config.INPUT_CHAIN,
                                action=config.ACTION)
    return BlocklistDaemon(config, cache, fetcher, applicator, notifier, clock=clock)
