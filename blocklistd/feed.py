"""
Feed cache, rate limiting and fetching.

The cache directory holds three files:

    feed.raw    last downloaded feed, as received
    feed.lst    processed entries, one network per line
    last_fetch  unix timestamp of the last successful fetch

The raw file is replaced first. The processed list and the timestamp are
replaced together afterwards, so an interrupted fetch leaves the previous
processed list and timestamp in place.
"""

import logging
import os
import tempfile
import time
from pathlib import Path
from typing import List, Optional, Union

import requests

from .errors import CacheError, FetchError, ParseError

logger = logging.getLogger(__name__)

RAW_FILE = 'feed.raw'
PROCESSED_FILE = 'feed.lst'
TIMESTAMP_FILE = 'last_fetch'


def fetch_allowed(last_fetch_time: Optional[float], now: float, interval: int) -> bool:
    """Return True if a fetch may run at ``now`` given the last fetch time."""
    if last_fetch_time is None:
        return True
    return now - last_fetch_time >= interval


def parse_feed(raw: bytes, comment_char: str = ';') -> List[str]:
    """
    Extract network tokens from raw feed content.

    Lines starting with ``comment_char`` and blank lines are skipped; the
    first whitespace-delimited field of every other line is kept, in order.

    Raises:
        ParseError: If the content is not valid text
    """
    try:
        text = raw.decode('utf-8')
    except UnicodeDecodeError as e:
        raise ParseError(f"Feed content is not valid UTF-8: {e}") from e

    entries = []
    for line in text.splitlines():
        if line.startswith(comment_char):
            continue
        fields = line.split()
        if fields:
            entries.append(fields[0])
    return entries


class FeedCache:
    """On-disk cache of the raw feed, its processed entries and fetch time."""

    def __init__(self, cache_dir: Union[str, Path]):
        self.cache_dir = Path(cache_dir)
        self.raw_path = self.cache_dir / RAW_FILE
        self.processed_path = self.cache_dir / PROCESSED_FILE
        self.timestamp_path = self.cache_dir / TIMESTAMP_FILE

    def ensure_dir(self) -> None:
        """Create the cache directory if needed."""
        try:
            self.cache_dir.mkdir(mode=0o750, parents=True, exist_ok=True)
        except OSError as e:
            raise CacheError(f"Could not create cache directory {self.cache_dir}: {e}") from e

    def _replace(self, path: Path, data: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=self.cache_dir, prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, 'wb') as tmp_file:
                tmp_file.write(data)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise CacheError(f"Could not write {path}: {e}") from e

    def read_raw(self) -> Optional[bytes]:
        try:
            return self.raw_path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheError(f"Could not read {self.raw_path}: {e}") from e

    def write_raw(self, content: bytes) -> None:
        self._replace(self.raw_path, content)
        logger.debug(f"Wrote {len(content)} bytes to {self.raw_path}")

    def read_entries(self) -> Optional[List[str]]:
        """Return the processed entries, or None if the list is missing or unreadable."""
        try:
            content = self.processed_path.read_text(encoding='utf-8')
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read processed list {self.processed_path}: {e}")
            return None
        return [line for line in content.splitlines() if line]

    def last_fetch_time(self) -> Optional[float]:
        """
        Return the last successful fetch time.

        None means no usable data is cached: the timestamp is missing or
        corrupt, or the processed list it belongs to is gone.
        """
        try:
            stamp = self.timestamp_path.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Could not read timestamp {self.timestamp_path}: {e}")
            return None

        try:
            value = float(stamp)
        except ValueError:
            logger.warning(f"Ignoring corrupt timestamp in {self.timestamp_path}: {stamp!r}")
            return None

        if self.read_entries() is None:
            logger.info("Timestamp present but processed list unavailable, treating cache as empty")
            return None
        return value

    def commit(self, entries: List[str], fetch_time: float) -> None:
        """Replace the processed list, then the timestamp."""
        listing = ''.join(f"{entry}\n" for entry in entries)
        self._replace(self.processed_path, listing.encode('utf-8'))
        self._replace(self.timestamp_path, f"{int(fetch_time)}\n".encode('ascii'))
        logger.info(f"Cached {len(entries)} processed entries")


class FeedFetcher:
    """Downloads the feed into a FeedCache."""

    USER_AGENT = 'blocklistd/1.0'

    def __init__(self, url: str, comment_char: str = ';', timeout: Optional[int] = 30,
                 session: Optional[requests.Session] = None):
        self.url = url
        self.comment_char = comment_char
        self.timeout = timeout or None
        self.session = session or self._create_session()

    def _create_session(self) -> requests.Session:
        """Create a configured requests session."""
        session = requests.Session()
        session.headers.update({'User-Agent': self.USER_AGENT})
        return session

    def download(self) -> bytes:
        """
        Fetch the feed.

        Raises:
            FetchError: If the request fails or returns an error status
        """
        try:
            logger.info(f"Fetching feed: {self.url}")
            start_time = time.time()

            response = self.session.get(self.url, timeout=self.timeout)
            response.raise_for_status()

            elapsed = time.time() - start_time
            logger.info(
                f"Successfully fetched {self.url}, "
                f"response size: {len(response.content)} bytes, "
                f"elapsed: {elapsed:.2f}s"
            )
            return response.content

        except requests.RequestException as e:
            raise FetchError(f"Error fetching {self.url}: {e}") from e

    def fetch(self, cache: FeedCache, now: Optional[float] = None) -> List[str]:
        """
        Download the feed and update the cache.

        Returns:
            The processed entries that were committed

        Raises:
            FetchError: On transport failure; the cache is left untouched
            CacheError: If the cache could not be written
        """
        content = self.download()
        fetch_time = time.time() if now is None else now

        cache.write_raw(content)
        try:
            entries = parse_feed(content, self.comment_char)
        except ParseError as e:
            logger.error(f"{e}; treating feed as empty")
            entries = []

        cache.commit(entries, fetch_time)
        logger.info(f"Feed yielded {len(entries)} entries")
        return entries

    def close(self) -> None:
        self.session.close()
