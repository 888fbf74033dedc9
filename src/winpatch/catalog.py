"""
Offline scan catalog synchronization

Keeps a local copy of the Windows Update offline scan catalog
(wsusscn2.cab) in step with its published location, comparing the
local modification time against the remote Last-Modified header.
"""

import logging
import os
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from pathlib import Path

import requests

from winpatch.errors import NetworkError

logger = logging.getLogger(__name__)

CATALOG_NAME = "wsusscn2.cab"
CHUNK_SIZE = 1024 * 1024


def parse_http_date(value: str | None) -> datetime | None:
    """
    Parse an HTTP date header into an aware UTC datetime.

    :param value: Raw header value, eg "Tue, 08 Oct 2024 17:10:34 GMT"
    :return: The datetime, or None if absent or unparseable
    """
    if not value:
        return None

    try:
        stamp = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None

    if stamp is None:
        return None

    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)

    return stamp.astimezone(timezone.utc)


def needs_download(local: datetime | None, remote: datetime | None) -> bool:
    """
    Decide whether the local catalog should be replaced.

    The catalog is fetched unless both timestamps are known and the
    remote copy is not strictly newer than the local one.
    """
    if local is None or remote is None:
        return True

    return remote > local


class CatalogSync:
    """
    Synchronizer for a single offline scan catalog file.
    """

    def __init__(
        self,
        url: str,
        path: str | Path,
        session: requests.Session | None = None,
        timeout: float = 60,
        log: logging.Logger = logger,
    ) -> None:
        """
        :param url: Published location of the catalog
        :param path: Local destination of the catalog
        :param session: Optional requests session, for connection reuse
        :param timeout: Network timeout for each request, in seconds
        :param log: Logger receiving progress lines
        """
        self.url = url
        self.path = Path(path)
        self.session = session or requests.Session()
        self.timeout = timeout
        self.log = log

    @property
    def temp_path(self) -> Path:
        """
        Sibling path the catalog is downloaded to before replacement.
        """
        return self.path.with_name(self.path.name + ".tmp")

    def local_timestamp(self) -> datetime | None:
        """
        Last write time of the local catalog, None if missing or unreadable.
        """
        try:
            mtime = self.path.stat().st_mtime
        except OSError:
            return None

        return datetime.fromtimestamp(mtime, tz=timezone.utc)

    def remote_timestamp(self) -> datetime | None:
        """
        Last-Modified time of the remote catalog, via a HEAD request.

        Request failures and missing or malformed headers all
        yield None, which biases the sync toward downloading.
        """
        try:
            response = self.session.head(
                self.url, allow_redirects=True, timeout=self.timeout
            )
            response.raise_for_status()
        except requests.RequestException as e:
            self.log.warning("Unable to query %s: %s", self.url, e)
            return None

        header = response.headers.get("Last-Modified")
        stamp = parse_http_date(header)

        if stamp is None:
            self.log.warning("Unusable Last-Modified header: %r", header)

        return stamp

    def download(self, remote: datetime | None = None) -> Path:
        """
        Download the catalog, replacing the local copy atomically.

        The body is streamed to a temporary sibling file which is then
        moved over the destination, so an interrupted transfer never
        leaves a partial catalog behind.

        :param remote: Remote modification time, applied to the new file
        :return: Path to the downloaded catalog
        :raises NetworkError: If the transfer or the replacement fails
        """
        tmp = self.temp_path

        try:
            tmp.unlink(missing_ok=True)

            with self.session.get(
                self.url, stream=True, timeout=self.timeout
            ) as response:
                response.raise_for_status()
                with open(tmp, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        f.write(chunk)

            os.replace(tmp, self.path)
        except (requests.RequestException, OSError) as e:
            tmp.unlink(missing_ok=True)
            raise NetworkError(f"Failed to download {self.url}: {e}") from e

        if remote is not None:
            stamp = remote.timestamp()
            os.utime(self.path, (stamp, stamp))

        return self.path

    def sync(self) -> bool:
        """
        Bring the local catalog up to date if needed.

        :return: True if a new catalog was downloaded, False otherwise
        """
        local = self.local_timestamp()
        remote = self.remote_timestamp()

        self.log.info(
            "Catalog %s: local %s, remote %s",
            self.path.name,
            local.isoformat() if local else "unknown",
            remote.isoformat() if remote else "unknown",
        )

        if not needs_download(local, remote):
            self.log.info("Catalog is up to date, skipping download")
            return False

        self.log.info("Downloading catalog from %s", self.url)
        self.download(remote)
        self.log.info("Catalog saved to %s", self.path)

        return True
