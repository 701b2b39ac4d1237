"""Registry fetcher: bulk index and incremental API protocols.

One ``Fetcher`` is bound to one registry. The bulk protocol downloads the
registry's full specification list; the incremental protocol asks for the
specifications of explicit package names, in batches.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, List, Optional, Set

from depfetch.common.logging_utils import Timer, extra_context, is_debug_enabled, safe_url
from depfetch.common.memo import single_flight
from depfetch.constants import Constants
from depfetch.errors import RegistryUnavailable
from depfetch.models import Specification
from depfetch.remote import Remote

logger = logging.getLogger(__name__)


def batches(names: Iterable[str], size: int) -> List[List[str]]:
    ordered = sorted(set(names))
    return [ordered[i:i + size] for i in range(0, len(ordered), size)]


class Fetcher:
    """Fetches specification metadata and artifacts from one registry.

    Args:
        remote: The registry.
        transport: Object providing ``get_json(url, remote=, params=)`` and
            ``download(url, dest, remote=)`` (see ``HttpTransport``).
        incremental_enabled: Global switch; when False the incremental
            protocol is never used for this registry.
        request_size: Names per incremental request.
    """

    def __init__(
        self,
        remote: Remote,
        transport: Any,
        incremental_enabled: bool = True,
        request_size: int = Constants.REQUEST_SIZE,
    ):
        self.remote = remote
        self.transport = transport
        self.incremental_enabled = incremental_enabled
        self.request_size = max(1, int(request_size))
        self._queried: Set[str] = set()
        self.request_count = 0

    @property
    def uri(self) -> str:
        return self.remote.anonymized_uri

    @single_flight
    def use_api(self) -> bool:
        """Whether the registry supports the incremental protocol."""
        if not self.incremental_enabled:
            return False
        url = self.remote.join(Constants.DEPENDENCY_API_PATH)
        try:
            self.request_count += 1
            status, _ = self.transport.get_json(url, remote=self.remote)
        except RegistryUnavailable as exc:
            logger.debug("Incremental API probe failed for %s: %s", self.uri, exc)
            return False
        return status == 200

    def specs(self, names: Optional[Iterable[str]] = None, source: Any = None) -> List[Specification]:
        """Fetch specifications.

        Args:
            names: None for the bulk protocol, otherwise the package names to
                ask for through the incremental protocol. Names already asked
                for by this fetcher are not requested again.
            source: Back-reference stored on every returned specification.

        Raises:
            RegistryUnavailable: the registry could not be queried.
        """
        if names is None:
            return self._bulk(source)
        return self._incremental(names, source)

    def forget(self, names: Iterable[str]) -> None:
        """Allow ``names`` to be requested again."""
        self._queried.difference_update(names)

    def _bulk(self, source: Any) -> List[Specification]:
        url = self.remote.join(Constants.BULK_INDEX_PATH)
        with Timer() as t:
            self.request_count += 1
            status, data = self.transport.get_json(url, remote=self.remote)
        if status != 200 or not isinstance(data, list):
            raise RegistryUnavailable(self.remote, f"index request failed (HTTP {status})")
        specs = self._parse(data, source)
        logger.debug(
            "Fetched full index",
            extra=extra_context(
                event="fetch", component="fetcher", action="bulk", outcome="success",
                target=safe_url(self.remote.uri), count=len(specs), duration_ms=t.duration_ms(),
            ),
        )
        return specs

    def _incremental(self, names: Iterable[str], source: Any) -> List[Specification]:
        wanted = {n for n in names if n} - self._queried
        specs: List[Specification] = []
        url = self.remote.join(Constants.DEPENDENCY_API_PATH)
        for batch in batches(wanted, self.request_size):
            self.request_count += 1
            status, data = self.transport.get_json(
                url, remote=self.remote, params={"names": ",".join(batch)}
            )
            if status != 200 or not isinstance(data, list):
                raise RegistryUnavailable(self.remote, f"dependency API request failed (HTTP {status})")
            self._queried.update(batch)
            specs.extend(self._parse(data, source))
        if is_debug_enabled(logger):
            logger.debug(
                "Fetched incremental metadata",
                extra=extra_context(
                    event="fetch", component="fetcher", action="incremental",
                    target=safe_url(self.remote.uri), requested=len(wanted), count=len(specs),
                ),
            )
        return specs

    def _parse(self, records: List[Any], source: Any) -> List[Specification]:
        specs = []
        for record in records:
            try:
                specs.append(Specification.from_dict(record, remote=self.remote, source=source))
            except ValueError as exc:
                logger.warning("Skipping malformed record from %s: %s", self.uri, exc)
        return specs

    def download(self, spec: Specification, dest_dir: Path) -> Path:
        """Download ``spec``'s artifact into ``dest_dir``.

        Raises:
            RegistryUnavailable: the artifact could not be downloaded.
        """
        url = self.remote.join(Constants.DOWNLOAD_PATH + spec.file_name)
        self.request_count += 1
        return self.transport.download(url, Path(dest_dir) / spec.file_name, remote=self.remote)

    def __repr__(self) -> str:
        return f"Fetcher({self.uri!r})"
