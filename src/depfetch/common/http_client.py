"""Shared HTTP transport used by registry fetchers.

Encapsulates timeout, retry and error handling so fetchers only deal with
status codes and parsed payloads. Network failures are converted into
``RegistryUnavailable`` instead of exiting the process, leaving the
continue-or-abort decision to the caller.
"""
from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

import requests

from depfetch.constants import Constants
from depfetch.errors import RegistryUnavailable
from depfetch.common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer

if TYPE_CHECKING:
    from depfetch.remote import Remote

logger = logging.getLogger(__name__)


class HttpTransport:
    """Blocking HTTP transport built on ``requests``.

    Args:
        timeout: Per-request timeout in seconds.
        retries: Attempts made for timeouts, connection errors and 5xx answers.
        session: Optional pre-configured ``requests.Session``.
    """

    def __init__(
        self,
        timeout: float = Constants.REQUEST_TIMEOUT,
        retries: int = Constants.HTTP_RETRY_MAX,
        session: Optional[requests.Session] = None,
    ):
        self.timeout = timeout
        self.retries = max(1, int(retries))
        self._session = session or requests.Session()
        self._session.headers.setdefault("User-Agent", Constants.HTTP_USER_AGENT)

    def close(self) -> None:
        self._session.close()

    def _request(
        self,
        url: str,
        *,
        remote: Optional["Remote"] = None,
        params: Optional[Dict[str, str]] = None,
        stream: bool = False,
    ) -> requests.Response:
        """GET ``url`` with retries; raise RegistryUnavailable when every attempt fails."""
        safe_target = safe_url(url)
        last_error = "no attempt made"
        for attempt in range(self.retries):
            if attempt:
                time.sleep(Constants.HTTP_RETRY_BASE_DELAY_SEC * attempt)
            with Timer() as t:
                try:
                    if is_debug_enabled(logger):
                        logger.debug(
                            "HTTP request",
                            extra=extra_context(
                                event="http_request",
                                component="http_client",
                                action="GET",
                                target=safe_target,
                                attempt=attempt + 1,
                            ),
                        )
                    response = self._session.get(
                        url, params=params, timeout=self.timeout, stream=stream
                    )
                except requests.Timeout:
                    last_error = f"request timed out after {self.timeout} seconds"
                    continue
                except requests.RequestException as exc:  # includes ConnectionError
                    last_error = f"connection error: {exc}"
                    continue
            if response.status_code >= 500:
                last_error = f"server error (HTTP {response.status_code})"
                response.close()
                continue
            if is_debug_enabled(logger):
                logger.debug(
                    "HTTP response",
                    extra=extra_context(
                        event="http_response",
                        component="http_client",
                        action="GET",
                        status_code=response.status_code,
                        duration_ms=t.duration_ms(),
                        target=safe_target,
                    ),
                )
            return response
        logger.warning("GET %s failed after %d attempts: %s", safe_target, self.retries, last_error)
        raise RegistryUnavailable(remote, last_error)

    def get_json(
        self,
        url: str,
        *,
        remote: Optional["Remote"] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Tuple[int, Optional[Any]]:
        """Perform a GET request and parse a JSON body.

        Returns:
            Tuple of (status_code, parsed_json_or_none). The body is only
            parsed for 200 answers; undecodable bodies yield None.
        """
        response = self._request(url, remote=remote, params=params)
        if response.status_code != 200 or not response.text:
            return response.status_code, None
        try:
            return response.status_code, json.loads(response.text)
        except json.JSONDecodeError:
            logger.warning("Couldn't decode JSON from %s", safe_url(url))
            return response.status_code, None

    def download(self, url: str, dest: Path, *, remote: Optional["Remote"] = None) -> Path:
        """Stream ``url`` into ``dest``.

        The body is written to a temporary sibling first so a failed transfer
        never leaves a partial artifact behind.
        """
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(dest.name + ".part")
        response = self._request(url, remote=remote, stream=True)
        try:
            if response.status_code != 200:
                raise RegistryUnavailable(
                    remote, f"download of {dest.name} failed (HTTP {response.status_code})"
                )
            try:
                with open(tmp, "wb") as fh:
                    for chunk in response.iter_content(chunk_size=Constants.DOWNLOAD_CHUNK_SIZE):
                        if chunk:
                            fh.write(chunk)
            except requests.RequestException as exc:
                raise RegistryUnavailable(remote, f"download of {dest.name} interrupted: {exc}") from exc
            os.replace(tmp, dest)
        finally:
            response.close()
            if tmp.exists():
                tmp.unlink()
        return dest
