"""HTTP readiness probe: GET the revision's health URL."""

from collections.abc import Mapping
import logging

import httpx

logger = logging.getLogger(__name__)


class HttpReadiness:
    """A 2xx response within ``timeout`` is ready; anything else, including a transport error, is not."""

    def __init__(
        self,
        urls: Mapping[str, str],
        timeout: float = 5.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.urls = dict(urls)
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=False)

    def probe(self, revision_id: str) -> bool:
        url = self.urls[revision_id]
        try:
            resp = self._client.get(url)
        except httpx.HTTPError as e:
            logger.debug("probe %s (%s) failed: %s", revision_id, url, e)
            return False
        if not resp.is_success:
            logger.debug("probe %s (%s) returned %d", revision_id, url, resp.status_code)
        return resp.is_success

    def close(self) -> None:
        self._client.close()
