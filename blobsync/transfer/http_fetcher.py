"""Blob fetcher streaming from the file server over HTTP."""

from collections.abc import AsyncIterator
from typing import Optional

import httpx

from blobsync.core.errors import NotFoundError, TransientNetworkError
from blobsync.core.logging import get_logger

logger = get_logger("blobsync.transfer.http")

DEFAULT_CHUNK_SIZE = 64 * 1024


class HttpBlobFetcher:
    """Streams ``GET {base_url}/files/{HASH}``.

    A 404 means the server does not have the blob; any other error status or
    transport failure is reported as transient so the orchestrator retries.
    """

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        headers: Optional[dict[str, str]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.chunk_size = chunk_size
        self._client = client
        self._owns_client = client is None
        self._headers = headers or {}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(headers=self._headers, timeout=httpx.Timeout(30.0))
        return self._client

    def url_for(self, content_hash: str) -> str:
        return f"{self.base_url}/files/{content_hash}"

    async def __call__(self, content_hash: str) -> AsyncIterator[bytes]:
        """Yield the blob in chunks.

        Raises:
            NotFoundError: If the server answers 404
            TransientNetworkError: On other error statuses and transport errors
        """
        url = self.url_for(content_hash)
        try:
            async with self._get_client().stream("GET", url) as response:
                if response.status_code == httpx.codes.NOT_FOUND:
                    raise NotFoundError(content_hash)
                if response.is_error:
                    raise TransientNetworkError(
                        f"File server returned {response.status_code} for {content_hash}",
                        status_code=response.status_code,
                    )
                async for chunk in response.aiter_bytes(self.chunk_size):
                    yield chunk
        except httpx.HTTPError as e:
            logger.debug("blob_download_error", hash=content_hash, error=str(e))
            raise TransientNetworkError(f"Download of {content_hash} failed: {e}") from e

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
