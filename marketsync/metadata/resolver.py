"""
Metadata Resolver
=================

Resolves content-addressed metadata URIs to Metadata documents.

Content URIs (``ipfs://<cid>``, ``ar://<id>``, ...) are rewritten to the
configured HTTP gateway before fetching. Batches are fetched with a fixed
number of workers, and every position of a batch resolves independently to
either Metadata or the MetadataError that prevented it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any
from urllib.parse import urlsplit

import httpx
import structlog

from marketsync.config import MarketSyncConfig, get_config
from marketsync.errors import MetadataError, MetadataMalformed, MetadataUnreachable
from marketsync.models import Metadata

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

HTTP_SCHEMES = frozenset({"http", "https"})

# Keys used by earlier upload forms, mapped to their canonical field
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "name": ("name", "title", "username"),
    "description": ("description",),
    "image": ("image", "fileUrl", "image_url"),
}


def to_gateway_url(uri: str, gateway_host: str) -> str:
    """
    Map a content URI to a fetchable HTTP URL.

    ``scheme://<cid>`` becomes ``https://<gateway_host>/<scheme>/<cid>``.
    HTTP(S) URLs pass through and a bare identifier is treated as an IPFS CID.

    Raises:
        MetadataUnreachable: If the URI is empty or cannot be mapped
    """
    uri = uri.strip()
    if not uri:
        raise MetadataUnreachable("Listing has no metadata URI", uri=uri)

    try:
        scheme = urlsplit(uri).scheme.lower()
    except ValueError as e:
        raise MetadataUnreachable(f"Unparseable metadata URI: {e}", uri=uri) from e
    if scheme in HTTP_SCHEMES:
        return uri

    if "://" not in uri:
        if scheme:
            raise MetadataUnreachable(f"Unsupported metadata URI scheme: {scheme}", uri=uri)
        return f"https://{gateway_host}/ipfs/{uri.lstrip('/')}"

    path = uri.split("://", 1)[1].lstrip("/")
    # ipfs://ipfs/<cid> is a legacy spelling of ipfs://<cid>
    if path.lower().startswith(f"{scheme}/"):
        path = path[len(scheme) + 1:]
    if not path:
        raise MetadataUnreachable("Metadata URI has no content identifier", uri=uri)
    return f"https://{gateway_host}/{scheme}/{path}"


class MetadataResolver:
    """
    Fetches and parses listing metadata.

    The resolver keeps no per-listing state. It owns its httpx client only
    when one is not injected.
    """

    def __init__(
        self,
        config: MarketSyncConfig | None = None,
        client: httpx.AsyncClient | None = None,
        *,
        gateway_host: str | None = None,
        concurrency: int | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._config = config or get_config()
        self.gateway_host = gateway_host or self._config.gateway_host
        self.concurrency = concurrency or self._config.metadata_concurrency
        timeout = timeout_seconds or self._config.metadata_timeout_seconds

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._logger = logger.bind(service="metadata_resolver", gateway=self.gateway_host)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> MetadataResolver:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    async def resolve(self, uri: str) -> Metadata:
        """
        Fetch and parse the metadata document behind ``uri``.

        Raises:
            MetadataUnreachable: On network errors, timeouts or non-2xx responses
            MetadataMalformed: If the body is not a JSON object
        """
        url = to_gateway_url(uri, self.gateway_host)

        try:
            response = await self._client.get(url)
        except httpx.TimeoutException as e:
            raise MetadataUnreachable(f"Timed out fetching {url}", uri=uri) from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise MetadataUnreachable(f"Failed to fetch {url}: {e}", uri=uri) from e

        if not response.is_success:
            raise MetadataUnreachable(
                f"Gateway returned HTTP {response.status_code} for {url}", uri=uri
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise MetadataMalformed(f"Metadata at {url} is not valid JSON", uri=uri) from e

        return self._parse(payload, uri)

    def _parse(self, payload: Any, uri: str) -> Metadata:
        if not isinstance(payload, dict):
            raise MetadataMalformed(
                f"Metadata must be a JSON object, got {type(payload).__name__}", uri=uri
            )

        document = payload
        envelope = payload.get("data")
        if isinstance(envelope, dict) and not any(
            key in payload for aliases in FIELD_ALIASES.values() for key in aliases
        ):
            document = envelope

        fields: dict[str, Any] = {}
        for field_name, aliases in FIELD_ALIASES.items():
            for alias in aliases:
                if document.get(alias) is not None:
                    fields[field_name] = document[alias]
                    break

        metadata = Metadata.model_validate(fields)
        if "://" in metadata.image:
            try:
                metadata = metadata.model_copy(
                    update={"image": to_gateway_url(metadata.image, self.gateway_host)}
                )
            except (MetadataUnreachable, ValueError):
                pass  # keep the image value as published
        return metadata

    async def _resolve_bounded(self, uri: str) -> Metadata | MetadataError:
        async with self._semaphore:
            try:
                return await self.resolve(uri)
            except MetadataError as e:
                self._logger.warning(
                    "metadata_unresolved",
                    uri=uri,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                return e

    async def resolve_batch(self, uris: Sequence[str]) -> list[Metadata | MetadataError]:
        """
        Resolve many URIs with bounded concurrency.

        The result has the same length and order as ``uris``. Each position
        holds Metadata or the MetadataError for that item; one failure never
        fails the batch. Identical URIs are fetched once.
        """
        unique = list(dict.fromkeys(uris))
        results = await asyncio.gather(*(self._resolve_bounded(uri) for uri in unique))
        by_uri = dict(zip(unique, results))

        failed = sum(1 for result in results if isinstance(result, MetadataError))
        self._logger.debug(
            "metadata_batch_resolved",
            requested=len(uris),
            fetched=len(unique),
            failed=failed,
        )
        return [by_uri[uri] for uri in uris]
