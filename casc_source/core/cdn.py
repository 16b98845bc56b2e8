"""Remote CDN resolver: patch server queries, host selection and data fetches."""

from __future__ import annotations

import asyncio
import time

import httpx
import structlog

from casc_source.core.config import CDNSettings
from casc_source.core.errors import ConfigFetchError, HostResolutionError
from casc_source.core.types import BuildInfo
from casc_source.core.utils import format_cdn_key
from casc_source.formats.config import BPSVParser, parse_version_config

logger = structlog.get_logger()


class CDNResolver:
    """Talks to a region's patch server and its CDN hosts.

    Before `resolve_cdn_host()` succeeds, `host` is the region's patch
    server; afterwards it is `http://<fastest host>/<cdn path>/`.
    """

    def __init__(
        self,
        region: str = "us",
        settings: CDNSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize resolver.

        Args:
            region: Region code (us, eu, kr, tw, cn)
            settings: Optional CDN settings
            transport: Optional httpx transport, used by tests
        """
        self.region = region
        self.settings = settings or CDNSettings()
        self.patch_host = self.settings.get_patch_host(region)
        self.host = self.patch_host
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def timeout(self) -> float:
        """Timeout applied to every request, in seconds."""
        return self.settings.timeout

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.timeout,
                verify=self.settings.verify_ssl,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get(self, url: str, headers: dict[str, str] | None = None) -> httpx.Response:
        try:
            response = await self.client.get(url, headers=headers)
        except httpx.HTTPError as e:
            logger.debug("cdn_request_failed", url=url, error=str(e))
            raise ConfigFetchError(f"Request to {url} failed: {e}", url=url) from e

        if response.status_code not in (200, 206):
            raise ConfigFetchError(
                f"HTTP {response.status_code} from remote CASC endpoint: {url}",
                url=url,
                status_code=response.status_code,
            )
        return response

    async def get_config(self, product: str, file: str) -> list[dict[str, str]]:
        """Download and parse a patch server BPSV document.

        Args:
            product: Product code
            file: Document path, e.g. "/versions" or "/cdns"

        Returns:
            Parsed rows

        Raises:
            ConfigFetchError: On a non-success response
        """
        url = self.patch_host + product + file
        response = await self._get(url)
        return BPSVParser().parse(response.text)

    async def get_version_config(self, product: str) -> list[BuildInfo]:
        """Download the version config of a product, one build per region."""
        url = self.patch_host + product + self.settings.version_config_path
        response = await self._get(url)
        return parse_version_config(product, response.text)

    async def get_server_config(self, product: str) -> list[dict[str, str]]:
        """Download the server (CDN) config of a product."""
        return await self.get_config(product, self.settings.server_config_path)

    async def get_cdn_config_text(self, key: str) -> str:
        """Download a `key = value` config document from the current host.

        Raises:
            ConfigFetchError: On a non-success response
        """
        url = self.host + "config/" + self.format_cdn_key(key)
        response = await self._get(url)
        return response.text

    async def ping(self, host: str) -> float:
        """Measure the round trip of one request to `host`, in milliseconds.

        Any HTTP response counts as an answer; connection failures and
        timeouts propagate as httpx errors.
        """
        start = time.perf_counter()
        await self.client.head(host, timeout=self.settings.ping_timeout)
        return (time.perf_counter() - start) * 1000

    async def resolve_cdn_host(self, hosts: list[str], path: str = "") -> str:
        """Ping every host and select the fastest.

        Every ping runs to completion; the results are collected in host
        order and then reduced by minimum latency.

        Args:
            hosts: Host names from the server config
            path: CDN path from the server config, e.g. "tpr/wow"

        Returns:
            The new base URL

        Raises:
            HostResolutionError: If no host answered
        """
        urls = [f"http://{host}/" for host in hosts]
        logger.info("cdn_host_resolving", hosts=hosts)

        results = await asyncio.gather(*(self.ping(url) for url in urls), return_exceptions=True)

        latencies: list[tuple[float, str]] = []
        for url, result in zip(urls, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("cdn_host_ping_failed", host=url, error=str(result))
                continue
            logger.debug("cdn_host_pinged", host=url, ping_ms=round(result, 1))
            latencies.append((result, url))

        if not latencies:
            raise HostResolutionError("Unable to resolve a CDN host")

        best_ping, best_host = min(latencies, key=lambda item: item[0])
        logger.info("cdn_host_resolved", host=best_host, ping_ms=round(best_ping, 1))

        self.host = best_host + path.strip("/") + "/" if path else best_host
        return self.host

    async def get_data_file(self, path: str, byte_range: tuple[int, int] | None = None) -> bytes:
        """Download a file under `data/` on the current host.

        Args:
            path: Path below data/, usually a formatted CDN key
            byte_range: Optional inclusive (start, end) byte range

        Raises:
            ConfigFetchError: On a non-success response
        """
        headers = None
        if byte_range is not None:
            headers = {"Range": f"bytes={byte_range[0]}-{byte_range[1]}"}

        response = await self._get(self.host + "data/" + path, headers=headers)
        return response.content

    @staticmethod
    def format_cdn_key(key: str) -> str:
        """Format a key for use in CDN requests.

        Example:
            >>> CDNResolver.format_cdn_key("49299eae4e3a195953764bb4adb3c91f")
            '49/29/49299eae4e3a195953764bb4adb3c91f'
        """
        return format_cdn_key(key)
