"""
    Server-side relay for storage-signed URLs.

    Only URLs that carry an S3 signature are fetched, so the relay cannot be
    used to reach arbitrary hosts.
"""
from typing import Optional
from urllib.parse import parse_qs, urlparse
from pydantic import BaseModel
import httpx
import logging

from image_vault.exceptions import ForbiddenException, MissingFieldException, UpstreamException

log = logging.getLogger(__name__)

SIGNATURE_PARAM = "X-Amz-Signature"

class ProxiedImage(BaseModel):
    content: bytes
    content_type: str
    status: int = 200

class UpstreamStatus(Exception):
    """Upstream answered with a non-2xx status; carried through verbatim."""
    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Upstream fetch failed with status {status_code}")

class RetrievalProxy:
    def __init__(self, client: httpx.AsyncClient, storage_endpoint: Optional[str] = None):
        self.client = client
        # Non-AWS endpoints (LocalStack, MinIO) are trusted by exact host
        self.trusted_hosts = set()
        if storage_endpoint:
            host = urlparse(storage_endpoint).hostname
            if host:
                self.trusted_hosts.add(host.lower())

    def is_signed_storage_url(self, url: str) -> bool:
        try:
            parsed = urlparse(url)
        except ValueError:
            return False
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            return False
        host = parsed.hostname.lower()
        if "s3." not in host and host not in self.trusted_hosts:
            return False
        signature = parse_qs(parsed.query).get(SIGNATURE_PARAM)
        return bool(signature and signature[0])

    def check(self, url: Optional[str]) -> str:
        if not url:
            raise MissingFieldException("url")
        if not self.is_signed_storage_url(url):
            log.warning("Rejected non-signed proxy url for host %s", urlparse(url).hostname)
            raise ForbiddenException()
        return url

    async def open(self, url: str) -> httpx.Response:
        """
            Starts a streamed GET; the caller must close the returned response.
            Raises UpstreamStatus for non-2xx answers.
        """
        self.check(url)
        request = self.client.build_request("GET", url)
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as e:
            log.error("Proxy fetch failed: %s", e)
            raise UpstreamException(f"Proxy failed: {e}", error="Proxy failed")

        if response.is_success:
            return response
        try:
            body = (await response.aread()).decode("utf-8", errors="replace")
        finally:
            await response.aclose()
        log.error("Upstream fetch failed with status %s", response.status_code)
        raise UpstreamStatus(response.status_code, body)

    async def fetch_image_bytes(self, url: str) -> ProxiedImage:
        response = await self.open(url)
        try:
            content = await response.aread()
        except httpx.HTTPError as e:
            log.error("Proxy read failed: %s", e)
            raise UpstreamException(f"Proxy failed: {e}", error="Proxy failed")
        finally:
            await response.aclose()
        return ProxiedImage(
            content=content,
            content_type=response.headers.get("content-type", "application/octet-stream"),
            status=response.status_code,
        )
