import httpx
import pytest

from image_vault.exceptions import ForbiddenException, MissingFieldException, UpstreamException
from image_vault.image_service.proxy import RetrievalProxy, UpstreamStatus

SIGNED = "https://image-vault-bucket.s3.amazonaws.com/u1/1-a.png?X-Amz-Expires=3600&X-Amz-Signature=abc123"


def make_proxy(handler, storage_endpoint=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RetrievalProxy(client, storage_endpoint=storage_endpoint)


def never_called(request):
    raise AssertionError(f"unexpected request to {request.url}")


# ------------------------------
# URL checks
# ------------------------------

@pytest.mark.parametrize("url", [
    SIGNED,
    "http://bucket.s3.eu-west-1.amazonaws.com/k?X-Amz-Signature=s",
])
def test_signed_storage_urls_are_accepted(url):
    assert make_proxy(never_called).check(url) == url


@pytest.mark.parametrize("url", [
    "http://evil.example.com/file",
    "http://evil.example.com/file?X-Amz-Signature=forged",
    "https://bucket.s3.amazonaws.com/k",
    "https://bucket.s3.amazonaws.com/k?X-Amz-Signature=",
    "ftp://bucket.s3.amazonaws.com/k?X-Amz-Signature=s",
    "not a url",
])
def test_other_urls_are_forbidden(url):
    with pytest.raises(ForbiddenException):
        make_proxy(never_called).check(url)


def test_missing_url():
    with pytest.raises(MissingFieldException):
        make_proxy(never_called).check("")


def test_configured_endpoint_host_is_trusted():
    proxy = make_proxy(never_called, storage_endpoint="http://localhost:4566")
    assert proxy.is_signed_storage_url("http://localhost:4566/bucket/k?X-Amz-Signature=s")
    assert not proxy.is_signed_storage_url("http://otherhost:4566/bucket/k?X-Amz-Signature=s")


# ------------------------------
# relay
# ------------------------------

@pytest.mark.asyncio
async def test_fetch_relays_body_and_type():
    def handler(request):
        assert request.method == "GET"
        return httpx.Response(200, content=b"PNGDATA", headers={"content-type": "image/png"})

    image = await make_proxy(handler).fetch_image_bytes(SIGNED)

    assert image.content == b"PNGDATA"
    assert image.content_type == "image/png"
    assert image.status == 200


@pytest.mark.asyncio
async def test_forbidden_url_is_never_fetched():
    with pytest.raises(ForbiddenException):
        await make_proxy(never_called).fetch_image_bytes("http://evil.example.com/file")


@pytest.mark.asyncio
async def test_upstream_status_is_carried_through():
    def handler(request):
        return httpx.Response(403, text="<Error>AccessDenied</Error>")

    with pytest.raises(UpstreamStatus) as exc_info:
        await make_proxy(handler).open(SIGNED)

    assert exc_info.value.status_code == 403
    assert "AccessDenied" in exc_info.value.body


@pytest.mark.asyncio
async def test_transport_error_becomes_upstream_exception():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(UpstreamException) as exc_info:
        await make_proxy(handler).fetch_image_bytes(SIGNED)

    assert exc_info.value.status_code == 500
    assert exc_info.value.error == "Proxy failed"
