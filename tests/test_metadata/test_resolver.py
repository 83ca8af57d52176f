"""
Tests for the Metadata Resolver.

HTTP traffic is served by httpx.MockTransport so no gateway is contacted.
"""

import asyncio
import json

import httpx
import pytest

from marketsync.errors import MetadataError, MetadataMalformed, MetadataUnreachable
from marketsync.metadata.resolver import MetadataResolver, to_gateway_url
from marketsync.models import Metadata

GATEWAY = "gateway.test"


def make_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def json_response(payload, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, content=json.dumps(payload).encode())


# ==================== URL Mapping Tests ====================


class TestToGatewayUrl:
    """Tests for content URI to gateway URL mapping."""

    @pytest.mark.parametrize(
        "uri, expected",
        [
            ("ipfs://QmHash", "https://gateway.test/ipfs/QmHash"),
            ("cid://A", "https://gateway.test/cid/A"),
            ("ar://tx-id/meta.json", "https://gateway.test/ar/tx-id/meta.json"),
            ("ipfs://ipfs/QmHash", "https://gateway.test/ipfs/QmHash"),
            ("QmBareCid", "https://gateway.test/ipfs/QmBareCid"),
            ("  ipfs://QmHash  ", "https://gateway.test/ipfs/QmHash"),
        ],
    )
    def test_rewrites_content_uris(self, uri, expected):
        assert to_gateway_url(uri, GATEWAY) == expected

    @pytest.mark.parametrize(
        "uri",
        ["https://example.com/meta.json", "http://localhost:8080/ipfs/Qm"],
    )
    def test_http_passthrough(self, uri):
        assert to_gateway_url(uri, GATEWAY) == uri

    @pytest.mark.parametrize("uri", ["", "   ", "ipfs://", "mailto:someone", "ipfs://[broken"])
    def test_unmappable(self, uri):
        with pytest.raises(MetadataUnreachable):
            to_gateway_url(uri, GATEWAY)


# ==================== Resolve Tests ====================


class TestResolve:
    """Tests for MetadataResolver.resolve."""

    async def test_fetches_through_gateway(self, config):
        requested = []

        def handler(request):
            requested.append(str(request.url))
            return json_response({"name": "Art1", "description": "first", "image": "ipfs://QmImg"})

        resolver = MetadataResolver(config, client=make_client(handler))

        metadata = await resolver.resolve("ipfs://QmMeta")

        assert requested == ["https://gateway.test/ipfs/QmMeta"]
        assert metadata == Metadata(
            name="Art1",
            description="first",
            image="https://gateway.test/ipfs/QmImg",
        )

    async def test_missing_fields_default_to_empty(self, config):
        resolver = MetadataResolver(config, client=make_client(lambda r: json_response({"name": "Art1"})))

        metadata = await resolver.resolve("cid://A")

        assert metadata.name == "Art1"
        assert metadata.description == ""
        assert metadata.image == ""

    async def test_null_and_non_string_fields(self, config):
        payload = {"name": None, "description": 42, "image": "plain.png"}
        resolver = MetadataResolver(config, client=make_client(lambda r: json_response(payload)))

        metadata = await resolver.resolve("cid://A")

        assert metadata == Metadata(name="", description="42", image="plain.png")

    async def test_data_envelope(self, config):
        payload = {"data": {"name": "Wrapped", "description": "d", "image": "https://img/x.png"}}
        resolver = MetadataResolver(config, client=make_client(lambda r: json_response(payload)))

        metadata = await resolver.resolve("cid://A")

        assert metadata.name == "Wrapped"
        assert metadata.image == "https://img/x.png"

    async def test_legacy_field_names(self, config):
        payload = {"title": "Old Form", "description": "d", "fileUrl": "ipfs://QmFile"}
        resolver = MetadataResolver(config, client=make_client(lambda r: json_response(payload)))

        metadata = await resolver.resolve("cid://A")

        assert metadata.name == "Old Form"
        assert metadata.image == "https://gateway.test/ipfs/QmFile"

    async def test_not_found(self, config):
        resolver = MetadataResolver(config, client=make_client(lambda r: httpx.Response(404)))

        with pytest.raises(MetadataUnreachable) as exc_info:
            await resolver.resolve("cid://A")

        assert exc_info.value.uri == "cid://A"
        assert "404" in str(exc_info.value)

    async def test_timeout(self, config):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        resolver = MetadataResolver(config, client=make_client(handler))

        with pytest.raises(MetadataUnreachable) as exc_info:
            await resolver.resolve("cid://B")

        assert isinstance(exc_info.value.__cause__, httpx.TimeoutException)

    async def test_connection_error(self, config):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        resolver = MetadataResolver(config, client=make_client(handler))

        with pytest.raises(MetadataUnreachable):
            await resolver.resolve("cid://B")

    async def test_invalid_json(self, config):
        resolver = MetadataResolver(
            config, client=make_client(lambda r: httpx.Response(200, content=b"<html>"))
        )

        with pytest.raises(MetadataMalformed):
            await resolver.resolve("cid://A")

    async def test_json_not_an_object(self, config):
        resolver = MetadataResolver(config, client=make_client(lambda r: json_response(["a", "b"])))

        with pytest.raises(MetadataMalformed):
            await resolver.resolve("cid://A")

    async def test_empty_uri(self, config):
        resolver = MetadataResolver(config, client=make_client(lambda r: json_response({})))

        with pytest.raises(MetadataUnreachable):
            await resolver.resolve("")


# ==================== Batch Tests ====================


class TestResolveBatch:
    """Tests for MetadataResolver.resolve_batch."""

    async def test_one_failure_does_not_fail_batch(self, config):
        def handler(request):
            if request.url.path == "/cid/B":
                raise httpx.ReadTimeout("timed out", request=request)
            return json_response({"name": request.url.path.rsplit("/", 1)[-1]})

        resolver = MetadataResolver(config, client=make_client(handler))

        results = await resolver.resolve_batch(["cid://A", "cid://B", "cid://C"])

        assert len(results) == 3
        assert results[0] == Metadata(name="A")
        assert isinstance(results[1], MetadataUnreachable)
        assert results[2] == Metadata(name="C")
        assert sum(1 for r in results if isinstance(r, MetadataError)) == 1

    @pytest.mark.parametrize("bad_uri", ["ipfs://[broken", "cid://A\x01B", "https://[::1"])
    async def test_unparseable_uri_isolated(self, config, bad_uri):
        resolver = MetadataResolver(
            config, client=make_client(lambda request: json_response({"name": "Art1"}))
        )

        results = await resolver.resolve_batch(["cid://A", bad_uri])

        assert results[0] == Metadata(name="Art1")
        assert isinstance(results[1], MetadataUnreachable)
        assert results[1].uri == bad_uri

    async def test_unparseable_image_kept_as_published(self, config):
        payload = {"name": "Art1", "image": "ipfs://[bad"}
        resolver = MetadataResolver(config, client=make_client(lambda request: json_response(payload)))

        results = await resolver.resolve_batch(["cid://A"])

        assert results == [Metadata(name="Art1", image="ipfs://[bad")]

    async def test_order_independent_of_completion(self, config):
        delays = {"/cid/A": 0.05, "/cid/B": 0.0, "/cid/C": 0.02}

        async def handler(request):
            await asyncio.sleep(delays[request.url.path])
            return json_response({"name": request.url.path})

        resolver = MetadataResolver(config, client=make_client(handler))

        results = await resolver.resolve_batch(["cid://A", "cid://B", "cid://C"])

        assert [r.name for r in results] == ["/cid/A", "/cid/B", "/cid/C"]

    async def test_concurrency_is_bounded(self, config):
        in_flight = 0
        peak = 0

        async def handler(request):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return json_response({"name": "x"})

        resolver = MetadataResolver(config, client=make_client(handler), concurrency=2)

        results = await resolver.resolve_batch([f"cid://{i}" for i in range(10)])

        assert len(results) == 10
        assert peak == 2

    async def test_identical_uris_fetched_once(self, config):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return json_response({"name": "same"})

        resolver = MetadataResolver(config, client=make_client(handler))

        results = await resolver.resolve_batch(["cid://A", "cid://A", "cid://B"])

        assert len(results) == 3
        assert results[0] is results[1]
        assert sorted(calls) == ["/cid/A", "/cid/B"]

    async def test_empty_batch(self, config):
        resolver = MetadataResolver(config, client=make_client(lambda r: json_response({})))

        assert await resolver.resolve_batch([]) == []


# ==================== Lifecycle Tests ====================


class TestResolverLifecycle:
    """Tests for client ownership."""

    async def test_injected_client_left_open(self, config):
        client = make_client(lambda r: json_response({}))

        async with MetadataResolver(config, client=client):
            pass

        assert not client.is_closed
        await client.aclose()

    async def test_owned_client_closed(self, config):
        resolver = MetadataResolver(config)

        await resolver.close()

        assert resolver._client.is_closed

    def test_uses_configured_gateway(self, config):
        resolver = MetadataResolver(config, client=make_client(lambda r: json_response({})))

        assert resolver.gateway_host == "gateway.test"
        assert resolver.concurrency == 4
