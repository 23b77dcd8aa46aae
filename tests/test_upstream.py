from __future__ import annotations

import httpx
import pytest

from odsync.mirror_cache.cancellation import CancellationToken
from odsync.mirror_cache.errors import FillCancelled, UpstreamNotFound, UpstreamTransientError
from odsync.mirror_cache.upstream import UpstreamFetcher, expected_length_of
from tests.utils.origin import ORIGIN, BrokenStream, FakeOrigin, collect


def test_url_for_concatenates_base_and_key() -> None:
    fetcher = UpstreamFetcher(httpx.AsyncClient(), ORIGIN + "/")

    assert fetcher.url_for("ubuntu/dists/jammy/Release") == ORIGIN + "/ubuntu/dists/jammy/Release"
    assert fetcher.url_for("/pool/a b+c.deb") == ORIGIN + "/pool/a%20b+c.deb"


@pytest.mark.parametrize(
    ("headers", "expected"),
    [
        ({"content-length": "42"}, 42),
        ({"content-length": "0"}, None),
        ({"content-length": "nope"}, None),
        ({}, None),
        ({"content-length": "42", "content-encoding": "gzip"}, None),
        ({"content-length": "42", "content-encoding": "identity"}, 42),
    ],
)
def test_expected_length_of(headers: dict[str, str], expected) -> None:
    assert expected_length_of(httpx.Response(200, headers=headers)) == expected


@pytest.mark.anyio
async def test_fetch_streams_body(origin: FakeOrigin) -> None:
    origin.files["/pool/a.deb"] = b"package-bytes"
    fetcher = UpstreamFetcher(origin.client(), ORIGIN, chunk_size=4)

    async with fetcher.fetch("pool/a.deb") as upstream:
        assert upstream.expected_length == len(b"package-bytes")
        body = await collect(upstream.chunks())

    assert body == b"package-bytes"
    assert origin.calls["/pool/a.deb"] == 1


@pytest.mark.anyio
async def test_fetch_maps_404_to_not_found(origin: FakeOrigin) -> None:
    fetcher = UpstreamFetcher(origin.client(), ORIGIN)

    with pytest.raises(UpstreamNotFound):
        async with fetcher.fetch("missing.pkg"):
            pass


@pytest.mark.anyio
@pytest.mark.parametrize("status_code", [403, 500, 503])
async def test_fetch_maps_other_statuses_to_transient(origin: FakeOrigin, status_code: int) -> None:
    origin.statuses["/flaky.iso"] = status_code
    fetcher = UpstreamFetcher(origin.client(), ORIGIN)

    with pytest.raises(UpstreamTransientError, match=str(status_code)):
        async with fetcher.fetch("flaky.iso"):
            pass


@pytest.mark.anyio
async def test_fetch_maps_transport_errors_to_transient() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    fetcher = UpstreamFetcher(httpx.AsyncClient(transport=httpx.MockTransport(refuse)), ORIGIN)

    with pytest.raises(UpstreamTransientError, match="connection refused"):
        async with fetcher.fetch("anything"):
            pass


@pytest.mark.anyio
async def test_mid_transfer_drop_is_transient(origin: FakeOrigin) -> None:
    origin.responders["/big.iso"] = lambda request: httpx.Response(
        200, headers={"content-length": "1000"}, stream=BrokenStream(b"partial")
    )
    fetcher = UpstreamFetcher(origin.client(), ORIGIN, chunk_size=7)

    with pytest.raises(UpstreamTransientError):
        async with fetcher.fetch("big.iso") as upstream:
            await collect(upstream.chunks())


@pytest.mark.anyio
async def test_follows_redirects(origin: FakeOrigin) -> None:
    origin.files["/real.iso"] = b"moved"
    origin.responders["/old.iso"] = lambda request: httpx.Response(302, headers={"location": ORIGIN + "/real.iso"})
    fetcher = UpstreamFetcher(origin.client(), ORIGIN)

    async with fetcher.fetch("old.iso") as upstream:
        assert await collect(upstream.chunks()) == b"moved"


@pytest.mark.anyio
async def test_cancelled_token_prevents_request(origin: FakeOrigin) -> None:
    fetcher = UpstreamFetcher(origin.client(), ORIGIN)
    token = CancellationToken()
    token.cancel()

    with pytest.raises(FillCancelled):
        async with fetcher.fetch("pool/a.deb", token):
            pass
    assert origin.total_calls == 0
