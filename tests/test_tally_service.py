import asyncio
import time

import httpx

from tally_dashboard.config import TallyConfig
from tally_dashboard.exceptions import ErrorKind
from tally_dashboard.models.voucher import LineItem, VoucherDraft
from tally_dashboard.services.tally_service import TallyService

from .conftest import read_fixture


def make_client(handler, min_interval=0.0):
    settings = TallyConfig(server="tally.local", port=9000, min_request_interval=min_interval, timeout=5)
    return TallyService(settings, receipt_kinds=["Counter Receipt"], transport=httpx.MockTransport(handler))


def request_text(request: httpx.Request) -> str:
    return request.content.decode("utf-16")


def xml_response(name: str) -> httpx.Response:
    return httpx.Response(200, content=read_fixture(name).encode("utf-8"))


def test_requests_are_utf16_posts():
    seen = []

    def handler(request):
        seen.append((request.method, str(request.url), request_text(request)))
        return xml_response("company_list.xml")

    async def scenario():
        client = make_client(handler)
        try:
            return await client.check_connectivity()
        finally:
            await client.close()

    result = asyncio.run(scenario())
    assert result.success and result.connected
    assert result.companies == ["Himalayan Traders Pvt Ltd"]
    method, url, body = seen[0]
    assert method == "POST"
    assert url.startswith("http://tally.local:9000")
    assert "<ID>CompanyList</ID>" in body


def test_connection_refused_is_tagged_not_raised():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async def scenario():
        client = make_client(handler)
        try:
            return await client.check_connectivity(), await client.fetch_vouchers_since(0)
        finally:
            await client.close()

    connectivity, fetched = asyncio.run(scenario())
    assert not connectivity.connected
    assert connectivity.error_kind == ErrorKind.CONNECTION_REFUSED
    assert "Cannot connect to Tally" in connectivity.error
    assert not fetched.success
    assert fetched.records == []
    assert fetched.error_kind == ErrorKind.CONNECTION_REFUSED


def test_timeout_and_http_errors():
    calls = []

    def handler(request):
        calls.append(1)
        if len(calls) == 1:
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(500, content=b"boom")

    async def scenario():
        client = make_client(handler)
        try:
            return await client.fetch_vouchers_since(0), await client.fetch_vouchers_since(0)
        finally:
            await client.close()

    timed_out, server_error = asyncio.run(scenario())
    assert timed_out.error_kind == ErrorKind.TIMEOUT
    assert server_error.error_kind == ErrorKind.TRANSPORT
    assert "HTTP 500" in server_error.error


def test_unparseable_response_is_malformed():
    def handler(request):
        return httpx.Response(200, content=b"<ENVELOPE><BODY>")

    async def scenario():
        client = make_client(handler)
        try:
            return await client.fetch_vouchers_since(0)
        finally:
            await client.close()

    result = asyncio.run(scenario())
    assert not result.success
    assert result.error_kind == ErrorKind.MALFORMED_RESPONSE


def test_fetch_vouchers_since_parses_collection():
    bodies = []

    def handler(request):
        bodies.append(request_text(request))
        return xml_response("vouchers_incremental.xml")

    async def scenario():
        client = make_client(handler)
        try:
            return await client.fetch_vouchers_since(100)
        finally:
            await client.close()

    result = asyncio.run(scenario())
    assert result.success
    assert [v.change_sequence for v in result.records] == [101, 102, 103]
    assert result.records[2].counterparty_name == "Hari Kirana"
    assert "$ALTERID &gt; 100" in bodies[0]


def test_requests_are_spaced_by_min_interval():
    started = []

    def handler(request):
        started.append(time.monotonic())
        return xml_response("company_list.xml")

    async def scenario():
        client = make_client(handler, min_interval=0.2)
        try:
            await asyncio.gather(*(client.check_connectivity() for _ in range(3)))
        finally:
            await client.close()
        return client.request_count

    count = asyncio.run(scenario())
    assert count == 3
    gaps = [later - earlier for earlier, later in zip(started, started[1:])]
    assert all(gap >= 0.18 for gap in gaps), gaps


def test_voucher_detail_falls_back_to_collection():
    bodies = []

    def handler(request):
        body = request_text(request)
        bodies.append(body)
        if "<TYPE>Object</TYPE>" in body:
            return xml_response("empty_object.xml")
        return httpx.Response(200, content=read_fixture("voucher_detail_object.xml").replace(
            "TALLYMESSAGE", "COLLECTION").encode("utf-8"))

    async def scenario():
        client = make_client(handler)
        try:
            return await client.fetch_voucher_detail("501")
        finally:
            await client.close()

    result = asyncio.run(scenario())
    assert result.success
    assert len(bodies) == 2
    assert "$MASTERID = 501" in bodies[1]
    assert [item.item_name for item in result.line_items] == ["Basmati Rice 5kg", "Sunflower Oil 1L"]


def test_voucher_detail_rejects_non_numeric_id():
    def handler(request):
        raise AssertionError("no request expected")

    async def scenario():
        client = make_client(handler)
        try:
            return await client.fetch_voucher_detail("12; DROP")
        finally:
            await client.close()

    result = asyncio.run(scenario())
    assert not result.success
    assert result.error_kind == ErrorKind.MALFORMED_RESPONSE


def test_voucher_detail_not_found_anywhere():
    def handler(request):
        return xml_response("empty_object.xml")

    async def scenario():
        client = make_client(handler)
        try:
            return await client.fetch_voucher_detail("999")
        finally:
            await client.close()

    result = asyncio.run(scenario())
    assert result.error_kind == ErrorKind.REMOTE_REJECTED
    assert "not found" in result.error


def test_create_voucher_resolves_import_response():
    responses = iter(["import_created.xml", "import_ignored.xml", "import_line_error.xml"])

    def handler(request):
        assert "<TALLYREQUEST>Import</TALLYREQUEST>" in request_text(request)
        return xml_response(next(responses))

    draft = VoucherDraft(counterparty_name="Ram Traders", items=[LineItem(item_name="Rice", quantity=1, rate=100)])

    async def scenario():
        client = make_client(handler)
        try:
            return [await client.create_voucher(draft) for _ in range(3)]
        finally:
            await client.close()

    created, ignored, rejected = asyncio.run(scenario())
    assert created.success and created.remote_id == "842" and created.changed_count == 1
    assert not ignored.success and ignored.error_kind == ErrorKind.REMOTE_REJECTED
    assert not rejected.success and "does not exist" in rejected.error
