import httpx
import pytest

from flex_portfolio.core.config import FlexPortfolioSettings
from flex_portfolio.errors import HTML_RESPONSE, NETWORK, TIMEOUT, TOKEN_EXPIRED, UNEXPECTED_FORMAT, FlexError
from flex_portfolio.flex.client import FlexStatementClient, parse_send_request_body, statement_error

from flex_samples import statement_xml

SEND_OK = (
    '<FlexStatementResponse timestamp="05 January, 2024 12:00 PM EST"><Status>Success</Status>'
    "<ReferenceCode>REF123456</ReferenceCode><Url>https://example/GetStatement</Url></FlexStatementResponse>"
)
NOT_READY = (
    "<FlexStatementResponse><Status>Warn</Status><ErrorCode>1019</ErrorCode>"
    "<ErrorMessage>Statement generation in progress. Please try again shortly.</ErrorMessage>"
    "</FlexStatementResponse>"
)
NOT_READY_ERROR = (
    "<FlexErrorResponse><ErrorCode>1019</ErrorCode>"
    "<ErrorMessage>Statement generation in progress. Please try again shortly.</ErrorMessage></FlexErrorResponse>"
)


def _settings(**overrides) -> FlexPortfolioSettings:
    values = {"flex_poll_backoff_seconds": 0.8, "flex_poll_attempts": 2, "ibkr_user_agent": "TestAgent/1.0"}
    values.update(overrides)
    return FlexPortfolioSettings(_env_file=None, **values)


class _Recorder:
    def __init__(self, responder):
        self.requests: list[httpx.Request] = []
        self._responder = responder

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._responder(request)

    def calls(self, suffix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(suffix)]


def _client(responder, **overrides):
    recorder = _Recorder(responder)
    sleeps: list[float] = []

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    http = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    client = FlexStatementClient(_settings(**overrides), client=http, sleep=fake_sleep)
    return client, recorder, sleeps


def test_parse_pipe_reference_code():
    assert parse_send_request_body("200|Statement generation in progress. Reference Code: 9876543210") == "9876543210"
    assert parse_send_request_body("200|Queued ABC123XYZ") == "ABC123XYZ"


def test_parse_pipe_errors():
    with pytest.raises(FlexError) as expired:
        parse_send_request_body("1012|Token has expired.")
    assert expired.value.code == TOKEN_EXPIRED
    assert expired.value.needs_reauth

    with pytest.raises(FlexError) as other:
        parse_send_request_body("1015|Token is invalid.")
    assert other.value.code == "1015"
    assert not other.value.needs_reauth


def test_parse_xml_variants():
    assert parse_send_request_body(SEND_OK) == "REF123456"
    assert parse_send_request_body('<Response referenceCode="ATTR999" />') == "ATTR999"
    assert parse_send_request_body("Your reference code: TXT4567") == "TXT4567"

    wrapper_fail = (
        "<FlexWebServiceResponse><Status>Fail</Status><ErrorCode>1003</ErrorCode>"
        "<ErrorMessage>Statement is not available.</ErrorMessage></FlexWebServiceResponse>"
    )
    with pytest.raises(FlexError) as failed:
        parse_send_request_body(wrapper_fail)
    assert failed.value.code == "1003"
    assert failed.value.message == "Statement is not available."

    with pytest.raises(FlexError) as error_response:
        parse_send_request_body(NOT_READY_ERROR)
    assert error_response.value.code == "1019"


def test_parse_html_and_unknown_bodies():
    with pytest.raises(FlexError) as html:
        parse_send_request_body("<!DOCTYPE html><html><body>Login</body></html>")
    assert html.value.code == HTML_RESPONSE

    with pytest.raises(FlexError) as expired:
        parse_send_request_body("Session expired")
    assert expired.value.code == TOKEN_EXPIRED

    with pytest.raises(FlexError) as unknown:
        parse_send_request_body("???")
    assert unknown.value.code == UNEXPECTED_FORMAT


def test_statement_error_detection():
    assert statement_error(statement_xml()) is None
    assert statement_error(NOT_READY).code == "1019"
    assert statement_error(NOT_READY_ERROR).code == "1019"


async def test_web_endpoint_success_sends_expected_parameters():
    document = statement_xml()

    def responder(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("SendRequest"):
            return httpx.Response(200, text=SEND_OK)
        return httpx.Response(200, text=document)

    client, recorder, sleeps = _client(responder)
    result = await client.fetch_statement("tok", "42")

    assert result == document
    assert sleeps == []
    send, get = recorder.requests
    assert send.url.host == "ndcdyn.interactivebrokers.com"
    assert dict(send.url.params) == {"t": "tok", "q": "42", "v": "3"}
    assert dict(get.url.params) == {"t": "tok", "q": "REF123456", "v": "3"}
    assert send.headers["User-Agent"] == "TestAgent/1.0"
    assert send.headers["Accept"].startswith("application/xml")


async def test_universal_preference_uses_v_for_reference():
    def responder(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("SendRequest"):
            return httpx.Response(200, text="200|Reference Code: 1234567")
        return httpx.Response(200, text=statement_xml())

    client, recorder, _ = _client(responder, ibkr_flex_endpoint="universal")
    await client.fetch_statement("tok", "42")

    send, get = recorder.requests
    assert send.url.path.endswith("/Universal/servlet/FlexStatementService.SendRequest")
    assert dict(send.url.params) == {"t": "tok", "q": "42"}
    assert dict(get.url.params) == {"t": "tok", "v": "1234567"}


async def test_get_statement_polls_until_ready():
    responses = iter([NOT_READY_ERROR, NOT_READY, statement_xml()])

    def responder(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("SendRequest"):
            return httpx.Response(200, text=SEND_OK)
        return httpx.Response(200, text=next(responses))

    client, recorder, sleeps = _client(responder)
    result = await client.fetch_statement("tok", "42")

    assert "FlexStatement" in result
    assert len(recorder.calls("GetStatement")) == 3
    assert sleeps == pytest.approx([0.8, 1.6])


async def test_polling_gives_up_and_raises_last_error():
    def responder(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("SendRequest"):
            return httpx.Response(200, text=SEND_OK)
        return httpx.Response(200, text=NOT_READY_ERROR)

    client, recorder, sleeps = _client(responder)
    with pytest.raises(FlexError) as excinfo:
        await client.fetch_statement("tok", "42")

    assert excinfo.value.code == "1019"
    # three GetStatement calls per family
    assert len(recorder.calls("GetStatement")) == 6
    assert sleeps == pytest.approx([0.8, 1.6, 0.8, 1.6])


async def test_html_response_falls_back_without_retry():
    def responder(request: httpx.Request) -> httpx.Response:
        if request.url.host == "ndcdyn.interactivebrokers.com":
            return httpx.Response(200, text="<html><body>Please log in</body></html>")
        if request.url.path.endswith("SendRequest"):
            return httpx.Response(200, text="200|Reference Code: 7654321")
        return httpx.Response(200, text=statement_xml())

    client, recorder, _ = _client(responder)
    result = await client.fetch_statement("tok", "42")

    assert "FlexStatement" in result
    web_calls = [r for r in recorder.requests if r.url.host == "ndcdyn.interactivebrokers.com"]
    assert len(web_calls) == 1


async def test_unexpected_send_body_is_retried_once():
    bodies = iter(["???", SEND_OK])

    def responder(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("SendRequest"):
            return httpx.Response(200, text=next(bodies))
        return httpx.Response(200, text=statement_xml())

    client, recorder, _ = _client(responder)
    await client.fetch_statement("tok", "42")

    assert len(recorder.calls("SendRequest")) == 2
    assert all(r.url.host == "ndcdyn.interactivebrokers.com" for r in recorder.requests)


async def test_expired_token_surfaces_after_both_families():
    def responder(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="1012|Token has expired.")

    client, recorder, _ = _client(responder)
    with pytest.raises(FlexError) as excinfo:
        await client.fetch_statement("tok", "42")

    assert excinfo.value.code == TOKEN_EXPIRED
    assert {r.url.host for r in recorder.requests} == {
        "ndcdyn.interactivebrokers.com",
        "gdcdyn.interactivebrokers.com",
    }


async def test_http_error_status_message():
    client, _, _ = _client(lambda request: httpx.Response(503))
    with pytest.raises(FlexError) as excinfo:
        await client.fetch_statement("tok", "42")

    assert excinfo.value.message == "SendRequest failed: 503 Service Unavailable"
    assert excinfo.value.code is None


async def test_timeouts_and_transport_failures_have_codes():
    def timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    def refused(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    timeout_client, _, _ = _client(timeout)
    with pytest.raises(FlexError) as timed_out:
        await timeout_client.fetch_statement("tok", "42")
    assert timed_out.value.code == TIMEOUT

    refused_client, _, _ = _client(refused)
    with pytest.raises(FlexError) as network:
        await refused_client.fetch_statement("tok", "42")
    assert network.value.code == NETWORK
