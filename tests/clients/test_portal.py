"""Tests for the portal HTTP session, driven through httpx.MockTransport."""

import datetime as dt
import json

import httpx
import pytest

from courtbook.clients.payload import FormPayload
from courtbook.clients.portal import (
    PortalSession,
    extract_input_value,
    page_text,
    parse_court_data,
    portal_date,
)
from courtbook.clients.resilience import (
    AuthenticationError,
    CircuitOpenError,
    CircuitState,
    TransientTransportError,
    UnknownPortalError,
    portal_breaker,
)
from tests.factories import make_court_data, make_court_entry, make_credentials

BASE = "https://jct.gametime.net"

FORM_HTML = """
<html><body><form>
<input type="hidden" name="temp" value="tmp-123">
<input type='hidden' name='players[1][user_id]' value='9876'>
<input type="text" name="players[1][name]" value="Pat &amp; Sam">
<script>var x = "<input name='temp' value='decoy'>";</script>
</form></body></html>
"""


def _session(handler) -> PortalSession:  # type: ignore[no-untyped-def]
    return PortalSession(BASE, transport=httpx.MockTransport(handler))


def _login_ok(request: httpx.Request) -> httpx.Response | None:
    if request.url.path == "/auth":
        return httpx.Response(200, text="<html>login</html>")
    if request.url.path == "/auth/json-index":
        return httpx.Response(
            200,
            json={"code": 200, "msg": "ok"},
            headers={"set-cookie": "PHPSESSID=abc123; Path=/"},
        )
    return None


# ── Helpers ──────────────────────────────────────────────────────────────────


class TestHelpers:
    def test_portal_date_unpadded(self):
        assert portal_date(dt.date(2025, 11, 7)) == "2025-11-7"
        assert portal_date(dt.date(2025, 1, 17)) == "2025-1-17"

    def test_extract_input_value(self):
        assert extract_input_value(FORM_HTML, "temp") == "tmp-123"
        assert extract_input_value(FORM_HTML, "players[1][user_id]") == "9876"
        assert extract_input_value(FORM_HTML, "players[1][name]") == "Pat & Sam"

    def test_extract_missing_input(self):
        assert extract_input_value(FORM_HTML, "nope") is None

    def test_page_text_drops_tags_and_scripts(self):
        text = page_text("<div><h1>Error</h1><p>Court held</p><script>x()</script></div>")
        assert text == "Error\nCourt held"


class TestParseCourtData:
    def test_operating_and_booked_intervals(self):
        data = make_court_data(make_court_entry(3, 43, booked=[(1080, 60)]))
        [court] = parse_court_data(data)
        assert court.number == 3
        assert court.portal_id == "43"
        assert court.operating[0].start == 420
        assert court.operating[0].end == 1320
        assert court.booked[0].start == 1080
        assert court.booked[0].end == 1140

    def test_skips_entries_without_number(self):
        data = make_court_data({"n": "Practice wall", "i": 99}, make_court_entry(1, 41))
        courts = parse_court_data(data)
        assert [c.number for c in courts] == [1]

    def test_missing_court_list_raises(self):
        with pytest.raises(UnknownPortalError, match="'e'"):
            parse_court_data({"courts": []})

    def test_non_dict_raises(self):
        with pytest.raises(UnknownPortalError, match="Expected object"):
            parse_court_data([])  # type: ignore[arg-type]


# ── Login ────────────────────────────────────────────────────────────────────


class TestLogin:
    async def test_successful_login_keeps_cookie(self):
        async with _session(_login_ok) as session:
            await session.login(make_credentials())
            assert session.authenticated is True
            cookies = session.cookies()
        assert cookies == [
            {"name": "PHPSESSID", "value": "abc123", "domain": "jct.gametime.net", "path": "/"}
        ]

    async def test_posts_form_encoded_credentials(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return _login_ok(request)  # type: ignore[return-value]

        async with _session(handler) as session:
            await session.login(make_credentials(username="a@b.com", password="p w"))
        post = seen[-1]
        assert post.method == "POST"
        assert post.content == b"username=a%40b.com&password=p+w"
        assert post.headers["content-type"] == "application/x-www-form-urlencoded"

    async def test_rejected_code_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/auth/json-index":
                return httpx.Response(200, json={"code": 401, "msg": "Invalid password"})
            return httpx.Response(200, text="login")

        async with _session(handler) as session:
            with pytest.raises(AuthenticationError, match="Invalid password"):
                await session.login(make_credentials())
            assert session.authenticated is False

    async def test_redirect_back_to_auth_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/auth/json-index":
                return httpx.Response(302, headers={"location": "/auth"})
            return httpx.Response(200, text="login")

        async with _session(handler) as session:
            with pytest.raises(AuthenticationError, match="still on auth page"):
                await session.login(make_credentials())

    async def test_http_401_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/auth/json-index":
                return httpx.Response(401)
            return httpx.Response(200, text="login")

        async with _session(handler) as session:
            with pytest.raises(AuthenticationError):
                await session.login(make_credentials())

    async def test_connection_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/auth/json-index":
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, text="login")

        async with _session(handler) as session:
            with pytest.raises(TransientTransportError):
                await session.login(make_credentials())


# ── Availability ─────────────────────────────────────────────────────────────


class TestFetchCourtData:
    async def test_parses_courts(self):
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            return httpx.Response(
                200, json=make_court_data(make_court_entry(1, 41), make_court_entry(3, 43))
            )

        async with _session(handler) as session:
            courts = await session.fetch_court_data(dt.date(2025, 11, 7))
        assert [c.number for c in courts] == [1, 3]
        assert seen == ["/scheduling/index/jsoncourtdata/sport/1/date/2025-11-07"]

    async def test_redirect_means_not_authenticated(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(302, headers={"location": "/auth"})

        async with _session(handler) as session:
            with pytest.raises(AuthenticationError):
                await session.fetch_court_data(dt.date(2025, 11, 7))

    async def test_non_json_raises_unknown(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>maintenance</html>")

        async with _session(handler) as session:
            with pytest.raises(UnknownPortalError, match="not JSON"):
                await session.fetch_court_data(dt.date(2025, 11, 7))


# ── Booking form ─────────────────────────────────────────────────────────────


class TestLoadBookingForm:
    async def test_extracts_hidden_fields(self):
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, text=FORM_HTML)

        async with _session(handler) as session:
            form = await session.load_booking_form("43", dt.date(2025, 11, 7), 1080)
        assert form.temp == "tmp-123"
        assert form.user_id == "9876"
        assert form.user_name == "Pat & Sam"
        assert form.court_id == "43"
        assert seen == [f"{BASE}/scheduling/index/book/sport/1/court/43/date/2025-11-7/time/1080"]
        assert form.url == seen[0]

    async def test_error_redirect_carries_reason(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if "bookerror" in request.url.path:
                return httpx.Response(
                    200, text="<h2>Booking Not Available</h2><p>Too early to book this date</p>"
                )
            return httpx.Response(302, headers={"location": "/scheduling/index/bookerror"})

        async with _session(handler) as session:
            with pytest.raises(UnknownPortalError, match="Too early"):
                await session.load_booking_form("43", dt.date(2025, 11, 7), 1080)

    async def test_missing_hidden_fields(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<p>Session expired</p>")

        async with _session(handler) as session:
            with pytest.raises(UnknownPortalError, match="Missing hidden fields"):
                await session.load_booking_form("43", dt.date(2025, 11, 7), 1080)


# ── Submission ───────────────────────────────────────────────────────────────


class TestSubmit:
    async def test_confirmation_redirect(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                302, headers={"location": "/scheduling/index/confirmation/id/278886"}
            )

        payload = FormPayload().add("duration", 30).add("duration", 60)
        async with _session(handler) as session:
            response = await session.submit(payload, referer=f"{BASE}/form")
        assert response.status_code == 302
        assert response.location == f"{BASE}/scheduling/index/confirmation/id/278886"
        assert response.reason is None
        assert len(seen) == 1
        assert seen[0].url.path == "/scheduling/index/save"
        assert seen[0].content == b"duration=30&duration=60"
        assert seen[0].headers["referer"] == f"{BASE}/form"

    async def test_error_redirect_fetches_reason(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(200, text="<h1>Error</h1><p>Court is held by another player</p>")
            return httpx.Response(302, headers={"location": "/scheduling/index/bookerror"})

        async with _session(handler) as session:
            response = await session.submit(FormPayload(), referer=BASE)
        assert response.location == f"{BASE}/scheduling/index/bookerror"
        assert response.reason == "Court is held by another player"

    async def test_submit_is_not_retried(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(503)

        async with _session(handler) as session:
            with pytest.raises(TransientTransportError):
                await session.submit(FormPayload(), referer=BASE)
        assert calls == 1

    async def test_open_breaker_blocks_requests(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(200)

        portal_breaker._state = CircuitState.OPEN
        portal_breaker._last_failure_time = float("inf")
        async with _session(handler) as session:
            with pytest.raises(CircuitOpenError):
                await session.submit(FormPayload(), referer=BASE)
        assert calls == 0


class TestFetchErrorReason:
    async def test_unreachable_page_returns_none(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        async with _session(handler) as session:
            assert await session.fetch_error_reason(f"{BASE}/bookerror") is None

    async def test_plain_body_returned_as_is(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text=json.dumps({"a": 1}))

        async with _session(handler) as session:
            assert await session.fetch_error_reason(f"{BASE}/x") == '{"a": 1}'
