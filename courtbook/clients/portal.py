"""HTTP session against the court scheduling portal.

One ``PortalSession`` is opened per instance execution and closed when that
execution ends. Its cookie jar holds one user's login and is never shared.
"""

import datetime as dt
import html as html_lib
import json
import logging
import re
import urllib.parse

import httpx

from courtbook.clients.payload import FORM_CONTENT_TYPE, FormPayload
from courtbook.clients.resilience import (
    AuthenticationError,
    UnknownPortalError,
    classify_response,
    portal_breaker,
    resilient_request,
    translate_transport_error,
)
from courtbook.models.portal import (
    BookingForm,
    Court,
    Interval,
    PortalCredentials,
    SubmissionResponse,
)

logger = logging.getLogger(__name__)

_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/141.0.0.0 Safari/537.36"
)

_INPUT_RE = re.compile(r"<input\b[^>]*>", re.IGNORECASE)
_ATTR_RE = re.compile(r'([\w\-\[\]]+)\s*=\s*(?:"([^"]*)"|\'([^\']*)\')')
_TAG_RE = re.compile(r"<[^>]+>")


def portal_date(value: dt.date) -> str:
    """Booking-form URLs carry dates without zero padding, e.g. ``2025-11-7``."""
    return f"{value.year}-{value.month}-{value.day}"


def extract_input_value(page: str, name: str) -> str | None:
    """Return the ``value`` of the ``<input name=...>`` tag, or None if absent."""
    for tag in _INPUT_RE.findall(page):
        attrs = {
            m.group(1).lower(): m.group(2) if m.group(2) is not None else m.group(3)
            for m in _ATTR_RE.finditer(tag)
        }
        if attrs.get("name") == name:
            return html_lib.unescape(attrs.get("value", ""))
    return None


def page_text(page: str) -> str:
    """Collapse an HTML page to its visible text lines."""
    body = re.sub(r"<(script|style)\b.*?</\1>", " ", page, flags=re.IGNORECASE | re.DOTALL)
    text = html_lib.unescape(_TAG_RE.sub("\n", body))
    lines = [line.strip() for line in text.splitlines()]
    return "\n".join(line for line in lines if line)


def validate_court_data_schema(data: object) -> None:
    """Validate that a court-data response has the expected keys.

    Raises:
        UnknownPortalError: If the payload shape changed.
    """
    if not isinstance(data, dict):
        raise UnknownPortalError("Expected object for court data response")
    if not isinstance(data.get("e"), list):
        raise UnknownPortalError("Missing court list 'e' in court data response")


def parse_court_data(data: dict) -> list[Court]:
    """Convert the portal's court-data JSON into ``Court`` models.

    Each court entry carries ``mn`` (display number), ``i`` (portal id),
    ``t`` (operating windows) and ``b`` (existing bookings). All times are
    minutes from midnight.
    """
    validate_court_data_schema(data)
    courts: list[Court] = []
    for entry in data["e"]:
        try:
            number = int(entry["mn"])
        except (KeyError, TypeError, ValueError):
            logger.debug("Skipping court entry without a number: %s", entry)
            continue
        operating = [
            Interval(start=int(w["t"]), end=int(w["t"]) + int(w["d"]))
            for w in entry.get("t") or []
        ]
        booked = [
            Interval(start=int(b["t"]), end=int(b["t"]) + int(b["d"]))
            for b in entry.get("b") or []
        ]
        courts.append(
            Court(
                number=number,
                portal_id=str(entry.get("i", "")),
                name=entry.get("n", ""),
                operating=operating,
                booked=booked,
            )
        )
    return courts


class PortalSession:
    """Async, single-owner session with the scheduling portal.

    Args:
        base_url: Portal origin, e.g. ``https://jct.gametime.net``.
        sport_id: Portal sport selector (tennis is 1).
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        sport_id: int = 1,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.sport_id = sport_id
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            follow_redirects=False,
            headers={"User-Agent": _USER_AGENT},
            transport=transport,
        )
        self.authenticated = False

    async def __aenter__(self) -> "PortalSession":
        return self

    async def __aexit__(
        self, exc_type: type | None, exc_val: Exception | None, exc_tb: object
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """Discard the session and its cookies."""
        await self._client.aclose()
        self.authenticated = False

    def absolute(self, location: str) -> str:
        return urllib.parse.urljoin(self.base_url + "/", location)

    def cookies(self) -> list[dict[str, str]]:
        """Snapshot of the session cookies, shaped for a browser context."""
        host = urllib.parse.urlparse(self.base_url).hostname or ""
        return [
            {
                "name": cookie.name,
                "value": cookie.value or "",
                "domain": cookie.domain or host,
                "path": cookie.path or "/",
            }
            for cookie in self._client.cookies.jar
        ]

    async def _send(self, method: str, url: str, **kwargs: object) -> httpx.Response:
        return await portal_breaker.call_async(self._guarded(method, url, **kwargs))

    async def _guarded(self, method: str, url: str, **kwargs: object) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)  # type: ignore[arg-type]
        except httpx.HTTPError as exc:
            raise translate_transport_error(exc) from exc
        classify_response(response)
        return response

    # ── Authentication ──────────────────────────────────────────────────

    @resilient_request
    async def _load_login_page(self) -> None:
        await self._send("GET", "/auth")

    async def login(self, credentials: PortalCredentials) -> None:
        """Form-based login that leaves session cookies in the jar.

        Raises:
            AuthenticationError: If the portal rejects the credentials.
        """
        logger.info("Logging in to portal as %s", credentials.username)
        await self._load_login_page()
        response = await self._send(
            "POST",
            "/auth/json-index",
            content=urllib.parse.urlencode(
                {"username": credentials.username, "password": credentials.password}
            ),
            headers={
                "Content-Type": FORM_CONTENT_TYPE,
                "Accept": "application/json, text/plain, */*",
                "X-Requested-With": "XMLHttpRequest",
            },
        )
        try:
            body = response.json()
        except json.JSONDecodeError:
            body = {}
        code = body.get("code") if isinstance(body, dict) else None
        if response.is_redirect and "/auth" in (response.headers.get("location") or ""):
            raise AuthenticationError("Login failed - still on auth page. Please check credentials.")
        if code is not None and int(code) != 200:
            message = body.get("msg") or "Authentication failed"
            raise AuthenticationError(f"Login failed: {message}")
        if code is None and response.status_code != 200:
            raise AuthenticationError(f"Login failed (HTTP {response.status_code})")
        self.authenticated = True
        logger.info("Portal login successful for %s", credentials.username)

    # ── Availability ────────────────────────────────────────────────────

    @resilient_request
    async def fetch_court_data(self, booking_date: dt.date) -> list[Court]:
        """Fetch every court's operating windows and existing bookings for a date.

        Raises:
            AuthenticationError: If the portal redirects (session not accepted).
            UnknownPortalError: If the response is not the expected JSON.
        """
        response = await self._send(
            "GET",
            f"/scheduling/index/jsoncourtdata/sport/{self.sport_id}/date/{booking_date.isoformat()}",
            headers={
                "Accept": "application/json, text/plain, */*",
                "X-Requested-With": "XMLHttpRequest",
                "Referer": f"{self.base_url}/scheduling/index/index/sport/{self.sport_id}",
            },
        )
        if response.is_redirect:
            raise AuthenticationError("Availability request redirected - session not authenticated")
        try:
            data = response.json()
        except json.JSONDecodeError as exc:
            raise UnknownPortalError("Court data response was not JSON") from exc
        courts = parse_court_data(data)
        logger.info("Fetched court data for %s: %d courts", booking_date, len(courts))
        return courts

    # ── Booking form ────────────────────────────────────────────────────

    def booking_form_url(self, court_id: str, booking_date: dt.date, start_minutes: int) -> str:
        return (
            f"{self.base_url}/scheduling/index/book/sport/{self.sport_id}"
            f"/court/{court_id}/date/{portal_date(booking_date)}/time/{start_minutes}"
        )

    @resilient_request
    async def load_booking_form(
        self, court_id: str, booking_date: dt.date, start_minutes: int
    ) -> BookingForm:
        """Load the booking form and extract its hidden fields.

        Raises:
            UnknownPortalError: If the portal shows an error page instead of the
                form, or the hidden fields are missing.
        """
        url = self.booking_form_url(court_id, booking_date, start_minutes)
        response = await self._send("GET", url)
        if response.is_redirect:
            location = self.absolute(response.headers.get("location", ""))
            reason = await self.fetch_error_reason(location)
            raise UnknownPortalError(reason or f"Booking form unavailable ({location})")

        page = response.text
        temp = extract_input_value(page, "temp")
        user_id = extract_input_value(page, "players[1][user_id]")
        if not temp or not user_id:
            reason = page_text(page)[:200]
            raise UnknownPortalError(f"Missing hidden fields from booking form: {reason}")
        return BookingForm(
            url=url,
            court_id=court_id,
            temp=temp,
            user_id=user_id,
            user_name=extract_input_value(page, "players[1][name]") or "",
        )

    # ── Submission ──────────────────────────────────────────────────────

    async def submit(self, payload: FormPayload, referer: str) -> SubmissionResponse:
        """POST the reservation once. Never retried: the token inside is single-use."""
        response = await self._send(
            "POST",
            "/scheduling/index/save?errs=",
            content=payload.encode(),
            headers={
                "Content-Type": FORM_CONTENT_TYPE,
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Origin": self.base_url,
                "Referer": referer,
            },
        )
        location = response.headers.get("location")
        result = SubmissionResponse(
            status_code=response.status_code,
            location=self.absolute(location) if location else None,
        )
        if response.is_redirect and result.location and "/confirmation" not in result.location:
            result.reason = await self.fetch_error_reason(result.location)
        return result

    async def fetch_error_reason(self, url: str) -> str | None:
        """Best-effort read of the message on a portal error page."""
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            logger.warning("Could not load portal error page %s: %s", url, exc)
            return None
        text = page_text(response.text)
        lines = [
            line for line in text.splitlines()
            if line.lower() not in {"booking not available", "error"}
        ]
        return " ".join(lines[:3]) or None
