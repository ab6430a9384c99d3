"""Wall clock aligned to the portal server's own clock."""

import datetime as dt
import email.utils
import logging
import time
from collections.abc import Callable

import httpx

logger = logging.getLogger(__name__)


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class PortalClock:
    """Tracks the offset between local time and the portal's ``Date`` header.

    The booking window opens by the portal's clock, so due-ness is judged
    against ``now()`` rather than the local clock. A failed sync keeps the
    previous offset.

    Args:
        base_url: Portal origin to probe.
        timeout: Request timeout in seconds.
        source: Local time source (tests inject a fixed clock).
        transport: Optional httpx transport.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        source: Callable[[], dt.datetime] = utc_now,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self._source = source
        self._transport = transport
        self.offset = dt.timedelta(0)
        self.last_sync: float | None = None

    def now(self) -> dt.datetime:
        return self._source() + self.offset

    def is_stale(self, max_age_seconds: float) -> bool:
        if self.last_sync is None:
            return True
        return time.monotonic() - self.last_sync >= max_age_seconds

    async def sync(self) -> dt.timedelta:
        """Measure the portal's clock offset with a HEAD request.

        The round trip is assumed symmetric, so half of it is added to the
        server's timestamp.
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                before = self._source()
                response = await client.head(self.base_url)
                after = self._source()
        except httpx.HTTPError as exc:
            logger.warning("Clock sync failed, keeping offset %s: %s", self.offset, exc)
            return self.offset

        header = response.headers.get("date")
        if not header:
            logger.warning("Clock sync: no Date header from portal, keeping offset %s", self.offset)
            return self.offset

        try:
            server_time = email.utils.parsedate_to_datetime(header)
        except (TypeError, ValueError):
            logger.warning("Clock sync: unparseable Date header %r, keeping offset %s",
                           header, self.offset)
            return self.offset
        if server_time.tzinfo is None:
            server_time = server_time.replace(tzinfo=dt.UTC)
        round_trip = after - before
        estimated = server_time + round_trip / 2
        previous = self.offset
        self.offset = estimated - after
        self.last_sync = time.monotonic()
        logger.info(
            "Clock synced: offset %.3fs (round trip %.0fms, drift %.3fs)",
            self.offset.total_seconds(),
            round_trip.total_seconds() * 1000,
            abs((self.offset - previous).total_seconds()),
        )
        return self.offset
