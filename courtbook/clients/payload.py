"""Ordered, multi-valued form payload for the portal's submission endpoint."""

import urllib.parse
from collections.abc import Iterator

from courtbook.models.enums import PartyType
from courtbook.models.portal import BookingForm, ChallengeToken

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"

_RESERVATION_TYPE = "13"
_INVITE_FOR = {PartyType.SINGLES: "Singles", PartyType.DOUBLES: "Doubles"}
_GUESTS = {PartyType.SINGLES: 1, PartyType.DOUBLES: 3}


class FormPayload:
    """A list of ``(key, value)`` pairs that keeps repeated keys.

    The portal reads ``duration`` twice (the slot granularity and the
    total length), so a dict-based encoder would silently drop one.
    """

    def __init__(self, pairs: list[tuple[str, str]] | None = None) -> None:
        self._pairs: list[tuple[str, str]] = list(pairs or [])

    def add(self, key: str, value: object) -> "FormPayload":
        self._pairs.append((key, "" if value is None else str(value)))
        return self

    def get_all(self, key: str) -> list[str]:
        return [v for k, v in self._pairs if k == key]

    def encode(self) -> str:
        """Serialise to ``application/x-www-form-urlencoded`` preserving order and repeats."""
        return urllib.parse.urlencode(self._pairs)

    def __iter__(self) -> Iterator[tuple[str, str]]:
        return iter(self._pairs)

    def __len__(self) -> int:
        return len(self._pairs)


def build_reservation_payload(
    form: BookingForm,
    token: ChallengeToken,
    *,
    booking_date: str,
    start_minutes: int,
    duration_minutes: int,
    party_type: PartyType,
    slot_granularity: int = 30,
    sport_id: int = 1,
    guest_name: str = "Guest Player",
) -> FormPayload:
    """Build the submission payload in the exact field order the portal's form posts.

    Args:
        form: Hidden fields extracted from the booking form.
        token: Freshly acquired challenge token.
        booking_date: Date as ``YYYY-MM-DD``.
        start_minutes: Start time in minutes from midnight.
        duration_minutes: Requested total length.
        party_type: Singles adds one guest, doubles three.
        slot_granularity: The portal's fixed slot length.
        sport_id: Portal sport selector.
        guest_name: Name used for guest players.
    """
    payload = FormPayload()
    payload.add("edit", "")
    payload.add("is_register", "")
    payload.add("rt_key", "")
    payload.add("temp", form.temp)
    payload.add("upd", "true")
    payload.add("duration", slot_granularity)
    payload.add("g-recaptcha-response", token.value)
    payload.add("court", form.court_id)
    payload.add("date", booking_date)
    payload.add("time", start_minutes)
    payload.add("sportSel", sport_id)
    payload.add("duration", duration_minutes)
    payload.add("rtype", _RESERVATION_TYPE)
    payload.add("invite_for", _INVITE_FOR[party_type])
    payload.add("players[1][user_id]", form.user_id)
    payload.add("players[1][name]", form.user_name)
    for slot in range(2, _GUESTS[party_type] + 2):
        payload.add(f"players[{slot}][user_id]", "")
        payload.add(f"players[{slot}][name]", guest_name)
        payload.add(f"players[{slot}][guest]", "on")
        payload.add(f"players[{slot}][guestof]", "1")
    payload.add("payee_hide", form.user_id)
    payload.add("bookingWaiverPolicy", "true")
    return payload
