"""
Heuristic order/reservation extraction from a call transcript.

Used when the agent never emitted a `create_order` / `create_reservation` tool
call. This is a pure function over the turn history (no I/O), so it can be
exercised without sockets or persistence. It is best-effort by nature; the
contract it keeps is:

- name patterns are tried in a fixed priority order, the first accepted match wins
- a small stoplist (and a few non-name words) rejects false names
- a reservation is `confirmed` only with a verified name, an explicit party size
  and an explicit time; otherwise it is `escalated`
"""

from __future__ import annotations

import re
import unicodedata
from typing import Optional, Sequence

from src.concierge.menu import MenuCatalog
from src.concierge.outcome import (
    Customer,
    Intents,
    OrderLine,
    OrderOutcome,
    OutcomeSource,
    ReservationOutcome,
    ReservationStatus,
    Role,
    StructuredOutcome,
    TranscriptTurn,
)

DEFAULT_PICKUP_TIME = "20 minutes"
DEFAULT_RESERVATION_TIME = "ASAP"
DEFAULT_RESERVATION_DATE = "today"
DEFAULT_OCCASION = "Not specified"
DEFAULT_PARTY_SIZE = 2
MAX_NAME_WORDS = 3

_SEGMENT = r"([^.,!?;:\n]+)"

# Caller-side name announcements, highest priority first.
_CALLER_NAME_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bmy name is\s+" + _SEGMENT),
    re.compile(r"\bthis is\s+" + _SEGMENT),
    re.compile(r"\b(?:i'm|i am)\s+" + _SEGMENT),
    re.compile(r"([a-z][a-z'\-]*(?:\s+[a-z][a-z'\-]*)?)\s+speaking\b"),
    re.compile(r"\bunder the name(?: of)?\s+" + _SEGMENT),
)

# Assistant acknowledgment, only consulted when the caller patterns found nothing.
_ASSISTANT_NAME_PATTERN = re.compile(r"\bthank(?:s| you)(?: so much)?,?\s+" + _SEGMENT)

_NAME_STOPLIST = frozenset(
    {
        "fine", "ok", "okay", "yes", "no", "yeah", "yep", "nope", "sure", "good", "great",
        "well", "here", "ready", "sorry", "hungry", "done", "alright", "all right", "thanks",
        "there", "back", "interested", "not sure", "new", "hi", "hello", "hey",
    }
)

# Words that end the name fragment ("alex rivera calling from ...").
_NAME_CUT_RE = re.compile(
    r"\b(and|but|calling|from|for|here|please|with|to|who|would|want|wanted|like|"
    r"looking|trying|just|hoping|wondering|speaking|at|on|i|i'd|i'll|i'm|can|could)\b"
)

_LEADING_FILLER_RE = re.compile(r"^(?:(?:um+|uh+|oh|well|hi|hello|hey|yes|yeah|so|it's|its)\b[\s,]*)+")

_NON_NAME_WORDS = frozenset(
    {
        "i", "me", "my", "you", "your", "we", "a", "an", "the", "am", "is", "are", "was",
        "order", "ordering", "reservation", "table", "going", "gonna", "not", "very", "so", "much",
        # confirmation replies ("yes, this is correct")
        "correct", "right", "perfect", "exactly", "true", "wrong", "it", "that", "all", "everything",
        # verb phrases ("i'm thinking butter chicken")
        "thinking", "getting", "having", "doing", "planning", "checking", "asking", "waiting",
        "leaning", "craving", "picking", "placing", "booking", "ringing", "phoning", "curious",
    }
)

_TIME_RE = re.compile(r"\b(1[0-2]|0?[1-9])(?::([0-5]\d))?\s*(a\.?\s?m\.?|p\.?\s?m\.?)(?![a-z])")

_NUMBER_WORDS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6,
    "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11, "twelve": 12,
}
_COUNT = r"(\d{1,2}|" + "|".join(_NUMBER_WORDS) + r")\b"

_PARTY_SIZE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bparty of\s+" + _COUNT),
    re.compile(r"\btable for\s+" + _COUNT),
    re.compile(r"\bfor\s+" + _COUNT + r"\s*(?:people|persons|guests)\b"),
)

_RELATIVE_DATE_RE = re.compile(r"\b(today|tonight|tomorrow)\b")

_MONTHS = {
    "jan": "January", "feb": "February", "mar": "March", "apr": "April", "may": "May", "jun": "June",
    "jul": "July", "aug": "August", "sep": "September", "oct": "October", "nov": "November", "dec": "December",
}
_MONTH_DAY_RE = re.compile(
    r"\b(jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?|"
    r"sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)\s+(\d{1,2})(?:st|nd|rd|th)?\b"
)

_OCCASION_PHRASE_RE = re.compile(r"\boccasion is\s+(?:a |an |the |our |my )?([a-z][a-z' ]*?)\s*(?=[.,!?;\n]|$|\band\b)")
_OCCASION_KEYWORDS = (
    "business dinner",
    "birthday",
    "anniversary",
    "graduation",
    "engagement",
    "date night",
    "retirement",
    "baby shower",
    "celebration",
)

_ORDER_WORD_RE = re.compile(r"\border\b")
_RESERVATION_MARKERS = ("reservation", "reserve", "table for")
_ORDER_RECAP_MARKERS = ("your order", "you ordered", "order for")
_BOOKING_CONFIRMED_RE = re.compile(
    r"\b(confirmed|you're booked|you are booked|booked you|is booked|all set|reservation is set)\b"
)
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+|\n+")


def _normalize(text: str) -> str:
    text = (text or "").replace("’", "'").lower()
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return re.sub(r"[ \t]+", " ", text)


def _joined(turns: Sequence[TranscriptTurn], role: Optional[Role] = None) -> str:
    return "\n".join(_normalize(t.text) for t in turns if role is None or t.role == role)


def _clean_name(candidate: str) -> Optional[str]:
    text = _LEADING_FILLER_RE.sub("", (candidate or "").strip())
    text = _NAME_CUT_RE.split(text, maxsplit=1)[0]
    text = re.sub(r"[^a-z'\- ]", " ", text)
    text = " ".join(text.split()).strip(" '-")

    if not re.sub(r"[^a-z]", "", text):
        return None
    words = text.split()
    if len(words) > MAX_NAME_WORDS:
        return None
    if text in _NAME_STOPLIST or any(w in _NAME_STOPLIST for w in words):
        return None
    if any(w in _NON_NAME_WORDS for w in words):
        return None
    return " ".join(w[:1].upper() + w[1:] for w in words)


def _first_name_match(patterns: Sequence[re.Pattern[str]], text: str) -> Optional[str]:
    for pattern in patterns:
        for match in pattern.finditer(text):
            name = _clean_name(match.group(1))
            if name:
                return name
    return None


def extract_name(caller_text: str, assistant_text: str = "") -> Optional[str]:
    """Caller patterns in priority order, then the assistant's "thank you, X"."""
    name = _first_name_match(_CALLER_NAME_PATTERNS, _normalize(caller_text))
    if name:
        return name
    return _first_name_match((_ASSISTANT_NAME_PATTERN,), _normalize(assistant_text))


def fallback_display_name(caller_phone: Optional[str]) -> str:
    digits = re.sub(r"\D+", "", caller_phone or "")
    if not digits:
        return "Caller"
    return f"Caller {digits[-4:]}"


def extract_time(text: str) -> Optional[str]:
    match = _TIME_RE.search(_normalize(text))
    if not match:
        return None
    hour, minute, meridiem = match.group(1), match.group(2), match.group(3)
    suffix = "am" if meridiem.startswith("a") else "pm"
    hour = str(int(hour))
    return f"{hour}:{minute} {suffix}" if minute else f"{hour} {suffix}"


def _parse_count(token: str) -> Optional[int]:
    if token.isdigit():
        value = int(token)
        return value if value > 0 else None
    return _NUMBER_WORDS.get(token)


def extract_party_size(text: str) -> Optional[int]:
    normalized = _normalize(text)
    for pattern in _PARTY_SIZE_PATTERNS:
        for match in pattern.finditer(normalized):
            size = _parse_count(match.group(1))
            if size:
                return size
    return None


def extract_date(text: str) -> str:
    normalized = _normalize(text)
    candidates: list[tuple[int, str]] = []

    relative = _RELATIVE_DATE_RE.search(normalized)
    if relative:
        candidates.append((relative.start(), relative.group(1)))

    month_day = _MONTH_DAY_RE.search(normalized)
    if month_day:
        month = _MONTHS[month_day.group(1)[:3]]
        candidates.append((month_day.start(), f"{month} {int(month_day.group(2))}"))

    if not candidates:
        return DEFAULT_RESERVATION_DATE
    return min(candidates)[1]


def extract_occasion(text: str) -> str:
    normalized = _normalize(text)
    phrase = _OCCASION_PHRASE_RE.search(normalized)
    if phrase and phrase.group(1).strip():
        return phrase.group(1).strip()

    found: list[tuple[int, str]] = []
    for keyword in _OCCASION_KEYWORDS:
        match = re.search(rf"\b{re.escape(keyword)}\b", normalized)
        if match:
            found.append((match.start(), keyword))
    if not found:
        return DEFAULT_OCCASION
    return min(found)[1]


def _order_candidate_text(caller_text: str, assistant_text: str) -> str:
    recap = [
        sentence
        for sentence in _SENTENCE_SPLIT_RE.split(assistant_text)
        if any(marker in sentence for marker in _ORDER_RECAP_MARKERS)
    ]
    return "\n".join([caller_text, *recap])


def extract_outcome(
    turns: Sequence[TranscriptTurn],
    catalog: Optional[MenuCatalog] = None,
    caller_phone: Optional[str] = None,
    *,
    require_booking_confirmation: bool = False,
) -> StructuredOutcome:
    """
    Reconstruct a StructuredOutcome (source=transcript_fallback) from the turns of one call.

    `require_booking_confirmation` additionally requires an assistant utterance confirming
    the booking before a reservation is marked confirmed.
    """
    caller_text = _joined(turns, Role.USER)
    assistant_text = _joined(turns, Role.ASSISTANT)
    full_text = _joined(turns)

    name = extract_name(caller_text, assistant_text)
    customer = Customer(
        name=name or fallback_display_name(caller_phone),
        has_verified_name=name is not None,
        phone=caller_phone or None,
    )

    time_token = extract_time(full_text)

    lines: list[OrderLine] = []
    if catalog:
        for item in catalog.find_mentions(_order_candidate_text(caller_text, assistant_text)):
            lines.append(OrderLine(name=item.name, menu_item_id=item.id, qty=1, line_total_cents=item.price_cents))
    order = OrderOutcome(
        pickup_time=time_token or DEFAULT_PICKUP_TIME,
        total_cents=sum(line.line_total_cents for line in lines),
        items=lines,
    )

    party_size = extract_party_size(full_text)
    confirmed = name is not None and party_size is not None and time_token is not None
    if confirmed and require_booking_confirmation:
        confirmed = bool(_BOOKING_CONFIRMED_RE.search(assistant_text))

    reservation = ReservationOutcome(
        party_size=party_size or DEFAULT_PARTY_SIZE,
        date=extract_date(full_text),
        time=time_token or DEFAULT_RESERVATION_TIME,
        occasion=extract_occasion(full_text),
        status=ReservationStatus.CONFIRMED if confirmed else ReservationStatus.ESCALATED,
    )

    intents = Intents(
        order=bool(_ORDER_WORD_RE.search(full_text)) or bool(lines),
        reservation=any(marker in full_text for marker in _RESERVATION_MARKERS),
    )

    return StructuredOutcome(
        source=OutcomeSource.TRANSCRIPT_FALLBACK,
        customer=customer,
        intents=intents,
        order=order,
        reservation=reservation,
    )
