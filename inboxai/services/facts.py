"""Key-fact extraction from the agent's free-text analysis.

Two paths: a fenced ```json block with a ``keyFacts`` array (preferred), and
an ordered cascade of labelled regular expressions over the raw text when no
usable block exists. Both reject values that read like prose rather than a
short datum. Nothing in here raises on malformed input.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from inboxai.services.errors import ParseError

logger = logging.getLogger(__name__)

LABEL_MAX = 30
VALUE_MAX = 100
LONG_VALUE_MAX = 80
ELLIPSIS = "…"

# Labels whose values may legitimately be short sentences.
LONG_FORM_LABELS = frozenset({"Anliegen", "Empfehlung", "Empfohlene Aktion"})


class FactIcon(str, Enum):
    PERSON = "person"
    BADGE = "badge"
    BUSINESS = "business"
    MAIL = "mail"
    PHONE = "phone"
    SMARTPHONE = "smartphone"
    HOME = "home"
    LOCATION = "location_on"
    CALENDAR = "calendar_today"
    PAYMENTS = "payments"
    SHOPPING_CART = "shopping_cart"
    EVENT = "event"
    CREDIT_CARD = "credit_card"
    SHIPPING = "local_shipping"
    PACKAGE = "package_2"
    TICKET = "confirmation_number"
    HELP = "help"
    RECOMMEND = "recommend"
    BLOCK = "block"
    INFO = "info"

    @classmethod
    def coerce(cls, value: Any) -> "FactIcon":
        try:
            return cls(value)
        except ValueError:
            return cls.INFO


@dataclass(frozen=True)
class Fact:
    icon: FactIcon
    label: str
    value: str

    def to_dict(self) -> dict[str, str]:
        return {"icon": self.icon.value, "label": self.label, "value": self.value}


@dataclass
class ParsedAnalysis:
    facts: list[Fact] = field(default_factory=list)
    suggested_reply: Optional[str] = None
    customer_phone: Optional[str] = None
    from_json: bool = False

    def facts_as_dicts(self) -> list[dict[str, str]]:
        return [fact.to_dict() for fact in self.facts]


_FRAGMENT_WORDS = re.compile(
    r"\b(bestätigen|veranlassen|prüfen|anbieten|senden|kontaktieren|bitten|erstatten|"
    r"sollte|muss|kann|wird|wurde|haben|nicht angekommen|ob \w+)\b",
    re.IGNORECASE,
)
_LOWERCASE_START = re.compile(r"^[a-zäöü]")
_DIGIT_OR_AT = re.compile(r"[\d@]")


def looks_like_sentence_fragment(value: str) -> bool:
    """True when ``value`` reads like leaked prose rather than a short datum.

    The word list and the thresholds (lowercase start over 15 chars, more than
    8 tokens without a digit or ``@``) are tuned for German model output and
    are approximate.
    """
    if _FRAGMENT_WORDS.search(value):
        return True
    if _LOWERCASE_START.match(value) and len(value) > 15:
        return True
    if len(value.split()) > 8 and not _DIGIT_OR_AT.search(value):
        return True
    return False


def clamp(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1] + ELLIPSIS


# ---------------------------------------------------------------------------
# Fast path: fenced JSON block
# ---------------------------------------------------------------------------

_JSON_BLOCK = re.compile(r"```json\s*(.*?)```", re.DOTALL)


def strip_json_block(text: str) -> str:
    return _JSON_BLOCK.sub("", text or "").strip()


def find_json_block(text: str) -> Optional[str]:
    match = _JSON_BLOCK.search(text or "")
    return match.group(1).strip() if match else None


def _load_json_block(text: str) -> dict[str, Any]:
    match = _JSON_BLOCK.search(text)
    if not match:
        raise ParseError("no fenced json block")
    try:
        parsed = json.loads(match.group(1).strip())
    except json.JSONDecodeError as exc:
        raise ParseError(f"invalid json block: {exc}") from exc
    if not isinstance(parsed, dict) or not isinstance(parsed.get("keyFacts"), list):
        raise ParseError("json block has no keyFacts array")
    return parsed


def _normalize_entry(entry: Any) -> Optional[Fact]:
    if not isinstance(entry, dict):
        return None
    label = entry.get("label")
    value = entry.get("value")
    if not isinstance(label, str) or not isinstance(value, str) or not value.strip():
        return None

    label = label.strip()
    value = value.strip()
    long_form = label in LONG_FORM_LABELS
    if not long_form and looks_like_sentence_fragment(value):
        logger.debug('Rejected fact "%s" = "%s" (sentence fragment)', label, value)
        return None

    return Fact(
        icon=FactIcon.coerce(entry.get("icon")),
        label=label[:LABEL_MAX],
        value=clamp(value, LONG_VALUE_MAX if long_form else VALUE_MAX),
    )


def parse_agent_json(text: str) -> Optional[ParsedAnalysis]:
    """Parse the structured block; ``None`` when there is no usable one."""
    if not text:
        return None
    try:
        parsed = _load_json_block(text)
    except ParseError as exc:
        logger.debug("No structured fact block: %s", exc)
        return None

    facts = [fact for fact in map(_normalize_entry, parsed["keyFacts"]) if fact is not None]
    logger.info("Parsed %d key facts from JSON block", len(facts))

    reply = parsed.get("suggestedReply")
    phone = parsed.get("customerPhone")
    return ParsedAnalysis(
        facts=facts,
        suggested_reply=reply if isinstance(reply, str) and reply.strip() else None,
        customer_phone=phone if isinstance(phone, str) and phone.strip() else None,
        from_json=True,
    )


# ---------------------------------------------------------------------------
# Fallback path: ordered regex cascade
# ---------------------------------------------------------------------------

Extractor = Callable[[str], Optional[Fact]]

# "- **Label:** value", "1. **Label:** value", "Label: value" at line start
_LINE = r"(?:^|\n)[ \t]*(?:\d+\.)?[ \t]*[-*]*[ \t]*\**"
_SEP = r"\**[: \t]+\**[ \t]*"


def _clean(raw: str) -> str:
    value = raw.strip().replace("**", "").strip()
    value = re.sub(r"^-\s*", "", value)
    return value.split("\n")[0].strip()


def _line_field(pattern: str, icon: FactIcon, label: str, max_len: int, min_len: int = 2) -> Extractor:
    compiled = re.compile(pattern, re.IGNORECASE)

    def extract(text: str) -> Optional[Fact]:
        match = compiled.search(text)
        if not match:
            return None
        value = _clean(match.group(1))
        if len(value) > max_len:
            value = value[:max_len] + ELLIPSIS
        if len(value) < min_len or looks_like_sentence_fragment(value):
            return None
        return Fact(icon, label, value)

    extract.__name__ = f"extract_{label.lower().replace(' ', '_').replace('.', '')}"
    return extract


extract_customer_name = _line_field(
    _LINE + r"Kunde(?![ \t]*seit)" + _SEP + r"([^\n]{2,60})", FactIcon.PERSON, "Kunde", 50
)
extract_customer_number = _line_field(
    _LINE + r"(?:Kundennummer|KundenNr|Kd-?Nr\.?)\**[:# \t]*\**[ \t]*(\d{3,10})", FactIcon.BADGE, "Kd-Nr.", 20
)
extract_company = _line_field(
    _LINE + r"(?:Firma|Unternehmen)" + _SEP + r"([^\n,]{2,50})", FactIcon.BUSINESS, "Firma", 50
)

_EMAIL = re.compile(r"\bE-?Mail\**[: \t]+\**[ \t]*([\w.+-]+@[\w.-]+)", re.IGNORECASE)
_PHONE = re.compile(r"\b(?:Telefon|Tel\.?)\**[: \t]+\**[ \t]*([+\d][\d \t\-/()]{4,20})", re.IGNORECASE)
_MOBILE = re.compile(r"\b(?:Mobil|Handy)\**[: \t]+\**[ \t]*([+\d][\d \t\-/()]{4,20})", re.IGNORECASE)
_STREET = re.compile(
    _LINE + r"(?:Stra[sß]e|Adresse)" + _SEP + r"([A-ZÄÖÜ][a-zäöüßA-ZÄÖÜ \t.-]+\d[\w \t/-]*)",
    re.IGNORECASE,
)
_CITY = re.compile(
    _LINE + r"(?:Ort|Stadt|PLZ(?:[ \t]*/[ \t]*Ort)?)" + _SEP + r"(\d{4,5}[ \t]+[A-ZÄÖÜa-zäöüß \t.-]{2,40})",
    re.IGNORECASE,
)
_SINCE = re.compile(
    r"(?:Kunde seit|Registriert)\**[: \t]+\**[ \t]*(\d{1,2}[./]\d{1,2}[./]\d{2,4}|\d{4})", re.IGNORECASE
)
_REVENUE = re.compile(r"(?:Gesamtumsatz|Umsatz)\**[: \t]*\**[ \t]*€?[ \t]*([\d.,]+[ \t]*€?)", re.IGNORECASE)
_ORDER_COUNT = re.compile(
    r"(?:Anzahl[ \t]*(?:Auftr[aä]ge|Bestellungen)|Bestellungen)\**[: \t]*\**[ \t]*(\d+)", re.IGNORECASE
)
_LAST_ORDER = re.compile(
    r"Letzte[r]?[ \t]*(?:Auftrag|Bestellung)\**[: \t]+\**[ \t]*(\d{1,2}[./]\d{1,2}[./]\d{2,4})", re.IGNORECASE
)
_TRACKING = re.compile(
    r"(?:Trackingnummer|Tracking|Sendungsnummer)\**[: \t]+\**[ \t]*([A-Za-z0-9\-]{8,40}(?:[ \t]*\([^)]+\))?)",
    re.IGNORECASE,
)
_OPEN_TICKETS = re.compile(r"Offene?[ \t]*Tickets?\**[: \t]*\**[ \t]*(\d+)", re.IGNORECASE)
_CONCERN = re.compile(_LINE + r"Anliegen" + _SEP + r"([^\n]{5,120})", re.IGNORECASE)
_RECOMMENDATION = re.compile(_LINE + r"(?:Empfohlene Aktion|Empfehlung)" + _SEP + r"([^\n]{5,120})", re.IGNORECASE)
_CONSECUTIVE_DIGITS = re.compile(r"\d{5,}")


def _phone_value(pattern: re.Pattern[str], text: str) -> Optional[str]:
    match = pattern.search(text)
    if not match:
        return None
    value = match.group(1).strip()
    if not _CONSECUTIVE_DIGITS.search(re.sub(r"\s", "", value)):
        return None
    return value


def extract_email(text: str) -> Optional[Fact]:
    match = _EMAIL.search(text)
    if not match:
        return None
    return Fact(FactIcon.MAIL, "E-Mail", match.group(1).strip().rstrip("."))


def extract_phone(text: str) -> Optional[Fact]:
    value = _phone_value(_PHONE, text)
    return Fact(FactIcon.PHONE, "Telefon", value) if value else None


def extract_mobile(text: str) -> Optional[Fact]:
    value = _phone_value(_MOBILE, text)
    if not value or value == (_phone_value(_PHONE, text) or ""):
        return None
    return Fact(FactIcon.SMARTPHONE, "Mobil", value)


def extract_street(text: str) -> Optional[Fact]:
    match = _STREET.search(text)
    if not match:
        return None
    value = _clean(match.group(1))
    if 5 <= len(value) <= 60 and not looks_like_sentence_fragment(value):
        return Fact(FactIcon.HOME, "Straße", value)
    return None


def extract_city(text: str) -> Optional[Fact]:
    match = _CITY.search(text)
    if not match:
        return None
    value = _clean(match.group(1))
    if len(value) <= 50 and not looks_like_sentence_fragment(value):
        return Fact(FactIcon.LOCATION, "Ort", value)
    return None


def extract_customer_since(text: str) -> Optional[Fact]:
    match = _SINCE.search(text)
    return Fact(FactIcon.CALENDAR, "Kunde seit", match.group(1).strip()) if match else None


def extract_revenue(text: str) -> Optional[Fact]:
    match = _REVENUE.search(text)
    if not match:
        return None
    value = match.group(1).strip().rstrip("€").strip()
    if re.fullmatch(r"[\d.,]+", value) and re.search(r"\d", value):
        return Fact(FactIcon.PAYMENTS, "Umsatz", f"€{value}")
    return None


def extract_order_count(text: str) -> Optional[Fact]:
    match = _ORDER_COUNT.search(text)
    return Fact(FactIcon.SHOPPING_CART, "Bestellungen", match.group(1)) if match else None


def extract_last_order(text: str) -> Optional[Fact]:
    match = _LAST_ORDER.search(text)
    return Fact(FactIcon.EVENT, "Letzte Bestellung", match.group(1).strip()) if match else None


extract_payment_method = _line_field(
    _LINE + r"Zahlungsart" + _SEP + r"([^\n]{2,30})", FactIcon.CREDIT_CARD, "Zahlungsart", 30
)


def extract_tracking(text: str) -> Optional[Fact]:
    match = _TRACKING.search(text)
    return Fact(FactIcon.SHIPPING, "Tracking", match.group(1).strip()) if match else None


extract_shipping_status = _line_field(
    _LINE + r"(?:Versandstatus|Lieferstatus)" + _SEP + r"([^\n]{2,30})", FactIcon.PACKAGE, "Versandstatus", 30
)


def extract_open_tickets(text: str) -> Optional[Fact]:
    match = _OPEN_TICKETS.search(text)
    if not match or int(match.group(1)) <= 0:
        return None
    return Fact(FactIcon.TICKET, "Offene Tickets", match.group(1))


def _long_form(pattern: re.Pattern[str], icon: FactIcon, label: str, text: str) -> Optional[Fact]:
    match = pattern.search(text)
    if not match:
        return None
    value = _clean(match.group(1))
    if not value:
        return None
    return Fact(icon, label, clamp(value, LONG_VALUE_MAX))


def extract_concern(text: str) -> Optional[Fact]:
    return _long_form(_CONCERN, FactIcon.HELP, "Anliegen", text)


def extract_recommendation(text: str) -> Optional[Fact]:
    return _long_form(_RECOMMENDATION, FactIcon.RECOMMEND, "Empfehlung", text)


# Order defines the order of the resulting fact list.
FACT_EXTRACTORS: tuple[Extractor, ...] = (
    extract_customer_name,
    extract_customer_number,
    extract_company,
    extract_email,
    extract_phone,
    extract_mobile,
    extract_street,
    extract_city,
    extract_customer_since,
    extract_revenue,
    extract_order_count,
    extract_last_order,
    extract_payment_method,
    extract_tracking,
    extract_shipping_status,
    extract_open_tickets,
    extract_concern,
    extract_recommendation,
)


def extract_key_facts(text: str) -> list[Fact]:
    if not text:
        return []
    facts: list[Fact] = []
    for extractor in FACT_EXTRACTORS:
        try:
            fact = extractor(text)
        except (re.error, ValueError) as exc:
            logger.warning("Extractor %s failed: %s", extractor.__name__, exc)
            continue
        if fact is not None:
            facts.append(fact)
    return facts


_SUGGESTED_REPLY = re.compile(
    r"(?:Antwortvorschlag|Vorgeschlagene Antwort)\**[: \t]*\**[ \t]*\n(.+?)(?:\n\n---|\n\n##|\n```|\Z)",
    re.IGNORECASE | re.DOTALL,
)
_CUSTOMER_PHONE = re.compile(r"\b(?:Telefon|Tel|Mobil|Handy)\**[: \t]+\**[ \t]*([\d \t+\-/()]+)", re.IGNORECASE)


def extract_suggested_reply(text: str) -> Optional[str]:
    if not text:
        return None
    match = _SUGGESTED_REPLY.search(text)
    if not match:
        return None
    reply = match.group(1).strip()
    return reply or None


def extract_customer_phone(text: str) -> Optional[str]:
    if not text:
        return None
    match = _CUSTOMER_PHONE.search(text)
    if not match:
        return None
    phone = match.group(1).strip()
    return phone if len(phone) >= 5 else None


def parse_analysis(text: str) -> ParsedAnalysis:
    """Facts, suggested reply and customer phone from the agent's final answer."""
    text = text or ""
    structured = parse_agent_json(text)
    if structured is not None and structured.facts:
        facts = structured.facts
        from_json = True
    else:
        facts = extract_key_facts(text)
        from_json = False

    return ParsedAnalysis(
        facts=facts,
        suggested_reply=(structured.suggested_reply if structured else None) or extract_suggested_reply(text),
        customer_phone=(structured.customer_phone if structured else None) or extract_customer_phone(text),
        from_json=from_json,
    )
