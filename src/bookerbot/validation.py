import re


def match_any_keyword(text: str, keywords) -> bool:
    """Check if any keyword appears in text as a whole word (not substring)."""
    lower = text.lower()
    return any(re.search(rf"\b{re.escape(kw)}\b", lower) for kw in keywords)


def first_keyword(text: str, keywords) -> str:
    """Return the first keyword (in sorted order) found in text, or ""."""
    lower = text.lower()
    for kw in sorted(keywords):
        if re.search(rf"\b{re.escape(kw)}\b", lower):
            return kw
    return ""


SENTINEL_VALUES = {
    "not provided", "n/a", "na", "unknown", "none", "null", "tbd",
    "not mentioned", "not specified", "unclear", "-",
}

# Standard carrier opt-out keywords. The webhook applies these as an exact,
# whole-message match before any model sees the text.
STANDARD_OPT_OUT_KEYWORDS = frozenset({
    "stop", "stopall", "unsubscribe", "cancel", "end", "quit",
})


def clean_text(value) -> str:
    """Normalize a model- or user-supplied scalar; sentinels become ""."""
    if value is None or isinstance(value, bool):
        return ""
    cleaned = str(value).strip()
    if cleaned.lower() in SENTINEL_VALUES:
        return ""
    if "{{" in cleaned or "}}" in cleaned:
        return ""
    return cleaned


def clean_list(values) -> list[str]:
    if not isinstance(values, (list, tuple)):
        return []
    result = []
    for value in values:
        cleaned = clean_text(value)
        if cleaned and cleaned not in result:
            result.append(cleaned)
    return result


def clean_bool(value):
    """Return True/False for a definite answer, None otherwise."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lower = value.strip().lower()
        if lower in ("true", "yes"):
            return True
        if lower in ("false", "no"):
            return False
    return None


def is_opt_out_keyword(body: str) -> bool:
    """Deterministic opt-out backstop: the whole message is a carrier keyword.

    Case-insensitive; surrounding whitespace and trailing punctuation are
    ignored so "STOP." and " Stop! " both match, "please don't stop" does not.
    """
    if not body:
        return False
    normalized = body.strip().lower().rstrip(".!")
    return normalized in STANDARD_OPT_OUT_KEYWORDS


def normalize_phone(phone: str | None) -> str:
    """Return an E.164-ish phone number (US-biased fallback)."""
    if not phone:
        return ""
    raw = phone.strip()
    if raw.lower().startswith("whatsapp:"):
        raw = raw[len("whatsapp:"):]
    digits = re.sub(r"\D", "", raw)
    if not digits:
        return ""
    if len(digits) == 10:
        return "+1" + digits
    if len(digits) == 11 and digits.startswith("1"):
        return "+" + digits
    return "+" + digits


_AMOUNT_RE = re.compile(
    r"\$?\s*(\d{1,3}(?:,\d{3})+|\d+(?:\.\d+)?)\s*(k|m|thousand|million)?\b",
    re.IGNORECASE,
)
_MULTIPLIERS = {"k": 1_000, "thousand": 1_000, "m": 1_000_000, "million": 1_000_000}


def parse_amount(text: str) -> float | None:
    """Parse the first money/quantity amount in text.

    "10k" -> 10000, "$12,500" -> 12500, "2 million" -> 2000000.
    Returns None when no number is present.
    """
    if not text:
        return None
    match = _AMOUNT_RE.search(text)
    if not match:
        return None
    number = float(match.group(1).replace(",", ""))
    suffix = (match.group(2) or "").lower()
    return number * _MULTIPLIERS.get(suffix, 1)
