"""Filter Intelligence Engine: free text to a bounded, confidence-scored FilterSpec.

Signals come from three places, in decreasing order of authority:

- numeric literals tied to a metric ("DA above 50", "under $300", "10k+ traffic")
- qualitative keywords ("high quality", "cheap", "popular")
- enumeration mentions (niches, countries, languages, backlink nature)

Numeric evidence replaces keyword evidence for the same field. Decisions are
logged and returned; they are never persisted and never retried.
"""

import re
from dataclasses import dataclass, field
from typing import Any

from marketplace_assistant.core.config import settings
from marketplace_assistant.core.logging import get_logger
from marketplace_assistant.domain.models import FilterDecision, FilterIntent, FilterSpec
from marketplace_assistant.domain.models.filters import ENUM_VALUES, NUMERIC_BOUNDS, RANGE_PAIRS

logger = get_logger(__name__)

INT_FIELDS = {"da_min", "da_max", "pa_min", "pa_max", "dr_min", "dr_max", "spam_min", "spam_max", "traffic_min"}
FLOAT_FIELDS = {"price_min", "price_max"}

# metric -> (min field, max field, comparator used when the text gives none)
METRIC_FIELDS: dict[str, tuple[str | None, str | None, str]] = {
    "da": ("da_min", "da_max", "min"),
    "pa": ("pa_min", "pa_max", "min"),
    "dr": ("dr_min", "dr_max", "min"),
    "spam": ("spam_min", "spam_max", "max"),
    "price": ("price_min", "price_max", "max"),
    "traffic": ("traffic_min", None, "min"),
}

_METRIC = (
    r"(?P<metric>domain\s+authority|page\s+authority|domain\s+rating|spam\s+score|spam"
    r"|(?:monthly\s+|organic\s+)?traffic|visitors|price|cost|budget|\bda\b|\bpa\b|\bdr\b)"
)
_MIN_CMP = (
    r"greater\s+than\s+or\s+equal\s+to|greater\s+than|more\s+than|higher\s+than|at\s+least"
    r"|minimum\s+of|minimum|min|above|over|starting\s+at|>=|>"
)
_MAX_CMP = (
    r"less\s+than\s+or\s+equal\s+to|less\s+than|lower\s+than|no\s+more\s+than|at\s+most"
    r"|maximum\s+of|maximum|max|below|under|up\s+to|<=|<"
)
_CMP = rf"(?P<cmp>(?<![a-z])(?:{_MIN_CMP}|{_MAX_CMP})(?![a-z]))"
_MIN_CMP_RE = re.compile(rf"^(?:{_MIN_CMP})$")


def _num(name: str) -> str:
    return rf"\$?\s*(?P<{name}>\d[\d,]*(?:\.\d+)?)\s*(?P<{name}_k>k\b)?"


_LINK = r"(?:\s*(?:score\s*)?(?:(?:is|of|should\s+be|must\s+be|needs\s+to\s+be|that\s+is)\s+)?)"

RANGE_PATTERNS = [
    re.compile(rf"{_METRIC}{_LINK}(?:between|from)\s*{_num('a')}\s*(?:and|to|-)\s*{_num('b')}"),
    re.compile(rf"{_METRIC}{_LINK}{_num('a')}\s*(?:-|to)\s*{_num('b')}"),
    re.compile(rf"(?:between|from)\s*\$\s*(?P<a>\d[\d,]*(?:\.\d+)?)\s*(?P<a_k>k\b)?\s*(?:and|to|-)\s*{_num('b')}"),
]
BOUND_AFTER = re.compile(rf"{_METRIC}{_LINK}(?:{_CMP}\s*)?{_num('a')}(?P<plus>\s*\+)?")
BOUND_BEFORE = re.compile(rf"{_CMP}\s*{_num('a')}\s*(?P<plus>\+\s*)?{_METRIC}")
PLUS_BEFORE = re.compile(rf"{_num('a')}\s*\+\s*{_METRIC}")
BARE_PRICE = [
    re.compile(rf"{_CMP}\s*\$\s*(?P<a>\d[\d,]*(?:\.\d+)?)\s*(?P<a_k>k\b)?"),
    re.compile(rf"{_CMP}\s*{_num('a')}\s*(?:dollars|usd|bucks)\b"),
]

# (name, pattern, proposals)
KEYWORD_CUES: list[tuple[str, re.Pattern[str], dict[str, Any]]] = [
    (
        "high authority",
        re.compile(r"\bhigh(?:er)?[- ]authority\b|\bstrong authority\b|\bauthoritative\b"),
        {"da_min": 60, "dr_min": 60},
    ),
    (
        "quality",
        re.compile(r"\b(?:high|good|top|best|great)[- ]quality\b|(?<!low )(?<!low-)\bquality\b"),
        {"da_min": 50, "dr_min": 50, "spam_max": 2},
    ),
    ("low spam", re.compile(r"\blow[- ]spam\b|\bno spam\b|\bspam[- ]free\b"), {"spam_max": 2}),
    (
        "cheap",
        re.compile(r"\bcheap(?:er|est)?\b|\baffordable\b|\bbudget[- ]friendly\b|\binexpensive\b|\blow[- ]cost\b"),
        {"price_max": 500},
    ),
    ("premium", re.compile(r"\bpremium\b|\bhigh[- ]end\b|\bluxury\b"), {"price_min": 1000}),
    ("mid-range", re.compile(r"\bmid[- ]?range\b|\bmoderately priced\b"), {"price_min": 500, "price_max": 1500}),
    (
        "popular",
        re.compile(r"\bpopular\b|\bhigh[- ]traffic\b|\blots of traffic\b|\bwell[- ]visited\b"),
        {"traffic_min": 10000},
    ),
]

ENUM_SYNONYMS: dict[str, dict[str, str]] = {
    "niche": {
        "tech": "tech",
        "technology": "tech",
        "health": "health",
        "healthcare": "health",
        "medical": "health",
        "finance": "finance",
        "financial": "finance",
        "fintech": "finance",
        "business": "business",
        "lifestyle": "lifestyle",
        "education": "education",
        "educational": "education",
        "travel": "travel",
        "marketing": "marketing",
        "sports": "sports",
        "sport": "sports",
        "entertainment": "entertainment",
    },
    "country": {
        "usa": "us",
        "united states": "us",
        "america": "us",
        "american": "us",
        "uk": "uk",
        "united kingdom": "uk",
        "britain": "uk",
        "british": "uk",
        "england": "uk",
        "canada": "ca",
        "canadian": "ca",
        "australia": "au",
        "australian": "au",
        "india": "india",
        "indian": "india",
        "germany": "de",
        "france": "fr",
        "spain": "es",
        "italy": "it",
        "netherlands": "nl",
        "holland": "nl",
        "brazil": "br",
        "singapore": "sg",
        "uae": "ae",
        "dubai": "ae",
        "emirates": "ae",
    },
    "language": {value: value for value in ENUM_VALUES["language"]},
    "backlink_nature": {
        "do-follow": "do-follow",
        "dofollow": "do-follow",
        "do follow": "do-follow",
        "no-follow": "no-follow",
        "nofollow": "no-follow",
        "no follow": "no-follow",
        "sponsored": "sponsored",
    },
}

_ENUM_PATTERNS = {
    name: re.compile(r"\b(" + "|".join(sorted((re.escape(k) for k in synonyms), key=len, reverse=True)) + r")\b")
    for name, synonyms in ENUM_SYNONYMS.items()
}
# "US" only counts in capitals; lowercase "us" is a pronoun
_US_UPPER = re.compile(r"\bUS\b")
EXPLICIT_ENUM = re.compile(r"\b(?P<field>niche|country|language)\s*(?::|=|is|of|to)\s*(?P<value>[a-z][a-z-]*)")
TRAILING_NICHE = re.compile(r"\b(?P<value>[a-z][a-z-]*)\s+niche\b")
_NICHE_STOPWORDS = {
    "the", "a", "an", "this", "that", "my", "any", "same", "our", "your",
    "which", "what", "specific", "particular", "right", "one",
}

AVAILABILITY = re.compile(
    r"\bonly\s+available\b|\b(?:currently\s+)?available\s+(?:sites|publishers|websites|now|only)\b|\bin\s+stock\b"
)
RESET = re.compile(
    r"\b(?:clear|reset|remove)\s+(?:all\s+)?(?:the\s+|my\s+)?filters?\b|\bstart\s+over\b|\bno\s+filters\b"
)
REPLACE = re.compile(r"\binstead\b|\bchange\s+(?:it\s+|that\s+|them\s+)?to\b|\bactually\b")
ACTION = re.compile(
    r"\b(?:show|find|filter|need|want|looking\s+for|look\s+for|search|get\s+me|give\s+me|list|display"
    r"|set|apply|narrow|limit|restrict|switch|make\s+it|i'd\s+like|i\s+would\s+like|instead|actually|change\s+to)\b"
)
INFORMATIONAL = re.compile(
    r"^\s*(?:what|how|why)\s+(?:is|are|does|do|'s)\b|^\s*what's\b|\bexplain\b|\bdefine\b"
    r"|\bmeaning\s+of\b|\bdifference\s+between\b|\bwhat\s+does\b.*\bmean\b|\btell\s+me\s+about\b"
)


def _metric_key(text: str) -> str:
    text = " ".join(text.split())
    if text in ("da", "domain authority"):
        return "da"
    if text in ("pa", "page authority"):
        return "pa"
    if text in ("dr", "domain rating"):
        return "dr"
    if text.startswith("spam"):
        return "spam"
    if text in ("price", "cost", "budget"):
        return "price"
    return "traffic"


def _parse_number(raw: str, thousands: str | None) -> float:
    value = float(raw.replace(",", ""))
    return value * 1000 if thousands else value


def _coerce(field_name: str, value: float) -> int | float:
    if field_name in FLOAT_FIELDS:
        return float(value)
    return int(round(value))


def _mask(text: str, match: re.Match[str]) -> str:
    return text[: match.start()] + " " * (match.end() - match.start()) + text[match.end() :]


def _label(field_name: str) -> str:
    return FilterSpec.wire_name(field_name)


def check_numeric(field_name: str, raw: Any, clamp: bool) -> tuple[int | float | None, str | None]:
    """Validate one numeric filter value against its declared bounds.

    With ``clamp`` an out-of-range value is pulled to the nearest bound and
    still reported; without it the value is rejected.
    """
    try:
        if isinstance(raw, bool):
            raise ValueError
        value = float(raw)
    except (TypeError, ValueError):
        return None, f"{_label(field_name)} must be a number, got {raw!r}"

    if field_name in INT_FIELDS and not value.is_integer():
        if not clamp:
            return None, f"{_label(field_name)} must be a whole number, got {raw!r}"
        value = float(round(value))

    low, high = NUMERIC_BOUNDS[field_name]
    if value < low or (high is not None and value > high):
        bounds = f"{low:g}-{high:g}" if high is not None else f">= {low:g}"
        if not clamp:
            return None, f"{_label(field_name)} {value:g} is outside {bounds}"
        clamped = max(low, value if high is None else min(high, value))
        return _coerce(field_name, clamped), f"{_label(field_name)} {value:g} is outside {bounds}; clamped to {clamped:g}"

    return _coerce(field_name, value), None


def validate_filters(params: dict[str, Any]) -> tuple[FilterSpec, list[str]]:
    """Strictly validate filter parameters (wire or Python names).

    Unknown fields, non-numeric or out-of-range numbers, unrecognized
    enumeration values and crossed min/max pairs are rejected with a reason;
    nothing is clamped. Returns the accepted subset and the reasons.
    """
    by_alias = {FilterSpec.wire_name(name): name for name in FilterSpec.model_fields}
    accepted: dict[str, Any] = {}
    errors: list[str] = []

    for key, raw in params.items():
        if raw is None or raw == "":
            continue
        name = by_alias.get(key, key)
        if name not in FilterSpec.model_fields:
            errors.append(f"{key}: not a recognized filter")
            continue

        if name in NUMERIC_BOUNDS:
            value, error = check_numeric(name, raw, clamp=False)
            if error:
                errors.append(error)
                continue
            accepted[name] = value
        elif name in ENUM_VALUES:
            value = str(raw).strip().lower()
            if value not in ENUM_VALUES[name]:
                errors.append(f"{_label(name)} '{raw}' is not one of {sorted(ENUM_VALUES[name])}")
                continue
            accepted[name] = value
        elif name == "availability":
            if isinstance(raw, bool):
                accepted[name] = raw
            elif str(raw).lower() in ("true", "false"):
                accepted[name] = str(raw).lower() == "true"
            else:
                errors.append(f"availability must be true or false, got {raw!r}")

    for low_field, high_field in RANGE_PAIRS:
        low, high = accepted.get(low_field), accepted.get(high_field)
        if low is not None and high is not None and low > high:
            errors.append(f"{_label(low_field)} {low:g} cannot exceed {_label(high_field)} {high:g}")
            del accepted[low_field], accepted[high_field]

    return FilterSpec(**accepted), errors


def current_filter_spec(current_filters: FilterSpec | dict[str, Any] | None) -> FilterSpec:
    """The filters the client says are applied; invalid entries are dropped with a warning."""
    if current_filters is None:
        return FilterSpec()
    if isinstance(current_filters, FilterSpec):
        return current_filters
    spec, errors = validate_filters(current_filters)
    if errors:
        logger.warning("Ignoring invalid current filters", errors=errors)
    return spec


@dataclass
class _Signals:
    proposal: dict[str, Any] = field(default_factory=dict)
    numeric_fields: set[str] = field(default_factory=set)
    numeric: int = 0
    keyword: int = 0
    enum: int = 0
    attempted: int = 0
    reasons: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def any(self) -> bool:
        return bool(self.numeric or self.keyword or self.enum or self.attempted)


class FilterIntelligenceEngine:
    """Translates one user message into a FilterDecision."""

    def __init__(self, threshold: float | None = None) -> None:
        self.threshold = settings.filter_confidence_threshold if threshold is None else threshold

    def extract(
        self,
        owner_id: str,
        message: str,
        current_filters: FilterSpec | dict[str, Any] | None = None,
    ) -> FilterDecision:
        current = current_filter_spec(current_filters)
        text = message.lower()

        if RESET.search(text):
            decision = self._reset_decision(current)
        else:
            decision = self._decide(message, text, current)

        logger.info("filter_decision", owner_id=owner_id, message=message, **decision.summary())
        return decision

    def _reset_decision(self, current: FilterSpec) -> FilterDecision:
        changed = [_label(name) for name in current.set_fields()]
        return FilterDecision(
            filters=FilterSpec(),
            confidence=0.9,
            reasoning="Explicit request to clear all filters.",
            validation_warnings=[] if changed else ["No filters are active; nothing to clear."],
            should_update=bool(changed),
            intent=FilterIntent.RESET,
            changed_fields=changed,
        )

    def _decide(self, message: str, text: str, current: FilterSpec) -> FilterDecision:
        signals = _Signals()
        self._keyword_signals(text, signals)
        self._numeric_signals(text, signals)
        self._enum_signals(message, text, signals)

        action = bool(ACTION.search(text))
        informational = bool(INFORMATIONAL.search(text)) and not action
        replace = bool(REPLACE.search(text))

        if not signals.any:
            return FilterDecision(
                filters=current,
                confidence=0.0,
                reasoning="No filter signals found in the message.",
                should_update=False,
                intent=FilterIntent.INFORMATIONAL if informational else FilterIntent.NONE,
            )

        base = current.set_fields()
        merged = dict(signals.proposal) if replace else {**base, **signals.proposal}
        self._check_ranges(merged, base, signals, replace)

        contradicted = [
            name
            for name, value in signals.proposal.items()
            if name in merged and name in base and self._contradicts(name, base[name], value)
        ]
        for name, value in signals.proposal.items():
            if base.get(name) == value:
                signals.warnings.append(f"{_label(name)} is already {value}")

        confidence = (0.5 if action else 0.3) + 0.2 * signals.numeric + 0.15 * (signals.keyword + signals.enum)
        if contradicted:
            confidence -= 0.1 * len(contradicted)
            signals.reasons.append(f"contradicts current {', '.join(_label(n) for n in contradicted)}")
        else:
            confidence += 0.1
            signals.reasons.append("refines the current filters" if base else "no existing filters to contradict")
        confidence -= 0.2 * len(signals.errors)
        if informational:
            confidence -= 0.4
            signals.reasons.append("reads as an informational question")
        confidence = max(0.0, min(1.0, confidence))

        filters = FilterSpec(**merged)
        changed = sorted(
            _label(name)
            for name in set(base) | set(filters.set_fields())
            if base.get(name) != filters.set_fields().get(name)
        )
        should_update = confidence >= self.threshold and bool(changed)
        if confidence < self.threshold:
            signals.reasons.append(f"confidence {confidence:.2f} below threshold {self.threshold:.2f}")

        return FilterDecision(
            filters=filters,
            confidence=confidence,
            reasoning="; ".join(signals.reasons),
            validation_errors=signals.errors,
            validation_warnings=signals.warnings,
            should_update=should_update,
            intent=FilterIntent.INFORMATIONAL if informational else FilterIntent.ACTION,
            changed_fields=changed,
        )

    @staticmethod
    def _contradicts(name: str, old: Any, new: Any) -> bool:
        if old == new:
            return False
        # Tightening an existing bound is a refinement
        if name.endswith("_min"):
            return new < old
        if name.endswith("_max"):
            return new > old
        return True

    @staticmethod
    def _check_ranges(merged: dict[str, Any], base: dict[str, Any], signals: _Signals, replace: bool) -> None:
        for low_field, high_field in RANGE_PAIRS:
            low, high = merged.get(low_field), merged.get(high_field)
            if low is None or high is None or low <= high:
                continue
            signals.errors.append(f"{_label(low_field)} {low:g} cannot exceed {_label(high_field)} {high:g}")
            for name in (low_field, high_field):
                if name in signals.proposal:
                    signals.proposal.pop(name)
                    if name in base and not replace:
                        merged[name] = base[name]
                    else:
                        merged.pop(name, None)
            # Both sides may still come from the current filters
            low, high = merged.get(low_field), merged.get(high_field)
            if low is not None and high is not None and low > high:
                merged.pop(low_field)
                merged.pop(high_field)

    @staticmethod
    def _keyword_signals(text: str, signals: _Signals) -> None:
        for name, pattern, proposals in KEYWORD_CUES:
            if not pattern.search(text):
                continue
            signals.keyword += 1
            parts = []
            for field_name, value in proposals.items():
                existing = signals.proposal.get(field_name)
                # Between keyword cues the stricter value wins
                if existing is not None:
                    value = max(existing, value) if field_name.endswith("_min") else min(existing, value)
                signals.proposal[field_name] = value
                parts.append(f"{_label(field_name)}={value}")
            signals.reasons.append(f"keyword '{name}' suggests {', '.join(parts)}")

    def _numeric_signals(self, text: str, signals: _Signals) -> None:
        working = text

        for pattern in RANGE_PATTERNS:
            for match in list(pattern.finditer(working)):
                metric = _metric_key(match.group("metric")) if "metric" in pattern.groupindex else "price"
                low_field, high_field, _ = METRIC_FIELDS[metric]
                low = _parse_number(match.group("a"), match.group("a_k"))
                high = _parse_number(match.group("b"), match.group("b_k"))
                signals.numeric += 1
                if low_field:
                    self._propose_numeric(low_field, low, match.group(0), signals)
                if high_field:
                    self._propose_numeric(high_field, high, match.group(0), signals)
                else:
                    signals.warnings.append(f"an upper bound for {metric} is not supported; ignored")
                working = _mask(working, match)

        for pattern in (BOUND_AFTER, BOUND_BEFORE, PLUS_BEFORE, *BARE_PRICE):
            for match in list(pattern.finditer(working)):
                groups = match.groupdict()
                metric = _metric_key(groups["metric"]) if groups.get("metric") else "price"
                value = _parse_number(groups["a"], groups.get("a_k"))
                cmp = (groups.get("cmp") or "").strip()
                if cmp:
                    direction = "min" if _MIN_CMP_RE.match(" ".join(cmp.split())) else "max"
                elif groups.get("plus") or pattern is PLUS_BEFORE:
                    direction = "min"
                else:
                    direction = METRIC_FIELDS[metric][2]

                low_field, high_field, _ = METRIC_FIELDS[metric]
                target = low_field if direction == "min" else high_field
                signals.numeric += 1
                if target is None:
                    signals.warnings.append(f"a {direction}imum for {metric} is not supported; ignored")
                else:
                    self._propose_numeric(target, value, match.group(0), signals)
                working = _mask(working, match)

    @staticmethod
    def _propose_numeric(field_name: str, raw: float, evidence: str, signals: _Signals) -> None:
        value, error = check_numeric(field_name, raw, clamp=True)
        if error:
            signals.errors.append(error)
        if value is None:
            return
        previous = signals.proposal.get(field_name)
        if previous is not None and field_name not in signals.numeric_fields:
            signals.reasons.append(
                f"numeric '{evidence.strip()}' overrides keyword value {previous} for {_label(field_name)}"
            )
        else:
            signals.reasons.append(f"numeric '{evidence.strip()}' sets {_label(field_name)}={value}")
        signals.proposal[field_name] = value
        signals.numeric_fields.add(field_name)

    @staticmethod
    def _enum_signals(message: str, text: str, signals: _Signals) -> None:
        found: dict[str, list[str]] = {}
        for name, pattern in _ENUM_PATTERNS.items():
            for match in pattern.finditer(text):
                found.setdefault(name, []).append(ENUM_SYNONYMS[name][match.group(1)])
        if _US_UPPER.search(message):
            found.setdefault("country", []).append("us")

        for match in EXPLICIT_ENUM.finditer(text):
            name, value = match.group("field"), match.group("value")
            if value not in ENUM_SYNONYMS[name] and value not in _NICHE_STOPWORDS:
                signals.attempted += 1
                signals.errors.append(f"{name} '{value}' is not one of {sorted(ENUM_VALUES[name])}")
        for match in TRAILING_NICHE.finditer(text):
            value = match.group("value")
            if value not in ENUM_SYNONYMS["niche"] and value not in _NICHE_STOPWORDS:
                signals.attempted += 1
                signals.errors.append(f"niche '{value}' is not one of {sorted(ENUM_VALUES['niche'])}")

        for name, values in found.items():
            distinct = list(dict.fromkeys(values))
            chosen = distinct[-1]
            if len(distinct) > 1:
                signals.warnings.append(f"several {name} values mentioned ({', '.join(distinct)}); using {chosen}")
            signals.enum += 1
            signals.proposal[name] = chosen
            signals.reasons.append(f"mention of {name} '{chosen}'")

        if AVAILABILITY.search(text):
            signals.enum += 1
            signals.proposal["availability"] = True
            signals.reasons.append("asks for available publishers only")
