"""Durable first-person facts stated in a user message."""

import re

from marketplace_assistant.core.logging import get_logger

logger = get_logger(__name__)

_SENTENCE_BREAK = re.compile(r"(?<=[.!?;])\s+|\n+")
_INTERROGATIVE = re.compile(
    r"^(?:what|what's|whats|who|whose|where|when|why|how|which|do|does|did|is|are|am|can|could|"
    r"would|should|will|have|has)\b",
    re.IGNORECASE,
)
_REMEMBER = re.compile(r"^(?:please\s+)?(?:remember|note|keep\s+in\s+mind)\s+(?:that\s+)?(?P<fact>.+)$", re.IGNORECASE)

FACT_PATTERNS = [
    re.compile(r"\bmy\s+(?:[a-z'-]+\s+){0,3}(?:is|are|was)\s+\S", re.IGNORECASE),
    re.compile(r"\bcall\s+me\s+\S", re.IGNORECASE),
    re.compile(r"\bi\s*(?:am|'m)\s+(?:a|an)\s+(?!bit\b|little\b)\S", re.IGNORECASE),
    re.compile(r"\bi\s+work\s+(?:at|for|in|as)\s+\S", re.IGNORECASE),
    re.compile(r"\bi\s+live\s+in\s+\S", re.IGNORECASE),
    re.compile(r"\bi\s+(?:really\s+)?(?:like|love|prefer|hate|enjoy|dislike)\s+\S", re.IGNORECASE),
]


class FactExtractor:
    """Sentence-level pattern matching; questions never produce facts."""

    def extract(self, message: str) -> list[str]:
        facts: list[str] = []

        for sentence in _SENTENCE_BREAK.split(message.strip()):
            sentence = sentence.strip()
            if not sentence or sentence.endswith("?") or _INTERROGATIVE.match(sentence):
                continue

            remembered = _REMEMBER.match(sentence)
            if remembered:
                fact = remembered.group("fact")
            elif any(p.search(sentence) for p in FACT_PATTERNS):
                fact = sentence
            else:
                continue

            fact = fact.strip().rstrip(".!;").strip()
            if fact and fact not in facts:
                facts.append(fact)

        if facts:
            logger.debug("Facts extracted", count=len(facts))
        return facts
