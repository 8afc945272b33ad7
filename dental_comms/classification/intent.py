"""Keyword intent classification for inbound patient replies.

Rules are evaluated in order (confirmation, cancellation, reschedule) and the
first rule with a matching phrase wins. Matching is accent-folded,
case-insensitive and on whole words, so "si" never matches inside
"necesito". No match is a normal outcome and yields ``Intent.UNKNOWN``.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol, Sequence

from dental_comms.domain.models import Intent, IntentResult

CONFIRMATION_KEYWORDS: tuple[str, ...] = (
    # Spanish
    "si", "sí", "si confirmo", "confirmo", "confirmado", "confirmar", "confirma",
    "voy", "asistiré", "asisto", "estaré", "allí estaré",
    "claro", "por supuesto", "seguro", "dale", "ok", "okay", "okey",
    "perfecto", "de acuerdo", "está bien", "todo bien", "presente", "yes",
    # Portuguese
    "sim", "vou", "irei", "estarei", "com certeza", "pode deixar", "beleza",
    # Emoji
    "✅", "👍", "👌",
)

CANCELLATION_KEYWORDS: tuple[str, ...] = (
    # Spanish
    "no voy", "no puedo ir", "no podré ir", "no voy a poder", "no iré", "no asistiré", "no asisto",
    "cancelar", "cancelo", "cancela", "cancelada", "imposible", "no me es posible",
    # Portuguese
    "não vou", "não posso ir", "não poderei", "impossível",
    # Emoji
    "❌", "🚫",
)

RESCHEDULE_KEYWORDS: tuple[str, ...] = (
    # Spanish
    "reagendar", "reagenda", "reagende", "reprogramar", "remarcar", "posponer", "postergar",
    "cambiar", "cambio", "mover la cita", "otro día", "otra fecha", "otro horario", "otra hora",
    "puede ser otro día", "no puedo", "no podré", "no tengo disponible", "tengo ocupado",
    # Portuguese
    "mudar", "outro dia", "outra data", "outro horário", "outra hora", "não posso",
)


def fold_text(text: str) -> str:
    """Lowercase, strip accents and collapse whitespace."""
    decomposed = unicodedata.normalize("NFKD", text.casefold())
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    return " ".join(stripped.split())


@lru_cache(maxsize=None)
def _keyword_pattern(keyword: str, negatable: bool) -> re.Pattern[str]:
    body = r"\s+".join(re.escape(part) for part in fold_text(keyword).split(" "))
    negation = r"(?<!\bno )(?<!\bnao )" if negatable else ""
    return re.compile(rf"{negation}(?<!\w){body}(?!\w)")


@dataclass(frozen=True, slots=True)
class IntentRule:
    intent: Intent
    confidence: float
    keywords: tuple[str, ...]
    # Ignore matches directly preceded by "no" ("no voy" is not a confirmation).
    negatable: bool = False

    def match(self, folded_text: str) -> str | None:
        for keyword in self.keywords:
            if _keyword_pattern(keyword, self.negatable).search(folded_text):
                return keyword
        return None


DEFAULT_RULES: tuple[IntentRule, ...] = (
    IntentRule(Intent.CONFIRMED, 0.95, CONFIRMATION_KEYWORDS, negatable=True),
    IntentRule(Intent.CANCELLED, 0.9, CANCELLATION_KEYWORDS),
    IntentRule(Intent.RESCHEDULE, 0.85, RESCHEDULE_KEYWORDS),
)

UNKNOWN_RESULT = IntentResult(intent=Intent.UNKNOWN, confidence=0.0)


class IntentClassifier(Protocol):
    def classify(self, text: str) -> IntentResult: ...


class KeywordIntentClassifier:
    """Ordered rule list; the first rule with a matching keyword wins."""

    def __init__(self, rules: Sequence[IntentRule] = DEFAULT_RULES) -> None:
        self.rules = tuple(rules)

    def classify(self, text: str) -> IntentResult:
        folded = fold_text(text or "")
        if not folded:
            return UNKNOWN_RESULT

        for rule in self.rules:
            keyword = rule.match(folded)
            if keyword is not None:
                return IntentResult(intent=rule.intent, confidence=rule.confidence, matched_keyword=keyword)
        return UNKNOWN_RESULT


_default_classifier = KeywordIntentClassifier()


def classify_intent(text: str) -> IntentResult:
    return _default_classifier.classify(text)
