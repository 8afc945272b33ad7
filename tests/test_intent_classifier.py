from __future__ import annotations

import pytest

from dental_comms.classification.intent import (
    IntentRule,
    KeywordIntentClassifier,
    classify_intent,
    fold_text,
)
from dental_comms.domain.models import Intent


def test_confirmation_with_accent_and_punctuation() -> None:
    result = classify_intent("Sí, confirmo mi presencia")

    assert result.intent is Intent.CONFIRMED
    assert result.confidence >= 0.9


def test_reschedule_phrase() -> None:
    result = classify_intent("necesito cambiar la hora")

    assert result.intent is Intent.RESCHEDULE
    assert result.confidence == pytest.approx(0.85)
    assert result.matched_keyword == "cambiar"


def test_cannot_attend_is_cancellation() -> None:
    result = classify_intent("no puedo ir mañana")

    assert result.intent is Intent.CANCELLED
    assert result.confidence == pytest.approx(0.9)


@pytest.mark.parametrize(
    ("text", "intent"),
    [
        ("SI", Intent.CONFIRMED),
        ("  ok   gracias ", Intent.CONFIRMED),
        ("👍", Intent.CONFIRMED),
        ("Sim, vou sim", Intent.CONFIRMED),
        ("No voy a poder ir", Intent.CANCELLED),
        ("Quiero cancelar la cita", Intent.CANCELLED),
        ("Não posso ir amanhã", Intent.CANCELLED),
        ("¿Podemos reagendar para otro día?", Intent.RESCHEDULE),
        ("Preciso mudar o horário", Intent.RESCHEDULE),
        ("Hola, buenos días", Intent.UNKNOWN),
    ],
)
def test_keyword_sets(text: str, intent: Intent) -> None:
    assert classify_intent(text).intent is intent


def test_short_keyword_does_not_match_inside_words() -> None:
    # "si" appears inside "necesito" and "ok" inside "poker".
    assert classify_intent("necesito poker").intent is Intent.UNKNOWN


def test_negated_confirmation_is_not_confirmed() -> None:
    assert classify_intent("no voy").intent is Intent.CANCELLED


def test_no_match_is_unknown_with_zero_confidence() -> None:
    result = classify_intent("")

    assert result.intent is Intent.UNKNOWN
    assert result.confidence == 0.0
    assert result.matched_keyword is None


def test_fold_text_strips_accents_and_collapses_whitespace() -> None:
    assert fold_text("  Mañana   ASISTIRÉ ") == "manana asistire"


def test_first_matching_rule_wins() -> None:
    classifier = KeywordIntentClassifier(
        [
            IntentRule(Intent.RESCHEDULE, 0.5, ("cita",)),
            IntentRule(Intent.CONFIRMED, 0.9, ("cita",)),
        ]
    )

    result = classifier.classify("Mi cita")

    assert result.intent is Intent.RESCHEDULE
    assert result.confidence == 0.5
