from __future__ import annotations

import pytest

from dental_comms.domain.errors import InvalidPhone
from dental_comms.utils.phone import PhoneRules, is_valid_phone, normalize_phone


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("11987654321", "5511987654321"),
        ("(11) 98765-4321", "5511987654321"),
        ("1187654321", "551187654321"),
        ("987654321", "5511987654321"),
        ("+55 11 98765-4321", "5511987654321"),
    ],
)
def test_normalize_phone_default_heuristic(raw: str, expected: str) -> None:
    assert normalize_phone(raw) == expected


@pytest.mark.parametrize("raw", ["abc", "", None, "12345", "595981123456789", "4411987654321"])
def test_normalize_phone_rejects_unparseable_input(raw: str | None) -> None:
    assert normalize_phone(raw) is None
    assert is_valid_phone(raw) is False


def test_defaults_are_configurable() -> None:
    assert normalize_phone("987654321", default_country_code="55", default_area_code="21") == "5521987654321"


@pytest.mark.parametrize(
    ("raw", "country", "expected"),
    [
        ("0981 123456", "PY", "595981123456"),
        ("+595 981 123456", "PY", "595981123456"),
        ("71234567", "BO", "59171234567"),
        ("912345678", "CL", "56912345678"),
        ("3001234567", "CO", "573001234567"),
        ("61234567", "PA", "50761234567"),
    ],
)
def test_explicit_country_uses_dialing_plan(raw: str, country: str, expected: str) -> None:
    assert normalize_phone(raw, country=country) == expected


def test_unknown_country_fails_closed() -> None:
    assert normalize_phone("0981123456", country="AR") is None


def test_phone_rules_only_use_country_when_enabled() -> None:
    heuristic = PhoneRules()
    explicit = PhoneRules(explicit_country=True)

    assert heuristic.normalize("0981123456", "PY") == "550981123456"
    assert explicit.normalize("0981123456", "PY") == "595981123456"


def test_explicit_rules_accept_international_numbers_without_country() -> None:
    explicit = PhoneRules(explicit_country=True)

    assert explicit.normalize("+595 981 123456") == "595981123456"
    assert explicit.normalize("59171234567") == "59171234567"
    assert explicit.normalize("5511987654321") == "5511987654321"
    # Local numbers still fall through to the heuristic.
    assert explicit.normalize("11987654321") == "5511987654321"
    assert PhoneRules().normalize("595981123456") is None


def test_phone_rules_require_raises_invalid_phone() -> None:
    with pytest.raises(InvalidPhone):
        PhoneRules().require("not a phone")
