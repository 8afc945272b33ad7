from __future__ import annotations

import re
from dataclasses import dataclass

from dental_comms.domain.errors import InvalidPhone

DEFAULT_COUNTRY_CODE = "55"
DEFAULT_AREA_CODE = "11"

# ISO country -> (dialing code, accepted national number lengths)
COUNTRY_DIALING_PLANS: dict[str, tuple[str, tuple[int, ...]]] = {
    "BR": ("55", (10, 11)),
    "BO": ("591", (8,)),
    "PY": ("595", (9,)),
    "PA": ("507", (7, 8)),
    "CL": ("56", (9,)),
    "UY": ("598", (8,)),
    "CO": ("57", (10,)),
    "PE": ("51", (9,)),
}


def normalize_phone(
    phone: str | None,
    *,
    country: str | None = None,
    default_country_code: str = DEFAULT_COUNTRY_CODE,
    default_area_code: str = DEFAULT_AREA_CODE,
) -> str | None:
    """Return the canonical dialable form (digits only, country code first), else None.

    Without ``country`` the digit count decides:
    - 10 or 11 digits: prepend the default country code
    - 9 digits: prepend default country code and default area code
    - 13 digits already starting with the default country code: unchanged
    Any other length is rejected rather than guessed.
    """
    if not phone:
        return None

    digits = re.sub(r"\D", "", phone)
    if not digits:
        return None

    if country is not None:
        return _normalize_for_country(digits, country)

    if len(digits) in (10, 11):
        return f"{default_country_code}{digits}"
    if len(digits) == 9:
        return f"{default_country_code}{default_area_code}{digits}"
    if len(digits) == 13 and digits.startswith(default_country_code):
        return digits
    return None


def _normalize_for_country(digits: str, country: str) -> str | None:
    plan = COUNTRY_DIALING_PLANS.get(country.upper())
    if plan is None:
        return None
    code, national_lengths = plan

    if digits.startswith(code) and len(digits) - len(code) in national_lengths:
        return digits

    national = digits[1:] if digits.startswith("0") else digits
    if len(national) in national_lengths:
        return f"{code}{national}"
    return None


def match_dialing_plan(phone: str | None) -> str | None:
    """Digits of an already international number whose code and length fit a known plan."""
    digits = re.sub(r"\D", "", phone or "")
    for code, national_lengths in sorted(COUNTRY_DIALING_PLANS.values(), key=lambda plan: -len(plan[0])):
        if digits.startswith(code) and len(digits) - len(code) in national_lengths:
            return digits
    return None


def is_valid_phone(phone: str | None, **kwargs: str | None) -> bool:
    return normalize_phone(phone, **kwargs) is not None


@dataclass(frozen=True, slots=True)
class PhoneRules:
    """Normalization settings shared by every component that touches a phone.

    ``explicit_country`` switches from the digit-count heuristic to the
    per-country dialing plans whenever the caller knows the country. When it
    does not (inbound senders), a number that already carries a known dialing
    code is taken as is before the heuristic gets a say.
    """

    default_country_code: str = DEFAULT_COUNTRY_CODE
    default_area_code: str = DEFAULT_AREA_CODE
    explicit_country: bool = False

    def normalize(self, phone: str | None, country: str | None = None) -> str | None:
        if self.explicit_country and not country:
            matched = match_dialing_plan(phone)
            if matched is not None:
                return matched
        return normalize_phone(
            phone,
            country=country if self.explicit_country and country else None,
            default_country_code=self.default_country_code,
            default_area_code=self.default_area_code,
        )

    def require(self, phone: str | None, country: str | None = None) -> str:
        normalized = self.normalize(phone, country)
        if normalized is None:
            raise InvalidPhone(phone)
        return normalized
