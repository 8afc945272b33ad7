from __future__ import annotations

from typing import Sequence


class CommsError(RuntimeError):
    """Base class for communications engine failures."""


class InvalidPhone(CommsError):
    def __init__(self, raw: str | None) -> None:
        self.raw = raw
        super().__init__(f"Phone number cannot be normalized: {raw!r}")


class NoChannelAvailable(CommsError):
    def __init__(self, purpose: str, country: str | None = None) -> None:
        self.purpose = purpose
        self.country = country
        where = f" (country hint {country})" if country else ""
        super().__init__(f"No active channel with remaining quota for purpose={purpose}{where}")


class ProviderSendFailure(CommsError):
    """Raised when the messaging provider rejects or times out a send."""


class EligibilityDenied(CommsError):
    def __init__(self, reasons: Sequence[str]) -> None:
        self.reasons = list(reasons)
        super().__init__("Post-attendance send blocked: " + ", ".join(self.reasons))


class InvalidTransition(CommsError):
    def __init__(self, current: str, requested: str) -> None:
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move from {current} to {requested}")


class ChannelInUse(CommsError):
    """Raised when removing a channel that has not been disconnected."""


class UnknownChannel(CommsError):
    pass


class UnknownJob(CommsError):
    pass


class UnknownRescheduleRequest(CommsError):
    pass
