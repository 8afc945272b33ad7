from __future__ import annotations

import logging

from dental_comms.adapters.whatsapp_provider import MessagingProvider
from dental_comms.channels.registry import ChannelRegistry
from dental_comms.domain.errors import NoChannelAvailable, ProviderSendFailure
from dental_comms.domain.models import SendRequest, SendResult, TriageIssue
from dental_comms.utils.phone import PhoneRules

logger = logging.getLogger(__name__)

INVALID_PHONE = "invalid_phone"
NO_CHANNEL_AVAILABLE = "no_channel_available"
PROVIDER_SEND_FAILED = "provider_send_failed"


def orchestrate_send(
    request: SendRequest,
    *,
    registry: ChannelRegistry,
    provider: MessagingProvider,
    phone_rules: PhoneRules | None = None,
) -> SendResult:
    """Normalize, allocate a channel, send once and record the outcome on the channel.

    Never raises for expected failures; the triage issue codes tell the
    caller whether to drop, requeue or retry.
    """
    rules = phone_rules or PhoneRules()

    normalized_phone = rules.normalize(request.recipient_phone, request.country)
    if not normalized_phone:
        return SendResult(
            sent=False,
            triage_issues=[
                TriageIssue(
                    code=INVALID_PHONE,
                    message="Recipient phone cannot be normalized to a dialable number.",
                    details={"phone": request.recipient_phone},
                )
            ],
            idempotency_key=request.idempotency_key,
        )

    try:
        channel = registry.allocate(request.purpose, request.country)
    except NoChannelAvailable as exc:
        return SendResult(
            sent=False,
            triage_issues=[
                TriageIssue(
                    code=NO_CHANNEL_AVAILABLE,
                    message=str(exc),
                    details={"purpose": request.purpose.value, "country": request.country},
                )
            ],
            idempotency_key=request.idempotency_key,
            normalized_phone=normalized_phone,
        )

    issue: TriageIssue | None = None
    provider_message_id: str | None = None
    try:
        outcome = provider.send_message(channel, normalized_phone, request.content, request.media_url)
        if outcome.success:
            provider_message_id = outcome.provider_message_id
        else:
            issue = TriageIssue(
                code=PROVIDER_SEND_FAILED,
                message=outcome.error or "Provider reported a failed send.",
                details={"channel_id": channel.channel_id},
            )
    except ProviderSendFailure as exc:
        issue = TriageIssue(
            code=PROVIDER_SEND_FAILED,
            message=str(exc),
            details={"channel_id": channel.channel_id},
        )
    except Exception as exc:  # provider adapters are third-party code
        logger.exception("Provider raised while sending on %s", channel.channel_id)
        issue = TriageIssue(
            code=type(exc).__name__,
            message=str(exc),
            details={"channel_id": channel.channel_id},
        )

    registry.record_outcome(channel.channel_id, success=issue is None, error=issue.message if issue else None)

    return SendResult(
        sent=issue is None,
        triage_issues=[issue] if issue else [],
        idempotency_key=request.idempotency_key,
        normalized_phone=normalized_phone,
        channel_id=channel.channel_id,
        provider_message_id=provider_message_id,
    )
