"""
Inbound delivery pipeline.

For every change in a provider delivery:
    attribute to a tenant (by phone_number_id)
    -> for each message, in envelope order:
       classify -> relay media -> upsert contact -> persist message

Nothing here raises to the HTTP layer. Unattributable changes are dropped
(the provider would otherwise redeliver the batch forever), and a failure in
one message is logged and does not stop the rest of the batch.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from waba_inbox.classifier import MediaSeed, classify
from waba_inbox.config import settings
from waba_inbox.media import MediaRelay, RelayResult
from waba_inbox.metrics import record_media_relay, record_message_outcome
from waba_inbox.schemas import Change, ChangeValue, Entry, RawContact, RawMessage, WebhookPayload
from waba_inbox.storage import create_message, get_message_by_id, get_tenant_by_channel_id, upsert_contact
from waba_inbox.utils import epoch_to_iso, utc_now_iso

logger = logging.getLogger(__name__)

CREATED = "created"
DUPLICATE = "duplicate"
FAILED = "failed"


@dataclass
class IngestReport:
    """Per-delivery tally, used for the request log line and tests."""
    received: int = 0
    created: int = 0
    duplicates: int = 0
    failed: int = 0
    dropped: int = 0
    no_channel: int = 0
    unknown_tenant: int = 0
    channel_ids: list[str] = field(default_factory=list)
    tenant_ids: list[str] = field(default_factory=list)

    def add(self, outcome: str) -> None:
        if outcome == CREATED:
            self.created += 1
        elif outcome == DUPLICATE:
            self.duplicates += 1
        else:
            self.failed += 1

    @property
    def result(self) -> str:
        if self.tenant_ids or not (self.no_channel or self.unknown_tenant):
            return "processed"
        if self.unknown_tenant:
            return "unknown_tenant"
        return "no_channel"

    def as_log_data(self) -> dict[str, Any]:
        return {
            "channel_id": ",".join(self.channel_ids) or None,
            "tenant_id": ",".join(self.tenant_ids) or None,
            "received": self.received,
            "stored": self.created,
            "duplicates": self.duplicates,
            "failed": self.failed,
            "dropped": self.dropped,
            "result": self.result,
        }


def contact_names(raw_contacts: list[Any]) -> dict[str, str]:
    """wa_id -> profile name, skipping malformed or nameless entries."""
    names: dict[str, str] = {}
    for raw in raw_contacts:
        try:
            contact = RawContact.model_validate(raw)
        except ValidationError:
            continue
        if contact.profile and contact.profile.name:
            names[contact.wa_id] = contact.profile.name
    return names


async def process_envelope(db: Session, payload: WebhookPayload, relay: MediaRelay) -> IngestReport:
    """
    Ingest every change of one delivery. Never raises.

    Entries and changes are validated one at a time, so a malformed change
    only drops itself.
    """
    report = IngestReport()
    for raw_entry in payload.entry:
        try:
            entry = Entry.model_validate(raw_entry)
        except ValidationError as e:
            logger.warning(f"Skipping malformed entry: {e.error_count()} validation error(s)")
            continue
        for raw_change in entry.changes:
            try:
                change = Change.model_validate(raw_change)
            except ValidationError as e:
                logger.warning(f"Skipping malformed change: {e.error_count()} validation error(s)")
                continue
            if change.value is None or not change.value.messages:
                # statuses, errors and other non-message callbacks
                continue
            await _process_change(db, change.value, relay, report)

    logger.info("Webhook delivery processed", extra=report.as_log_data())
    return report


async def _process_change(db: Session, value: ChangeValue, relay: MediaRelay, report: IngestReport) -> None:
    report.received += len(value.messages)

    channel_id = value.metadata.phone_number_id if value.metadata else None
    if not channel_id:
        logger.error("No phone_number_id in webhook payload")
        report.no_channel += 1
        report.dropped += len(value.messages)
        return
    report.channel_ids.append(channel_id)

    try:
        tenant = get_tenant_by_channel_id(db, channel_id)
    except Exception:
        db.rollback()
        logger.exception(f"Tenant lookup failed for phone_number_id: {channel_id}")
        tenant = None

    if tenant is None:
        # Acknowledged anyway: a non-2xx would make the provider retry the batch
        logger.error(f"No tenant found for phone_number_id: {channel_id}")
        report.unknown_tenant += 1
        report.dropped += len(value.messages)
        return
    report.tenant_ids.append(tenant.id)

    names = contact_names(value.contacts)
    for raw in value.messages:
        outcome = await _process_message(db, tenant, raw, names, relay)
        record_message_outcome(outcome)
        report.add(outcome)


async def _process_message(db: Session, tenant, raw: Any, names: dict[str, str], relay: MediaRelay) -> str:
    try:
        message = RawMessage.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Skipping malformed message: {e.error_count()} validation error(s)")
        return FAILED

    try:
        if get_message_by_id(db, message.id) is not None:
            # redelivery: no relay, no contact refresh
            logger.info(f"Duplicate message detected: {message.id}")
            return DUPLICATE

        timestamp = epoch_to_iso(message.timestamp)
        classification = classify(message)
        logger.info(f"Processing {classification.message_type} message {message.id} from {message.from_phone}")

        media_data = None
        if classification.media is not None:
            media_data = await _relay_media(relay, tenant, message, classification.media)

        display_name = names.get(message.from_phone) or message.from_phone
        if not upsert_contact(db, phone=message.from_phone, name=display_name, last_active=timestamp):
            logger.warning(f"Contact not updated for {message.from_phone}, storing message anyway")

        success, is_duplicate = create_message(
            db=db,
            message_id=message.id,
            sender_id=message.from_phone,
            receiver_id=tenant.id,
            content=classification.content,
            timestamp=timestamp,
            message_type=classification.message_type,
            media_data=media_data,
        )
    except Exception:
        db.rollback()
        logger.exception(f"Failed to process message {message.id}")
        return FAILED

    if not success:
        return FAILED
    return DUPLICATE if is_duplicate else CREATED


async def _relay_media(relay: MediaRelay, tenant, message: RawMessage, seed: MediaSeed) -> dict[str, Any]:
    try:
        result = await relay.relay(
            media_id=seed.id or "",
            access_token=tenant.access_token,
            api_version=tenant.api_version or settings.DEFAULT_API_VERSION,
            mime_type=seed.mime_type,
            owner_key=message.from_phone,
        )
    except Exception as e:
        logger.exception(f"Unexpected media relay error for message {message.id}")
        result = RelayResult.failure(f"Unexpected relay error: {e}")

    if result.ok:
        record_media_relay("uploaded")
    else:
        record_media_relay("skipped" if result.skipped else "failed")
        logger.warning(f"Media for message {message.id} not relayed: {result.error}")

    upload_timestamp: Optional[str] = utc_now_iso() if result.ok else None
    return seed.to_descriptor(result.url, upload_timestamp, result.error)
