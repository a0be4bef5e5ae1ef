"""
Webhook Intake Guard - idempotent admission of inbound provider callbacks.

Runs before any business handler. A callback is admitted at most once per
(provider, external_event_id): the first delivery inserts a receipt and is
ACCEPTED, replays find the existing receipt and are ALREADY_RECEIVED, and the
caller must not reprocess them. Signature failures persist nothing.
"""
from __future__ import annotations

import enum
import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.clock import as_naive_utc
from relay.core.config import settings
from relay.core.exceptions import ValidationException
from relay.core.logging import get_logger
from relay.db.models.webhook_receipt import ReceiptStatus, WebhookReceipt
from relay.domain.services.signature_verifier import (
    HmacSignatureVerifier,
    SignatureVerifier,
    raw_payload_bytes,
)

logger = get_logger(__name__)

_TERMINAL_OUTCOMES = {ReceiptStatus.PROCESSED.value, ReceiptStatus.FAILED.value}


class IntakeOutcome(str, enum.Enum):
    ACCEPTED = "accepted"
    ALREADY_RECEIVED = "already_received"
    REJECTED_SIGNATURE = "rejected_signature"


@dataclass
class IntakeResult:
    outcome: IntakeOutcome
    receipt: WebhookReceipt | None = None

    @property
    def should_process(self) -> bool:
        return self.outcome == IntakeOutcome.ACCEPTED


def compute_payload_hash(payload: bytes | str | dict[str, Any] | list[Any]) -> str:
    return hashlib.sha256(raw_payload_bytes(payload)).hexdigest()


class WebhookIntakeGuard:
    def __init__(self, db: AsyncSession, verifier: SignatureVerifier | None = None):
        self.db = db
        self.verifier = verifier if verifier is not None else HmacSignatureVerifier()

    async def admit(
        self,
        provider: str,
        external_event_id: str,
        signature: str | None,
        payload: bytes | str | dict[str, Any] | list[Any],
        computed_hash: str | None = None,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> IntakeResult:
        if not provider or not provider.strip():
            raise ValidationException("provider is required", field="provider")
        if not external_event_id or not str(external_event_id).strip():
            raise ValidationException("external_event_id is required", field="external_event_id")

        provider = provider.strip().lower()
        external_event_id = str(external_event_id).strip()
        raw = raw_payload_bytes(payload)

        if signature:
            if not self.verifier.verify(provider, signature, raw):
                logger.warning(
                    "Webhook rejected: invalid signature",
                    extra_data={"provider": provider, "external_event_id": external_event_id}
                )
                return IntakeResult(IntakeOutcome.REJECTED_SIGNATURE)

        payload_hash = computed_hash or compute_payload_hash(raw)

        # optimistic insert inside a savepoint; the unique constraint decides
        try:
            async with self.db.begin_nested():
                receipt = WebhookReceipt(
                    provider=provider,
                    external_event_id=external_event_id,
                    signature=signature,
                    payload_hash=payload_hash,
                    metadata_=dict(metadata or {}),
                    status=ReceiptStatus.RECEIVED.value,
                )
                self.db.add(receipt)
            await self.db.commit()
        except IntegrityError:
            return await self._already_received(provider, external_event_id, payload_hash)

        logger.info(
            "Webhook accepted",
            extra_data={
                "provider": provider,
                "external_event_id": external_event_id,
                "receipt_id": receipt.id,
            }
        )
        return IntakeResult(IntakeOutcome.ACCEPTED, receipt)

    async def _already_received(
        self,
        provider: str,
        external_event_id: str,
        payload_hash: str,
    ) -> IntakeResult:
        existing = (
            await self.db.execute(
                select(WebhookReceipt).where(
                    WebhookReceipt.provider == provider,
                    WebhookReceipt.external_event_id == external_event_id,
                )
                .execution_options(populate_existing=True)
            )
        ).scalar_one()

        if existing.payload_hash != payload_hash:
            logger.warning(
                "Webhook replay with a different payload",
                extra_data={
                    "provider": provider,
                    "external_event_id": external_event_id,
                    "receipt_id": existing.id,
                    "stored_hash": existing.payload_hash,
                    "replay_hash": payload_hash,
                }
            )
        else:
            logger.info(
                "Webhook already received",
                extra_data={
                    "provider": provider,
                    "external_event_id": external_event_id,
                    "receipt_id": existing.id,
                    "status": existing.status,
                }
            )
        return IntakeResult(IntakeOutcome.ALREADY_RECEIVED, existing)

    async def mark_processed(
        self,
        receipt_id: int,
        outcome: ReceiptStatus | str = ReceiptStatus.PROCESSED,
        error_message: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """
        Move a receipt from ``received`` to ``processed`` or ``failed``.

        Applies once. Returns False when the receipt was already finalised
        (or does not exist).
        """
        outcome_value = outcome.value if isinstance(outcome, ReceiptStatus) else str(outcome)
        if outcome_value not in _TERMINAL_OUTCOMES:
            raise ValidationException(
                f"Invalid receipt outcome '{outcome_value}'",
                field="outcome",
                details={"allowed": sorted(_TERMINAL_OUTCOMES)},
            )

        result = await self.db.execute(
            update(WebhookReceipt)
            .where(
                WebhookReceipt.id == receipt_id,
                WebhookReceipt.status == ReceiptStatus.RECEIVED.value,
            )
            .values(
                status=outcome_value,
                error_message=error_message,
                processed_at=as_naive_utc(now),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.commit()
            logger.info(
                "Webhook receipt already finalised",
                extra_data={"receipt_id": receipt_id, "outcome": outcome_value}
            )
            return False

        await self.db.commit()
        log = logger.warning if outcome_value == ReceiptStatus.FAILED.value else logger.info
        log(
            f"Webhook receipt marked {outcome_value}",
            extra_data={"receipt_id": receipt_id, "error": error_message}
        )
        return True

    async def find_stuck_receipts(
        self,
        older_than: timedelta | None = None,
        now: datetime | None = None,
        limit: int = 100,
    ) -> list[WebhookReceipt]:
        """Receipts still ``received`` after ``older_than`` (handler probably died)."""
        if older_than is None:
            older_than = timedelta(minutes=settings.WEBHOOK_STUCK_RECEIPT_MINUTES)
        cutoff = as_naive_utc(now) - older_than
        result = await self.db.execute(
            select(WebhookReceipt)
            .where(
                WebhookReceipt.status == ReceiptStatus.RECEIVED.value,
                WebhookReceipt.received_at < cutoff,
            )
            .order_by(WebhookReceipt.received_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())
