"""
Fixtures ו-helpers לבדיקות תרחיש מקצה לקצה.

מספק:
- בונה payload של Stripe וחתימה מול הסוד שמוגדר בסביבת הבדיקות
- אימותי DB על שורות התור וקבלות webhook
"""
import json

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from relay.db.models.dispatch_queue_entry import DispatchQueueEntry
from relay.db.models.webhook_receipt import WebhookReceipt
from relay.domain.services.signature_verifier import HmacSignatureVerifier


@pytest.fixture
def stripe_webhook():
    """Build a raw Stripe body plus its valid signature: (raw, signature)."""
    verifier = HmacSignatureVerifier()

    def _build(event_id: str, **data) -> tuple[bytes, str]:
        raw = json.dumps({"id": event_id, "type": "payment_intent.succeeded", "data": data}).encode()
        return raw, verifier.sign("stripe", raw)

    return _build


@pytest.fixture
def load_entry(db_session: AsyncSession):
    """Fresh copy of a dispatch row, bypassing the identity map"""
    async def _load(entry_id: int) -> DispatchQueueEntry:
        result = await db_session.execute(
            select(DispatchQueueEntry)
            .where(DispatchQueueEntry.id == entry_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    return _load


@pytest.fixture
def count_receipts(db_session: AsyncSession):
    async def _count(provider: str, external_event_id: str) -> int:
        result = await db_session.execute(
            select(func.count(WebhookReceipt.id)).where(
                WebhookReceipt.provider == provider,
                WebhookReceipt.external_event_id == external_event_id,
            )
        )
        return result.scalar_one()

    return _count
