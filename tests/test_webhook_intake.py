"""
Tests for the webhook intake guard - idempotent admission of provider callbacks.
"""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from relay.core.clock import utcnow
from relay.core.exceptions import ValidationException
from relay.db.models.webhook_receipt import ReceiptStatus, WebhookReceipt
from relay.domain.services.signature_verifier import HmacSignatureVerifier
from relay.domain.services.webhook_intake_service import (
    IntakeOutcome,
    WebhookIntakeGuard,
    compute_payload_hash,
)


PAYLOAD = {"id": "evt_123", "type": "invoice.paid", "amount": 4200}


@pytest.fixture
def verifier() -> HmacSignatureVerifier:
    return HmacSignatureVerifier({"stripe": "whsec_test"})


@pytest.fixture
def guard(db_session, verifier) -> WebhookIntakeGuard:
    return WebhookIntakeGuard(db_session, verifier)


async def _receipt_count(db) -> int:
    return (await db.execute(select(func.count()).select_from(WebhookReceipt))).scalar_one()


class TestAdmit:

    @pytest.mark.unit
    async def test_first_delivery_is_accepted(self, guard, verifier, db_session):
        signature = verifier.sign("stripe", b'{"amount":4200,"id":"evt_123","type":"invoice.paid"}')

        result = await guard.admit("stripe", "evt_123", signature, PAYLOAD, metadata={"ip": "10.0.0.1"})

        assert result.outcome == IntakeOutcome.ACCEPTED
        assert result.should_process
        assert result.receipt.id is not None
        assert result.receipt.status == ReceiptStatus.RECEIVED.value
        assert result.receipt.payload_hash == compute_payload_hash(PAYLOAD)
        assert result.receipt.metadata_ == {"ip": "10.0.0.1"}
        assert await _receipt_count(db_session) == 1

    @pytest.mark.unit
    async def test_replay_is_already_received(self, guard, db_session):
        first = await guard.admit("stripe", "evt_123", None, PAYLOAD)
        second = await guard.admit("stripe", "evt_123", None, PAYLOAD)

        assert second.outcome == IntakeOutcome.ALREADY_RECEIVED
        assert not second.should_process
        assert second.receipt.id == first.receipt.id
        assert await _receipt_count(db_session) == 1

    @pytest.mark.unit
    async def test_replay_with_different_body_keeps_original_hash(self, guard, db_session):
        first = await guard.admit("stripe", "evt_123", None, PAYLOAD)
        second = await guard.admit("stripe", "evt_123", None, {**PAYLOAD, "amount": 1})

        assert second.outcome == IntakeOutcome.ALREADY_RECEIVED
        assert second.receipt.payload_hash == first.receipt.payload_hash
        assert await _receipt_count(db_session) == 1

    @pytest.mark.unit
    async def test_provider_name_is_normalised(self, guard, db_session):
        await guard.admit("Stripe", "evt_123", None, PAYLOAD)
        replay = await guard.admit(" stripe ", "evt_123", None, PAYLOAD)

        assert replay.outcome == IntakeOutcome.ALREADY_RECEIVED
        assert replay.receipt.provider == "stripe"

    @pytest.mark.unit
    async def test_same_event_id_from_other_provider_is_independent(self, guard, db_session):
        stripe = await guard.admit("stripe", "evt_123", None, PAYLOAD)
        github = await guard.admit("github", "evt_123", None, PAYLOAD)

        assert stripe.outcome == IntakeOutcome.ACCEPTED
        assert github.outcome == IntakeOutcome.ACCEPTED
        assert await _receipt_count(db_session) == 2

    @pytest.mark.unit
    async def test_bad_signature_persists_nothing(self, guard, verifier, db_session):
        result = await guard.admit("stripe", "evt_123", "sha256=deadbeef", PAYLOAD)

        assert result.outcome == IntakeOutcome.REJECTED_SIGNATURE
        assert result.receipt is None
        assert await _receipt_count(db_session) == 0

        # a correctly signed retry of the same event is still admitted
        raw = b'{"id":"evt_123"}'
        retry = await guard.admit("stripe", "evt_123", verifier.sign("stripe", raw), raw)
        assert retry.outcome == IntakeOutcome.ACCEPTED

    @pytest.mark.unit
    async def test_signature_over_raw_bytes(self, guard, verifier):
        raw = b'{"id": "evt_9", "type": "x"}'

        result = await guard.admit("stripe", "evt_9", verifier.sign("stripe", raw), raw)

        assert result.outcome == IntakeOutcome.ACCEPTED
        assert result.receipt.payload_hash == compute_payload_hash(raw)

    @pytest.mark.unit
    async def test_caller_supplied_hash_is_stored(self, guard):
        result = await guard.admit("stripe", "evt_123", None, PAYLOAD, computed_hash="a" * 64)
        assert result.receipt.payload_hash == "a" * 64

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "provider, external_event_id",
        [("", "evt_1"), ("   ", "evt_1"), ("stripe", ""), ("stripe", "  ")],
    )
    async def test_missing_identity_rejected(self, guard, provider, external_event_id):
        with pytest.raises(ValidationException):
            await guard.admit(provider, external_event_id, None, PAYLOAD)

    @pytest.mark.unit
    async def test_concurrent_deliveries_admit_exactly_one(self, concurrent_session_factory, verifier):
        async def deliver() -> IntakeOutcome:
            async with concurrent_session_factory() as db:
                result = await WebhookIntakeGuard(db, verifier).admit("stripe", "evt_race", None, PAYLOAD)
                return result.outcome

        outcomes = await asyncio.gather(*(deliver() for _ in range(4)))

        assert outcomes.count(IntakeOutcome.ACCEPTED) == 1
        assert outcomes.count(IntakeOutcome.ALREADY_RECEIVED) == 3
        async with concurrent_session_factory() as db:
            assert await _receipt_count(db) == 1


class TestMarkProcessed:

    @pytest.mark.unit
    async def test_mark_processed_once(self, guard, db_session):
        receipt = (await guard.admit("stripe", "evt_123", None, PAYLOAD)).receipt

        assert await guard.mark_processed(receipt.id) is True
        assert await guard.mark_processed(receipt.id) is False

        await db_session.refresh(receipt)
        assert receipt.status == ReceiptStatus.PROCESSED.value
        assert receipt.processed_at is not None

    @pytest.mark.unit
    async def test_mark_failed_records_error(self, guard, db_session):
        receipt = (await guard.admit("stripe", "evt_123", None, PAYLOAD)).receipt

        assert await guard.mark_processed(receipt.id, ReceiptStatus.FAILED, "handler crashed")

        await db_session.refresh(receipt)
        assert receipt.status == "failed"
        assert receipt.error_message == "handler crashed"

    @pytest.mark.unit
    async def test_invalid_outcome_rejected(self, guard):
        receipt = (await guard.admit("stripe", "evt_123", None, PAYLOAD)).receipt
        with pytest.raises(ValidationException):
            await guard.mark_processed(receipt.id, "received")

    @pytest.mark.unit
    async def test_unknown_receipt(self, guard):
        assert await guard.mark_processed(987654) is False

    @pytest.mark.unit
    async def test_second_finalise_keeps_receipt_loaded(self, guard):
        receipt = (await guard.admit("stripe", "evt_123", None, PAYLOAD)).receipt
        assert await guard.mark_processed(receipt.id) is True

        assert await guard.mark_processed(receipt.id, ReceiptStatus.FAILED, "late") is False

        # readable without a reload
        assert receipt.provider == "stripe"
        assert receipt.external_event_id == "evt_123"

    @pytest.mark.unit
    async def test_replay_after_processing_is_still_blocked(self, guard):
        receipt = (await guard.admit("stripe", "evt_123", None, PAYLOAD)).receipt
        await guard.mark_processed(receipt.id)

        replay = await guard.admit("stripe", "evt_123", None, PAYLOAD)
        assert replay.outcome == IntakeOutcome.ALREADY_RECEIVED
        assert replay.receipt.status == ReceiptStatus.PROCESSED.value


class TestStuckReceipts:

    @pytest.mark.unit
    async def test_finds_only_old_unfinished_receipts(self, guard):
        stuck = (await guard.admit("stripe", "evt_1", None, PAYLOAD)).receipt
        done = (await guard.admit("stripe", "evt_2", None, PAYLOAD)).receipt
        await guard.mark_processed(done.id)

        later = utcnow() + timedelta(hours=1)
        found = await guard.find_stuck_receipts(timedelta(minutes=30), now=later)
        assert [r.id for r in found] == [stuck.id]

        assert await guard.find_stuck_receipts(timedelta(minutes=30)) == []
