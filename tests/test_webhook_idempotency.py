"""
Tests for safehaven/services/webhook_idempotency.py - the event-log store.
"""
import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from safehaven.models.identity_mapping import IdentityMapping
from safehaven.models.webhook_event import ProcessingStatus, SignatureStatus, WebhookEvent
from safehaven.services.webhook_idempotency import (
    STALE_PROCESSING_ERROR,
    AlreadyExists,
    Created,
    check_idempotency,
    claim_for_processing,
    count_by_processing_status,
    create_event_log,
    expire_stale_processing_events,
    find_events_by_related_entity,
    find_events_by_time_range,
    find_failed_events_ready_for_retry,
    find_pending_events,
    finish_processing,
    get_event_log,
    record_signature_validation,
)

PAYLOAD = '{"type":"identity.created","user_id":"u1"}'


async def _create(db, event_id="evt-1", event_type="identity.created"):
    return await create_event_log(
        db,
        event_id=event_id,
        event_type=event_type,
        payload=PAYLOAD,
        signature="abc",
        headers={"X-Provider-Event-Id": event_id},
    )


# ---------------------------------------------------------------------------
# create_event_log / check_idempotency
# ---------------------------------------------------------------------------


class TestCreateEventLog:
    async def test_first_sighting_creates_pending_row(self, db, add_event):
        result = await _create(db)

        assert isinstance(result, Created)
        event = result.event
        assert event.event_id == "evt-1"
        assert event.signature_status == SignatureStatus.PENDING.value
        assert event.processing_status == ProcessingStatus.PENDING.value
        assert event.attempt_count == 0
        assert event.processed_at is None
        assert event.headers == {"X-Provider-Event-Id": "evt-1"}

    async def test_second_create_returns_already_exists(self, db, add_event):
        await _create(db)
        result = await _create(db)

        assert isinstance(result, AlreadyExists)
        assert result.event.event_id == "evt-1"
        count = await db.scalar(select(func.count(WebhookEvent.id)))
        assert count == 1

    async def test_duplicate_of_pending_row_marks_duplicate(self, db, add_event):
        await _create(db)
        result = await _create(db)

        assert result.event.processing_status == ProcessingStatus.DUPLICATE.value
        assert result.event.processed_at is not None

    async def test_duplicate_never_overwrites_success(self, db, add_event):
        event = await add_event(db, event_id="evt-done", processing_status=ProcessingStatus.SUCCESS.value)
        result = await _create(db, event_id="evt-done")

        assert isinstance(result, AlreadyExists)
        await db.refresh(event)
        assert event.processing_status == ProcessingStatus.SUCCESS.value

    async def test_duplicate_leaves_failed_row_failed(self, db, add_event):
        event = await add_event(db, event_id="evt-f", processing_status=ProcessingStatus.FAILED.value)
        await _create(db, event_id="evt-f")

        await db.refresh(event)
        assert event.processing_status == ProcessingStatus.FAILED.value

    async def test_concurrent_creates_yield_exactly_one_row(self, session_factory):
        """Racing inserts are decided by the unique index, not by the pre-check."""

        async def attempt():
            async with session_factory() as session:
                return await _create(session, event_id="evt-race")

        results = await asyncio.gather(attempt(), attempt(), attempt())

        assert sum(isinstance(r, Created) for r in results) == 1
        assert sum(isinstance(r, AlreadyExists) for r in results) == 2
        async with session_factory() as session:
            count = await session.scalar(
                select(func.count(WebhookEvent.id)).where(WebhookEvent.event_id == "evt-race")
            )
        assert count == 1


class TestCheckIdempotency:
    async def test_unknown_event_returns_none(self, db, add_event):
        assert await check_idempotency(db, "evt-unknown") is None

    async def test_existing_event_returned(self, db, add_event):
        await _create(db)
        existing = await check_idempotency(db, "evt-1")
        assert existing is not None
        assert existing.event_id == "evt-1"

    async def test_empty_event_id_returns_none(self, db, add_event):
        assert await check_idempotency(db, "") is None

    async def test_round_trip_preserves_fields(self, db, add_event):
        await _create(db, event_type="payment.completed")
        event = await get_event_log(db, "evt-1")
        assert event.event_type == "payment.completed"
        assert event.payload == PAYLOAD
        assert event.signature == "abc"


class TestRecordSignatureValidation:
    async def test_valid(self, db, add_event):
        result = await _create(db)
        event = await record_signature_validation(db, result.event, is_valid=True)
        assert event.signature_status == SignatureStatus.VALID.value

    async def test_invalid(self, db, add_event):
        result = await _create(db)
        event = await record_signature_validation(db, result.event, is_valid=False)
        assert event.signature_status == SignatureStatus.INVALID.value


# ---------------------------------------------------------------------------
# claim / finish
# ---------------------------------------------------------------------------


class TestClaimForProcessing:
    async def test_claims_pending_row(self, db, add_event):
        event = await add_event(db)
        claimed = await claim_for_processing(db, event.id)

        assert claimed is not None
        assert claimed.processing_status == ProcessingStatus.PROCESSING.value
        assert claimed.attempt_count == 1
        assert claimed.processing_started_at is not None
        assert claimed.processed_at is None

    async def test_second_claim_loses(self, db, add_event):
        event = await add_event(db)
        assert await claim_for_processing(db, event.id) is not None
        assert await claim_for_processing(db, event.id) is None

    async def test_success_is_never_reclaimed(self, db, add_event):
        event = await add_event(db, processing_status=ProcessingStatus.SUCCESS.value, attempt_count=1)
        assert await claim_for_processing(db, event.id) is None

    async def test_failed_row_reclaimed_with_next_attempt(self, db, add_event):
        event = await add_event(
            db, processing_status=ProcessingStatus.FAILED.value, attempt_count=1,
            error_message="boom", processed_at=datetime.now(timezone.utc),
        )
        claimed = await claim_for_processing(db, event.id)

        assert claimed.attempt_count == 2
        assert claimed.error_message is None
        assert claimed.processed_at is None

    async def test_duplicate_row_is_claimable(self, db, add_event):
        event = await add_event(db, processing_status=ProcessingStatus.DUPLICATE.value)
        claimed = await claim_for_processing(db, event.id)
        assert claimed.processing_status == ProcessingStatus.PROCESSING.value

    async def test_unknown_pk(self, db, add_event):
        assert await claim_for_processing(db, uuid.uuid4()) is None


class TestFinishProcessing:
    async def test_owner_can_finish(self, db, add_event):
        event = await add_event(db)
        await claim_for_processing(db, event.id)

        assert await finish_processing(db, event.id, 1, ProcessingStatus.SUCCESS) is True
        await db.commit()
        await db.refresh(event)
        assert event.processing_status == ProcessingStatus.SUCCESS.value
        assert event.processed_at is not None

    async def test_failed_keeps_error_message(self, db, add_event):
        event = await add_event(db)
        await claim_for_processing(db, event.id)

        await finish_processing(db, event.id, 1, ProcessingStatus.FAILED, "Error processing event: x")
        await db.commit()
        await db.refresh(event)
        assert event.processing_status == ProcessingStatus.FAILED.value
        assert event.error_message == "Error processing event: x"

    async def test_stale_attempt_cannot_finish(self, db, add_event):
        event = await add_event(db)
        await claim_for_processing(db, event.id)
        assert await finish_processing(db, event.id, 7, ProcessingStatus.SUCCESS) is False

    async def test_unclaimed_row_cannot_finish(self, db, add_event):
        event = await add_event(db)
        assert await finish_processing(db, event.id, 0, ProcessingStatus.SUCCESS) is False

    async def test_finish_after_duplicate_marking(self, db, add_event):
        """A redundant delivery seen mid-processing does not steal the result."""
        event = await add_event(db, event_id="evt-dup")
        await claim_for_processing(db, event.id)
        await _create(db, event_id="evt-dup")

        assert await finish_processing(db, event.id, 1, ProcessingStatus.SUCCESS) is True

    async def test_rejects_non_terminal_status(self, db, add_event):
        with pytest.raises(ValueError):
            await finish_processing(db, uuid.uuid4(), 1, ProcessingStatus.PROCESSING)


# ---------------------------------------------------------------------------
# statistics and sweep queries
# ---------------------------------------------------------------------------


class TestCountByProcessingStatus:
    async def test_zero_filled(self, db, add_event):
        counts = await count_by_processing_status(db)
        assert counts == {s.value: 0 for s in ProcessingStatus}

    async def test_counts(self, db, add_event):
        await add_event(db)
        await add_event(db)
        await add_event(db, processing_status=ProcessingStatus.SUCCESS.value)

        counts = await count_by_processing_status(db)
        assert counts["PENDING"] == 2
        assert counts["SUCCESS"] == 1
        assert counts["FAILED"] == 0


class TestFindFailedEventsReadyForRetry:
    async def test_filters(self, db, add_event):
        old = datetime.now(timezone.utc) - timedelta(hours=1)
        ready = await add_event(
            db, processing_status=ProcessingStatus.FAILED.value, attempt_count=1, processed_at=old,
        )
        await add_event(  # exhausted
            db, processing_status=ProcessingStatus.FAILED.value, attempt_count=3, processed_at=old,
        )
        await add_event(  # too recent
            db, processing_status=ProcessingStatus.FAILED.value, attempt_count=1,
            processed_at=datetime.now(timezone.utc),
        )
        await add_event(  # never verified
            db, processing_status=ProcessingStatus.FAILED.value, attempt_count=1, processed_at=old,
            signature_status=SignatureStatus.INVALID.value,
        )

        found = await find_failed_events_ready_for_retry(
            db, max_attempts=3, retry_after=datetime.now(timezone.utc) - timedelta(minutes=5),
        )
        assert [e.id for e in found] == [ready.id]


class TestFindPendingEvents:
    async def test_only_never_attempted_valid_rows(self, db, add_event):
        old = datetime.now(timezone.utc) - timedelta(hours=1)
        orphan = await add_event(db, created_at=old)
        dup_orphan = await add_event(db, created_at=old, processing_status=ProcessingStatus.DUPLICATE.value)
        await add_event(db)  # too new
        await add_event(db, created_at=old, signature_status=SignatureStatus.PENDING.value)
        await add_event(db, created_at=old, processing_status=ProcessingStatus.DUPLICATE.value, attempt_count=1)

        found = await find_pending_events(db, older_than=datetime.now(timezone.utc) - timedelta(minutes=5))
        assert {e.id for e in found} == {orphan.id, dup_orphan.id}


class TestExpireStaleProcessingEvents:
    async def test_stale_rows_become_failed(self, db, add_event):
        stale = await add_event(
            db, processing_status=ProcessingStatus.PROCESSING.value, attempt_count=1,
            processing_started_at=datetime.now(timezone.utc) - timedelta(hours=1),
        )
        fresh = await add_event(
            db, processing_status=ProcessingStatus.PROCESSING.value, attempt_count=1,
            processing_started_at=datetime.now(timezone.utc),
        )

        expired = await expire_stale_processing_events(
            db, datetime.now(timezone.utc) - timedelta(minutes=15),
        )

        assert expired == 1
        await db.refresh(stale)
        await db.refresh(fresh)
        assert stale.processing_status == ProcessingStatus.FAILED.value
        assert stale.error_message == STALE_PROCESSING_ERROR
        assert stale.processed_at is not None
        assert fresh.processing_status == ProcessingStatus.PROCESSING.value


class TestAuditQueries:
    async def test_time_range_filters(self, db, add_event):
        await add_event(db, event_type="identity.created")
        await add_event(db, event_type="payment.completed", processing_status=ProcessingStatus.SUCCESS.value)
        now = datetime.now(timezone.utc)

        all_events = await find_events_by_time_range(db, now - timedelta(hours=1), now + timedelta(hours=1))
        payments = await find_events_by_time_range(
            db, now - timedelta(hours=1), now + timedelta(hours=1), event_type="payment.completed",
        )
        successes = await find_events_by_time_range(
            db, now - timedelta(hours=1), now + timedelta(hours=1), status="SUCCESS",
        )
        past = await find_events_by_time_range(db, now - timedelta(days=2), now - timedelta(days=1))

        assert len(all_events) == 2
        assert [e.event_type for e in payments] == ["payment.completed"]
        assert len(successes) == 1
        assert past == []

    async def test_by_related_entity(self, db, add_event):
        mapping = IdentityMapping(provider_user_id="u1", internal_user_id="int-1")
        db.add(mapping)
        await db.commit()
        linked = await add_event(db, related_entity_id=mapping.id)
        await add_event(db)

        found = await find_events_by_related_entity(db, mapping.id)
        assert [e.id for e in found] == [linked.id]
