"""
תרחיש 1 - עדיפות בתור: אירוע דחוף נמסר לפני אירוע רגיל

מכסה:
- שני אירועים זמינים, worker עם slot יחיד
- האירוע בעדיפות הגבוהה נמסר במחזור הראשון, השני במחזור הבא
"""
from datetime import timedelta

import pytest

from relay.core.clock import utcnow
from relay.db.models.dispatch_queue_entry import DispatchStatus
from relay.workers.dispatch_pool import DispatchWorkerPool


@pytest.mark.scenario
class TestPriorityDispatch:

    async def test_higher_priority_delivered_first(
        self, session_factory, event_factory, recording_transport, load_entry
    ):
        # E2 נרשם קודם וזמין מוקדם יותר, ובכל זאת E1 קודם בגלל העדיפות
        e2, e2_entry = await event_factory("invoice.issued", {"invoice": "E2"}, priority=1,
                                           available_at=utcnow() - timedelta(minutes=5))
        e1, e1_entry = await event_factory("invoice.issued", {"invoice": "E1"}, priority=5)

        pool = DispatchWorkerPool(
            session_factory,
            worker_id="worker-solo",
            transport=recording_transport,
            concurrency=1,
        )

        first = await pool.run_once()
        assert first.leased == 1
        assert recording_transport.delivered == [e1.id]
        assert (await load_entry(e2_entry.id)).status == DispatchStatus.PENDING

        second = await pool.run_once()
        assert second.delivered == 1
        assert recording_transport.delivered == [e1.id, e2.id]

        for entry_id in (e1_entry.id, e2_entry.id):
            entry = await load_entry(entry_id)
            assert entry.status == DispatchStatus.DELIVERED
            assert entry.locked_by is None
            assert entry.delivered_at is not None
