"""
Concurrency Tests

Tests cover:
- Dialect detection for row locking
- Skip-locked batch selection on PostgreSQL, plain select on SQLite
- Parallel inbound deliveries of one channel event collapse to one record
- Pagination helper
- run_blocking inline mode
"""

import asyncio
import json
from unittest.mock import MagicMock

import pytest

from conftest import SECRETS
from ota_core.models.payload import OTAPayload
from ota_core.services.payload_store import PayloadMetadata, WireRequest
from ota_core.utils.db_helpers import get_pending_with_skip_locked, is_postgres, paginate_query, run_blocking
from ota_core.utils.security import compute_signature


class TestDialect:
    """is_postgres()"""

    def test_postgresql(self):
        db = MagicMock()
        db.bind.dialect.name = "postgresql"
        assert is_postgres(db) is True

    def test_sqlite(self, db):
        assert is_postgres(db) is False

    def test_unbound_session(self):
        db = MagicMock()
        db.bind = None
        assert is_postgres(db) is False


class TestSkipLocked:
    """get_pending_with_skip_locked()"""

    def _chain(self, dialect):
        db = MagicMock()
        db.bind.dialect.name = dialect
        query = db.query.return_value.filter.return_value
        return db, query

    def test_postgres_uses_skip_locked(self):
        db, query = self._chain("postgresql")
        get_pending_with_skip_locked(db, OTAPayload, OTAPayload.quarantined.is_(False), limit=10)

        query.with_for_update.assert_called_once_with(skip_locked=True)
        query.with_for_update.return_value.limit.assert_called_once_with(10)

    def test_sqlite_plain_select(self):
        db, query = self._chain("sqlite")
        get_pending_with_skip_locked(db, OTAPayload, OTAPayload.quarantined.is_(False), limit=5)

        query.with_for_update.assert_not_called()
        query.limit.assert_called_once_with(5)


class TestParallelInbound:
    """Concurrent duplicate deliveries"""

    async def test_same_event_delivered_concurrently(self, container, db):
        body = json.dumps({"event": "rate.update", "event_id": "evt-9", "hotel_id": "H1",
                           "room_type": "RT1", "date": "2025-03-14", "rate": 99}).encode()
        headers = {"Content-Type": "application/json",
                   "X-Agoda-Signature": compute_signature(body, SECRETS["agoda"])}

        def wire():
            return WireRequest(method="POST", url="https://pms.example.com/webhooks/channels/agoda",
                               headers=dict(headers), body=body, path="/webhooks/channels/agoda")

        results = await asyncio.gather(*(container.inbound.handle("agoda", wire()) for _ in range(3)))

        assert len({r.payload_id for r in results}) == 1
        assert len({r.correlation_id for r in results}) == 1
        assert sum(1 for r in results if not r.duplicate) == 1
        assert db.query(OTAPayload).count() == 1


class TestHelpers:
    """paginate_query / run_blocking"""

    async def test_paginate(self, container, db):
        for index in range(5):
            await container.store.store_inbound(
                WireRequest(method="POST", url="https://pms.example.com/x", headers={},
                            body=json.dumps({"n": index}).encode(), path="/x"),
                PayloadMetadata(channel="direct", correlation_id=f"C{index}"),
            )
        items, total = paginate_query(db.query(OTAPayload).order_by(OTAPayload.created_at), 2, 2)
        assert total == 5
        assert len(items) == 2

    async def test_run_blocking_inline(self):
        assert await run_blocking(lambda a, b=0: a + b, 2, b=3) == 5

    async def test_run_blocking_propagates(self):
        def boom():
            raise ValueError("nope")

        with pytest.raises(ValueError):
            await run_blocking(boom)
