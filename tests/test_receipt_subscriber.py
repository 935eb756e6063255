"""Tests for the receipt ingress subscriber."""

import json

import pytest

from chatcore.services.receipt_subscriber import decode_event
from chatcore.services.store import ChatStore

from conftest import text


async def setup_direct(runtime, db):
    engine = runtime.message_engine(db)
    cid = (await engine.ensure_conversation("A", "B")).conversation_id
    m1 = (await engine.ingest_message(cid, "A", text("one"))).message_id
    m2 = (await engine.ingest_message(cid, "A", text("two"))).message_id
    return cid, m1, m2


def watermark(db, cid, user_id):
    db.expire_all()
    return ChatStore(db).get_receipt(cid, user_id)


@pytest.mark.asyncio
class TestReceiptIngressSubscriber:
    async def test_subscribed_on_start(self, started, broker):
        assert started.topics.ingress in broker.topics

    async def test_read_event_applied(self, started, db, broker):
        cid, m1, m2 = await setup_direct(started, db)
        await started.dispatcher.flush()
        broker.clear()
        await broker.publish(
            started.topics.ingress,
            json.dumps(
                {
                    "type": "read_up_to",
                    "conversation_id": cid,
                    "actor_user_id": "B",
                    "last_read_message_id": m2,
                    "ts": "2024-05-01T12:00:00Z",
                }
            ),
        )
        await started.dispatcher.flush()

        assert watermark(db, cid, "B").last_read_message_id == m2
        events = broker.events(started.topics.receipts("A"))
        assert events[0]["type"] == "read_up_to"
        assert events[0]["last_read_message_id"] == m2

    async def test_delivered_event_from_bytes(self, started, db, broker):
        cid, m1, m2 = await setup_direct(started, db)
        handler = started.subscriber.handle
        await handler(
            json.dumps(
                {
                    "type": "delivered_up_to",
                    "conversation_id": cid,
                    "actor_user_id": "B",
                    "last_delivered_message_id": m1,
                }
            ).encode()
        )
        assert watermark(db, cid, "B").last_delivered_message_id == m1

    @pytest.mark.parametrize(
        "payload",
        [
            "not json",
            "[1, 2]",
            json.dumps({"type": "typing", "conversation_id": "c", "actor_user_id": "B"}),
            json.dumps({"type": "read_up_to", "conversation_id": "c", "actor_user_id": "B"}),
            json.dumps({"type": "read_up_to", "actor_user_id": "B", "last_read_message_id": "m"}),
        ],
    )
    async def test_malformed_payloads_are_dropped(self, started, payload):
        await started.subscriber.handle(payload)

    async def test_non_member_is_dropped(self, started, db, broker):
        cid, m1, m2 = await setup_direct(started, db)
        await started.dispatcher.flush()
        broker.clear()
        await started.subscriber.handle(
            {
                "type": "read_up_to",
                "conversation_id": cid,
                "actor_user_id": "Z",
                "last_read_message_id": m2,
            }
        )
        await started.dispatcher.flush()
        assert watermark(db, cid, "Z") is None
        assert broker.published == []

    async def test_stale_event_is_ignored(self, started, db):
        cid, m1, m2 = await setup_direct(started, db)
        for mid in (m2, m1):
            await started.subscriber.handle(
                {
                    "type": "read_up_to",
                    "conversation_id": cid,
                    "actor_user_id": "B",
                    "last_read_message_id": mid,
                }
            )
        assert watermark(db, cid, "B").last_read_message_id == m2


def test_decode_event():
    assert decode_event(b'{"a": 1}') == {"a": 1}
    assert decode_event('{"a": 1}') == {"a": 1}
    assert decode_event({"a": 1}) == {"a": 1}
    with pytest.raises(ValueError):
        decode_event("[1]")
