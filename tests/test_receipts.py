"""Tests for watermark receipts and unread counts."""

from datetime import datetime

import pytest

from chatcore.core.errors import Forbidden, NotFound
from chatcore.models import chat as chat_model
from chatcore.services.receipts_service import MAX_CAS_ATTEMPTS, unread_count
from chatcore.services.store import ChatStore

from conftest import text


async def direct_with_messages(runtime, db, count, sender="A", peer="B"):
    engine = runtime.message_engine(db)
    cid = (await engine.ensure_conversation(sender, peer)).conversation_id
    messages = [await engine.ingest_message(cid, sender, text(f"m{i}")) for i in range(count)]
    return cid, [m.message_id for m in messages]


@pytest.mark.asyncio
class TestSubmitRead:
    async def test_out_of_order_receipt_is_ignored(self, started, db, broker):
        cid, (m1, m2, m3) = await direct_with_messages(started, db, 3)
        receipts = started.receipt_engine(db)

        assert await receipts.submit_read(cid, "B", m3) is True
        await started.dispatcher.flush()
        broker.clear()

        assert await receipts.submit_read(cid, "B", m1) is False
        await started.dispatcher.flush()
        assert ChatStore(db).get_receipt(cid, "B").last_read_message_id == m3
        assert broker.published == []

    async def test_same_watermark_is_noop(self, started, db):
        cid, (m1,) = await direct_with_messages(started, db, 1)
        receipts = started.receipt_engine(db)
        assert await receipts.submit_read(cid, "B", m1) is True
        assert await receipts.submit_read(cid, "B", m1) is False

    async def test_watermark_only_moves_forward(self, started, db):
        cid, ids = await direct_with_messages(started, db, 5)
        receipts = started.receipt_engine(db)
        store = ChatStore(db)
        accepted = []
        for mid in [ids[1], ids[0], ids[3], ids[2], ids[4], ids[3]]:
            if await receipts.submit_read(cid, "B", mid):
                accepted.append(mid)
            current = store.get_receipt(cid, "B").last_read_message_id
            assert current == max(accepted)
        assert accepted == [ids[1], ids[3], ids[4]]

    async def test_non_ulid_ids_compare_by_server_ts(self, started, db):
        engine = started.message_engine(db)
        cid = (await engine.ensure_conversation("A", "B")).conversation_id
        # "zz" is older but sorts after "aa"
        await engine.ingest_message(cid, "A", text("old"), client_message_id="zz-older")
        await engine.ingest_message(cid, "A", text("new"), client_message_id="aa-newer")
        receipts = started.receipt_engine(db)

        assert await receipts.submit_read(cid, "B", "zz-older") is True
        assert await receipts.submit_read(cid, "B", "aa-newer") is True
        assert await receipts.submit_read(cid, "B", "zz-older") is False
        assert ChatStore(db).get_receipt(cid, "B").last_read_message_id == "aa-newer"

    async def test_equal_server_ts_ties_break_on_id(self, started, db):
        engine = started.message_engine(db)
        cid = (await engine.ensure_conversation("A", "B")).conversation_id
        ts = datetime(2024, 1, 1, 12, 0, 0)
        for mid in ("tie-1", "tie-2"):
            db.add(
                chat_model.Message(
                    message_id=mid, conversation_id=cid, sender_id="A", server_ts=ts, type="text", text=mid
                )
            )
        db.commit()
        receipts = started.receipt_engine(db)
        assert await receipts.submit_read(cid, "B", "tie-2") is True
        assert await receipts.submit_read(cid, "B", "tie-1") is False
        assert ChatStore(db).get_receipt(cid, "B").last_read_message_id == "tie-2"

    async def test_rejections_never_raise(self, started, db):
        cid, (m1,) = await direct_with_messages(started, db, 1)
        other_cid, (foreign,) = await direct_with_messages(started, db, 1, sender="D", peer="E")
        receipts = started.receipt_engine(db)

        assert await receipts.submit_read(cid, "Z", m1) is False
        assert await receipts.submit_read("missing", "B", m1) is False
        assert await receipts.submit_read(cid, "B", "no-such-message") is False
        assert await receipts.submit_read(cid, "B", foreign) is False
        assert ChatStore(db).get_receipt(cid, "B") is None
        assert ChatStore(db).get_receipt(cid, "Z") is None

    async def test_delivered_and_read_are_independent(self, started, db):
        cid, (m1, m2) = await direct_with_messages(started, db, 2)
        receipts = started.receipt_engine(db)
        assert await receipts.submit_delivered(cid, "B", m2) is True
        assert await receipts.submit_read(cid, "B", m1) is True

        service = started.conversation_service(db)
        assert service.message_status(m1, "A").status == "read"
        assert service.message_status(m2, "A").status == "delivered"

        receipt = ChatStore(db).get_receipt(cid, "B")
        assert receipt.last_delivered_message_id == m2
        assert receipt.last_read_message_id == m1
        assert receipt.last_read_at is not None

    async def test_delivered_event_goes_to_peers(self, started, db, broker):
        cid, (m1,) = await direct_with_messages(started, db, 1)
        await started.dispatcher.flush()
        broker.clear()
        await started.receipt_engine(db).submit_delivered(cid, "B", m1)
        await started.dispatcher.flush()
        events = broker.events(started.topics.receipts("A"))
        assert events[0]["type"] == "delivered_up_to"
        assert events[0]["last_delivered_message_id"] == m1
        assert broker.events(started.topics.conversations("B")) == []

    async def test_group_partial_read(self, started, db):
        engine = started.message_engine(db)
        view = engine.create_group("A", ["B", "D", "E"])
        cid = view.conversation_id
        m = (await engine.ingest_message(cid, "A", text("hello team"))).message_id
        receipts = started.receipt_engine(db)
        await receipts.submit_read(cid, "B", m)
        await receipts.submit_read(cid, "D", m)
        await receipts.submit_delivered(cid, "E", m)

        report = started.conversation_service(db).message_status(m, "A")
        assert report.status == "delivered"
        assert report.delivered_count == 3
        assert report.read_count == 2
        assert report.member_count_excluding_sender == 3
        assert report.is_fully_read is False


@pytest.mark.asyncio
class TestConcurrentWatermarks:
    async def test_insert_collision_is_reevaluated(
        self, started, db, session_factory, monkeypatch
    ):
        cid, (m1, m2, m3) = await direct_with_messages(started, db, 3)
        receipts = started.receipt_engine(db)
        other = session_factory()
        original_insert = receipts.store.insert_watermark

        def insert_after_other_writer(conversation_id, user_id, kind, message_id, at):
            ChatStore(other).insert_watermark(conversation_id, user_id, kind, m1, at)
            return original_insert(conversation_id, user_id, kind, message_id, at)

        monkeypatch.setattr(receipts.store, "insert_watermark", insert_after_other_writer)
        assert await receipts.submit_read(cid, "B", m3) is True
        other.close()

        db.expire_all()
        assert ChatStore(db).get_receipt(cid, "B").last_read_message_id == m3

    async def test_lost_update_retries_against_newer_row(
        self, started, db, session_factory, monkeypatch
    ):
        cid, (m1, m2, m3) = await direct_with_messages(started, db, 3)
        receipts = started.receipt_engine(db)
        assert await receipts.submit_read(cid, "B", m1) is True
        other = session_factory()
        original_cas = receipts.store.compare_and_set_watermark
        attempts = []

        def cas_after_other_writer(conversation_id, user_id, kind, expected, message_id, at):
            attempts.append((expected, message_id))
            if len(attempts) == 1:
                ChatStore(other).compare_and_set_watermark(
                    conversation_id, user_id, kind, expected, m2, at
                )
            return original_cas(conversation_id, user_id, kind, expected, message_id, at)

        monkeypatch.setattr(receipts.store, "compare_and_set_watermark", cas_after_other_writer)
        assert await receipts.submit_read(cid, "B", m3) is True
        other.close()

        assert attempts == [(m1, m3), (m2, m3)]
        db.expire_all()
        assert ChatStore(db).get_receipt(cid, "B").last_read_message_id == m3

    async def test_lost_update_to_newer_watermark_is_stale(
        self, started, db, broker, session_factory, monkeypatch
    ):
        cid, (m1, m2, m3) = await direct_with_messages(started, db, 3)
        receipts = started.receipt_engine(db)
        assert await receipts.submit_read(cid, "B", m1) is True
        await started.dispatcher.flush()
        broker.clear()
        other = session_factory()
        original_cas = receipts.store.compare_and_set_watermark
        attempts = []

        def cas_after_other_writer(conversation_id, user_id, kind, expected, message_id, at):
            attempts.append(message_id)
            if len(attempts) == 1:
                ChatStore(other).compare_and_set_watermark(
                    conversation_id, user_id, kind, expected, m3, at
                )
            return original_cas(conversation_id, user_id, kind, expected, message_id, at)

        monkeypatch.setattr(receipts.store, "compare_and_set_watermark", cas_after_other_writer)
        assert await receipts.submit_read(cid, "B", m2) is False
        await started.dispatcher.flush()
        other.close()

        assert attempts == [m2]
        assert broker.published == []
        db.expire_all()
        assert ChatStore(db).get_receipt(cid, "B").last_read_message_id == m3

    async def test_contended_watermark_gives_up(self, started, db, monkeypatch):
        cid, (m1, m2) = await direct_with_messages(started, db, 2)
        receipts = started.receipt_engine(db)
        assert await receipts.submit_read(cid, "B", m1) is True
        attempts = []

        def always_lose(*args):
            attempts.append(args)
            return False

        monkeypatch.setattr(receipts.store, "compare_and_set_watermark", always_lose)
        assert await receipts.submit_read(cid, "B", m2) is False
        assert len(attempts) == MAX_CAS_ATTEMPTS


@pytest.mark.asyncio
class TestUnreadCount:
    async def test_counts_messages_after_watermark(self, started, db):
        cid, (m1, m2, m3) = await direct_with_messages(started, db, 3)
        store = ChatStore(db)
        assert unread_count(store, cid, "B") == 3
        assert unread_count(store, cid, "A") == 0

        await started.receipt_engine(db).submit_read(cid, "B", m1)
        assert unread_count(store, cid, "B") == 2

        await started.message_engine(db).ingest_message(cid, "B", text("reply"))
        assert unread_count(store, cid, "A") == 1
        assert unread_count(store, cid, "B") == 2


@pytest.mark.asyncio
class TestMarkAsRead:
    async def test_defaults_to_newest(self, started, db):
        cid, (m1, m2) = await direct_with_messages(started, db, 2)
        result = await started.receipt_engine(db).mark_as_read(cid, "B")
        assert result.advanced is True
        assert result.last_read_message_id == m2
        assert result.unread_count == 0

    async def test_explicit_id(self, started, db):
        cid, (m1, m2) = await direct_with_messages(started, db, 2)
        result = await started.receipt_engine(db).mark_as_read(cid, "B", m1)
        assert result.last_read_message_id == m1
        assert result.unread_count == 1

    async def test_empty_conversation(self, started, db):
        cid, _ = await direct_with_messages(started, db, 0)
        result = await started.receipt_engine(db).mark_as_read(cid, "B")
        assert result.advanced is False
        assert result.last_read_message_id is None
        assert result.unread_count == 0

    async def test_errors_are_raised(self, started, db):
        cid, (m1,) = await direct_with_messages(started, db, 1)
        receipts = started.receipt_engine(db)
        with pytest.raises(Forbidden):
            await receipts.mark_as_read(cid, "Z")
        with pytest.raises(NotFound):
            await receipts.mark_as_read("missing", "B")
        with pytest.raises(NotFound):
            await receipts.mark_as_read(cid, "B", "no-such-message")

    async def test_mark_as_delivered(self, started, db):
        cid, (m1,) = await direct_with_messages(started, db, 1)
        receipts = started.receipt_engine(db)
        result = await receipts.mark_as_delivered(cid, "B", m1)
        assert result.advanced is True
        assert result.last_delivered_message_id == m1
        with pytest.raises(NotFound):
            await receipts.mark_as_delivered(cid, "B", "nope")
