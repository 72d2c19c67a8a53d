"""
Tests for the grouping buffer and turn composition.

Covers:
  - Debounce window (per tenant, re-read every sweep)
  - Sequence assignment and duplicate discard
  - Media readiness wait
  - Head-of-line ordering across groups of one conversation
  - Turn rendering for the responder
"""
import pytest
from datetime import datetime, timezone

from ingestion.turns import compose_turn, message_content
from models.schemas import (
    ClaimedGroup, GroupState, InboundMessage, MessageGroup, MessageKind,
    MessagePayload, QuotedMessage, TenantSettings,
)
from tests.fakes import TENANT, image_request, make_request


class TestIngest:

    @pytest.mark.asyncio
    async def test_sequences_increase_per_conversation(self, buffer):
        a = await buffer.ingest(make_request("conv-1"))
        b = await buffer.ingest(make_request("conv-1"))
        other = await buffer.ingest(make_request("conv-2", customer_id="5215550002"))
        assert (a.sequence, b.sequence) == (1, 2)
        assert other.sequence == 1

    @pytest.mark.asyncio
    async def test_rapid_messages_share_one_group(self, buffer, clock):
        first = await buffer.ingest(make_request())
        clock.advance(2)
        second = await buffer.ingest(make_request())
        assert first.created_group is True
        assert second.created_group is False
        assert first.group_id == second.group_id

    @pytest.mark.asyncio
    async def test_duplicate_is_discarded_before_sequencing(self, buffer, store, activity):
        first = await buffer.ingest(make_request(provider_message_id="wamid.dup"))
        again = await buffer.ingest(make_request(provider_message_id="wamid.dup"))
        assert again.duplicate is True
        assert again.message_id == first.message_id

        nxt = await buffer.ingest(make_request())
        assert nxt.sequence == 2

        group = await store.get_group(first.group_id)
        assert group.member_count == 2
        record = await activity.get(TENANT, "5215550001")
        assert record.inbound_count == 2

    @pytest.mark.asyncio
    async def test_ingest_records_activity(self, buffer, activity, clock):
        await buffer.ingest(make_request())
        record = await activity.get(TENANT, "5215550001")
        assert record.inbound_count == 1
        assert record.first_inbound_at == clock.now()
        assert record.address == "5215550001"
        assert record.conversation_id == "conv-1"


class TestDebounce:

    @pytest.mark.asyncio
    async def test_window_measured_from_last_member(self, buffer, clock):
        """Messages at t=0, 2, 4 with a 5 s window become ready at t=9."""
        start = clock.now()
        for offset in (0, 2, 4):
            clock.set(start)
            clock.advance(offset)
            await buffer.ingest(make_request())

        clock.set(start)
        assert await buffer.find_ready(clock.advance(8)) == []
        ready = await buffer.find_ready(clock.advance(1))
        assert len(ready) == 1
        assert ready[0].member_count == 3

    @pytest.mark.asyncio
    async def test_tenant_window_is_reread(self, buffer, store, clock):
        await buffer.ingest(make_request())
        clock.advance(6)
        assert len(await buffer.find_ready()) == 1

        await store.upsert_tenant_settings(TenantSettings(tenant_id=TENANT, buffer_seconds=30))
        assert await buffer.find_ready() == []

    @pytest.mark.asyncio
    async def test_zero_window_is_immediately_ready(self, buffer, store):
        await store.upsert_tenant_settings(TenantSettings(tenant_id=TENANT, buffer_seconds=0))
        await buffer.ingest(make_request())
        assert len(await buffer.find_ready()) == 1


class TestMediaReadiness:

    @pytest.mark.asyncio
    async def test_pending_media_holds_group(self, buffer, store, clock):
        assignment = await buffer.ingest(image_request())
        group = await store.get_group(assignment.group_id)
        assert group.pending_media == 1

        clock.advance(6)
        assert await buffer.find_ready() == []

        await buffer.attach_media(assignment.message_id, "https://cdn.example.com/p.jpg")
        ready = await buffer.find_ready()
        assert [g.id for g in ready] == [assignment.group_id]

    @pytest.mark.asyncio
    async def test_media_wait_expires(self, buffer, clock):
        await buffer.ingest(image_request())
        clock.advance(5 + 14)
        assert await buffer.find_ready() == []
        clock.advance(1)
        assert len(await buffer.find_ready()) == 1

    @pytest.mark.asyncio
    async def test_attach_unknown_message(self, buffer):
        assert await buffer.attach_media("missing", "https://x") is None


class TestOrdering:

    @pytest.mark.asyncio
    async def test_newer_group_waits_for_older(self, buffer, store, clock):
        first = await buffer.ingest(make_request())
        clock.advance(6)
        claimed = await store.claim_group(first.group_id, "tok", clock.now())
        assert claimed is not None

        second = await buffer.ingest(make_request())
        assert second.group_id != first.group_id
        clock.advance(6)
        assert await buffer.find_ready() == []

        await store.mark_group_dispatched(first.group_id, "tok", clock.now())
        assert [g.id for g in await buffer.find_ready()] == [second.group_id]


def _message(seq: int, text: str = "", kind=MessageKind.TEXT, url=None, quoted=None) -> InboundMessage:
    return InboundMessage(
        tenant_id=TENANT, conversation_id="conv-1", customer_id="c1",
        provider_message_id=f"w{seq}", sequence=seq,
        received_at=datetime(2024, 1, 1, 9, seq, tzinfo=timezone.utc),
        payload=MessagePayload(kind=kind, text=text, media_url=url,
                               media_ready=url is not None or kind == MessageKind.TEXT,
                               quoted=quoted),
    )


class TestComposeTurn:

    def _claimed(self, messages):
        now = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
        group = MessageGroup(
            tenant_id=TENANT, conversation_id="conv-1", customer_id="c1",
            state=GroupState.CLAIMED, first_sequence=1, member_count=len(messages),
            created_at=now, last_member_received_at=now,
        )
        return ClaimedGroup(group=group, messages=messages, claim_token="t")

    def test_messages_in_sequence_order(self):
        turn = compose_turn(self._claimed([_message(2, "second"), _message(1, "first")]))
        assert [m.sequence for m in turn.messages] == [1, 2]
        assert turn.chat_text == "first\nsecond"
        assert turn.agent_text == "[09:01] first\n\n[09:02] second"

    def test_media_and_quote(self):
        quote = QuotedMessage(message_id="wamid.q", content="the blue one?")
        turn = compose_turn(self._claimed([
            _message(1, "look", quoted=quote),
            _message(2, kind=MessageKind.IMAGE, url="https://cdn/p.jpg"),
            _message(3, kind=MessageKind.AUDIO),
        ]))
        assert turn.kind == MessageKind.IMAGE
        assert turn.image_url == "https://cdn/p.jpg"
        assert turn.audio_url is None
        assert turn.quoted == quote
        assert '(replying to: "the blue one?")' in turn.agent_text
        assert "[image]" in turn.chat_text

    def test_message_content_for_captionless_media(self):
        assert message_content(_message(1, kind=MessageKind.AUDIO)) == "[audio]"
        assert message_content(_message(1, " hi ")) == "hi"
