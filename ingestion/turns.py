"""
Turn composition — what the responder sees for one claimed group.

A customer who types "hi", "I want the blue one", then sends a photo is
having one turn, not three. The turn keeps the raw messages in sequence
order and also carries two flattened renderings:

  agent_text  "[HH:MM] text" blocks separated by blank lines, each annotated
              with the message it quoted, for an AI agent prompt
  chat_text   plain contents one per line, for a chat transcript
"""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel

from models.schemas import ClaimedGroup, InboundMessage, MessageKind, QuotedMessage


class Turn(BaseModel):
    group_id: str
    tenant_id: str
    conversation_id: str
    customer_id: str
    messages: list[InboundMessage]
    agent_text: str = ""
    chat_text: str = ""
    kind: MessageKind = MessageKind.TEXT
    image_url: Optional[str] = None
    audio_url: Optional[str] = None
    quoted: Optional[QuotedMessage] = None


def message_content(message: InboundMessage) -> str:
    text = message.payload.text.strip()
    if text:
        return text
    if message.payload.kind != MessageKind.TEXT:
        return f"[{message.payload.kind.value}]"
    return ""


def _first_media(messages: list[InboundMessage], kind: MessageKind) -> Optional[str]:
    for m in messages:
        if m.payload.kind == kind and m.payload.media_ready and m.payload.media_url:
            return m.payload.media_url
    return None


def _agent_block(message: InboundMessage) -> str:
    block = f"[{message.received_at.strftime('%H:%M')}] {message_content(message)}"
    quoted = message.payload.quoted
    if quoted:
        block += f'\n(replying to: "{quoted.content or quoted.kind.value}")'
    return block


def compose_turn(claimed: ClaimedGroup) -> Turn:
    messages = sorted(claimed.messages, key=lambda m: m.sequence)
    group = claimed.group

    image_url = _first_media(messages, MessageKind.IMAGE)
    audio_url = _first_media(messages, MessageKind.AUDIO)
    kinds = {m.payload.kind for m in messages}
    if MessageKind.IMAGE in kinds:
        kind = MessageKind.IMAGE
    elif MessageKind.AUDIO in kinds:
        kind = MessageKind.AUDIO
    else:
        kind = MessageKind.TEXT

    quoted = next((m.payload.quoted for m in reversed(messages) if m.payload.quoted), None)

    return Turn(
        group_id=group.id,
        tenant_id=group.tenant_id,
        conversation_id=group.conversation_id,
        customer_id=group.customer_id,
        messages=messages,
        agent_text="\n\n".join(_agent_block(m) for m in messages),
        chat_text="\n".join(c for c in (message_content(m) for m in messages) if c),
        kind=kind,
        image_url=image_url,
        audio_url=audio_url,
        quoted=quoted,
    )
