from __future__ import annotations

import json
import uuid
from dataclasses import replace
from datetime import timedelta

import pytest

from channel_sync.domain.events.change_event import ChangeEvent
from channel_sync.domain.value_objects.cursor import cursor_after, decode_cursor, encode_cursor
from channel_sync.domain.value_objects.enums import ChangeOp
from channel_sync.infrastructure.bus.redis_pubsub import channel_topic
from channel_sync.infrastructure.bus.serializer import decode_change, encode_change
from tests.conftest import T0, make_message


def test_change_event_survives_the_wire():
    message = replace(
        make_message(client_msg_id=uuid.uuid4()),
        edited_at=T0 + timedelta(minutes=1),
    )
    event = ChangeEvent(ChangeOp.UPDATE, message)

    decoded = decode_change(encode_change(event))

    assert decoded == event


def test_envelope_shape():
    message = make_message()
    envelope = json.loads(encode_change(ChangeEvent(ChangeOp.INSERT, message)))

    assert envelope["event"] == "message.insert"
    assert envelope["data"]["id"] == str(message.id)
    assert envelope["data"]["client_msg_id"] is None


def test_decode_rejects_foreign_event_types():
    raw = json.dumps({"event": "chat.read_updated", "data": {}})

    with pytest.raises(ValueError):
        decode_change(raw)


def test_deleted_row_removes():
    message = replace(make_message(), is_deleted=True)

    assert decode_change(encode_change(ChangeEvent(ChangeOp.UPDATE, message))).removes


def test_cursor_has_no_padding_and_decodes():
    message = make_message()
    cursor = cursor_after(message)

    assert "=" not in cursor
    assert decode_cursor(cursor) == (message.created_at, message.id)
    assert decode_cursor(encode_cursor(None, message.id))[1] == message.id


def test_malformed_cursor_raises_value_error():
    with pytest.raises(ValueError):
        decode_cursor("not-a-cursor")


def test_channel_topic_is_per_channel():
    channel_id = uuid.uuid4()

    assert channel_topic("channel_messages", channel_id) == f"channel_messages:{channel_id}"
