from conftest import text, upsert

from chatops import notifications
from chatops.conversations import status
from chatops.conversations.models import MessageStatus, SenderIdentifiers
from chatops.gateway.messenger import SENDER_AI


def _receipt(key_id, state, **extra):
    return {
        "event": "messages.update",
        "instance": "main",
        "data": {"keyId": key_id, "status": state, **extra},
    }


def _outbound(world):
    pipeline = world.pipeline()
    pipeline.process(text("oi"))
    conversation = next(iter(world.repo.conversations.values()))
    message = world.messenger().send_text(conversation, "Olá!", sender=SENDER_AI)
    world.notifier.realtime.clear()
    world.notifier.webhooks.clear()
    return pipeline, message


def _stored(world, message_id):
    return world.repo.get_message_by_gateway_id(message_id)


def test_receipts_only_move_forward(world):
    pipeline, message = _outbound(world)

    read = pipeline.process(_receipt(message.message_id, "READ"))
    late = pipeline.process(_receipt(message.message_id, "DELIVERY_ACK"))

    assert read[0].status == status.UPDATED
    assert late[0].status == status.STALE
    assert _stored(world, message.message_id).status == MessageStatus.READ
    assert world.notifier.webhook_events() == [notifications.MESSAGE_READ]
    assert world.notifier.webhooks[0]["data"]["direction"] == "outgoing_read"


def test_numeric_status_and_message_id_fallback(world):
    pipeline, message = _outbound(world)

    outcome = pipeline.process(
        {
            "event": "messages.update",
            "instance": "main",
            "data": {"messageId": message.message_id, "status": 3},
        }
    )

    assert outcome[0].status == status.UPDATED
    assert _stored(world, message.message_id).status == MessageStatus.DELIVERED
    assert world.notifier.webhook_events() == [notifications.MESSAGE_DELIVERED]
    assert world.notifier.realtime_events() == [notifications.MESSAGE_STATUS]


def test_receipt_found_through_metadata_key(world):
    pipeline = world.pipeline()
    pipeline.process(upsert({"conversation": "x"}, message_id="LOCAL1", from_me=True))
    world.repo.messages[1].metadata["gateway_key_id"] = "GW-KEY-9"

    outcome = pipeline.process(_receipt("GW-KEY-9", "READ"))

    assert outcome[0].status == status.UPDATED
    assert world.repo.messages[1].status == MessageStatus.READ


def test_receipt_for_unknown_message_is_dropped(world):
    outcome = world.pipeline().process(_receipt("NOPE", "READ"))

    assert outcome[0].status == status.NOT_FOUND


def test_inbound_receipts_do_not_fire_webhooks(world):
    pipeline = world.pipeline()
    pipeline.process(text("oi"))
    world.notifier.webhooks.clear()

    pipeline.process(_receipt("MSG1", "READ"))

    assert world.notifier.webhook_events() == []


def test_group_read_records_participants_once(world):
    group = "5511-1539103087@g.us"
    pipeline = world.pipeline()
    pipeline.process(text("bom dia", remote_jid=group, participant="5511888@s.whatsapp.net"))
    conversation = next(iter(world.repo.conversations.values()))
    message = world.messenger().send_text(conversation, "Olá grupo", sender=SENDER_AI)

    for participant in ("5511777@s.whatsapp.net", "5511666@s.whatsapp.net", "5511777@s.whatsapp.net"):
        pipeline.process(
            _receipt(message.message_id, "READ", remoteJid=group, participant=participant)
        )

    stored = _stored(world, message.message_id)
    assert [p["jid"] for p in stored.read_participants] == [
        "5511777@s.whatsapp.net",
        "5511666@s.whatsapp.net",
    ]
    assert stored.status == MessageStatus.READ


def test_revoke_soft_deletes_and_adds_internal_note(world):
    pipeline = world.pipeline()
    pipeline.process(text("mensagem que vou apagar"))
    revoke = upsert({"protocolMessage": {"type": 0, "key": {"id": "MSG1"}}}, message_id="REVOKE1")

    first = pipeline.process(revoke)
    second = pipeline.process(revoke)

    assert first[0].status == status.UPDATED
    assert second[0].status == status.DUPLICATE
    original = _stored(world, "MSG1")
    assert original.deleted
    assert original.content == "mensagem que vou apagar"
    assert original.metadata["deleted_via_whatsapp"] is True
    assert original.metadata["deleted_from_me"] is False
    assert original.deleted_by == "5511999990000"

    note = _stored(world, "internal_wa_delete_MSG1")
    assert note.is_internal
    assert note.content.startswith("🗑️ O usuário apagou uma mensagem via WhatsApp")
    assert '"mensagem que vou apagar"' in note.content
    assert _stored(world, "REVOKE1") is None


def test_messages_delete_event_uses_raw_id(world):
    pipeline = world.pipeline()
    pipeline.process(text("apagar"))

    outcome = pipeline.process(
        {"event": "messages.delete", "instance": "main", "data": {"id": "MSG1", "fromMe": True}}
    )

    assert outcome[0].status == status.UPDATED
    assert _stored(world, "MSG1").metadata["deleted_from_me"] is True
    assert _stored(world, "MSG1").deleted_by == "me"
    assert "O atendente" in _stored(world, "internal_wa_delete_MSG1").content


def test_other_protocol_messages_are_ignored(world):
    pipeline = world.pipeline()
    pipeline.process(text("oi"))

    outcome = pipeline.process(
        upsert({"protocolMessage": {"type": 5, "key": {"id": "MSG1"}}}, message_id="EDIT1")
    )

    assert outcome[0].status == "ignored"
    assert not _stored(world, "MSG1").deleted


def test_reaction_replaces_and_removes(world):
    pipeline = world.pipeline()
    pipeline.process(text("oi"))
    target = _stored(world, "MSG1")

    def react(emoji, message_id):
        return pipeline.process(
            upsert({"reactionMessage": {"text": emoji, "key": {"id": "MSG1"}}}, message_id=message_id)
        )

    assert react("👍", "R1")[0].status == status.UPDATED
    assert react("❤️", "R2")[0].status == status.UPDATED
    reactions = world.repo.list_reactions(target.id)
    assert [(r.reactor_id, r.emoji) for r in reactions] == [("5511999990000", "❤️")]

    assert react("", "R3")[0].status == status.REMOVED
    assert world.repo.list_reactions(target.id) == []
    assert len(world.repo.messages) == 1
    assert world.notifier.realtime_events()[-1] == notifications.MESSAGE_UPDATED


def test_reactions_from_lid_and_phone_share_one_row(world):
    pipeline = world.pipeline()
    pipeline.process(text("oi"))
    target = _stored(world, "MSG1")

    pipeline.process(
        upsert(
            {"reactionMessage": {"text": "👍", "key": {"id": "MSG1"}}},
            message_id="R1",
            remote_jid="777@lid",
        )
    )
    pipeline.process(
        upsert({"reactionMessage": {"text": "🎉", "key": {"id": "MSG1"}}}, message_id="R2")
    )

    reactions = world.repo.list_reactions(target.id)
    assert [(r.reactor_id, r.emoji) for r in reactions] == [("5511999990000", "🎉")]


def test_reactor_id_rules():
    assert status.reactor_id(
        SenderIdentifiers(remote_jid="1-2@g.us", participant="5511@s.whatsapp.net")
    ) == "5511"
    assert status.reactor_id(SenderIdentifiers(remote_jid="5511@s.whatsapp.net", from_me=True)) == "me"
    assert status.reactor_id(
        SenderIdentifiers(remote_jid="123@lid", sender_pn="5511")
    ) == "5511"
    assert status.reactor_id(SenderIdentifiers(remote_jid="5522@s.whatsapp.net")) == "5522"


def test_deletion_note_truncates_long_content():
    note = status.deletion_note("x" * 200, from_me=False)

    assert note.endswith('x..."')
    assert "x" * 151 not in note
