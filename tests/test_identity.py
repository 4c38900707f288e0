from datetime import timedelta

from conftest import text

from chatops.channels import EvolutionAdapter
from chatops.conversations import schemas
from chatops.conversations.identity import IdentityResolver, group_only_id
from chatops.conversations.models import ConversationMode, MessageStatus


def _ids(payload):
    adapter = EvolutionAdapter()
    event = adapter.parse_events(payload)[0]
    return adapter.extract_identifiers(event)


def _resolver(world):
    return IdentityResolver(world.repo, world.gateway, clock=world.clock)


def _instance(world):
    return world.repo.get_instance_by_name("main")


def _outbound_contact(world, phone, minutes_ago=5):
    repo = world.repo
    instance = _instance(world)
    contact = repo.create_contact(instance.id, phone)
    conversation, _ = repo.get_or_create_conversation(
        instance.id,
        contact.id,
        sector_id=None,
        mode=ConversationMode.AI,
        unread_count=0,
        last_message_at=world.clock(),
        preview="",
    )
    repo.insert_message(
        schemas.NewMessage(
            conversation_id=conversation.id,
            message_id=f"out-{phone}",
            remote_jid=f"{phone}@s.whatsapp.net",
            content="Olá",
            is_from_me=True,
            status=MessageStatus.SENT,
            metadata={"sender": "human"},
            timestamp=world.clock() - timedelta(minutes=minutes_ago),
        )
    )
    return contact


def test_new_sender_creates_contact_with_push_name(world):
    resolved = _resolver(world).resolve(_instance(world), _ids(text("oi")))

    assert resolved.created
    assert resolved.contact.phone_number == "5511999990000"
    assert resolved.contact.name == "Maria"
    assert resolved.contact.remote_jid is None


def test_sender_id_links_transient_identity_to_existing_contact(world):
    resolver = _resolver(world)
    instance = _instance(world)
    first = resolver.resolve(instance, _ids(text("oi"))).contact

    second = resolver.resolve(
        instance,
        _ids(
            text(
                "de novo",
                message_id="MSG2",
                remote_jid="123456789@lid",
                senderPn="5511999990000@s.whatsapp.net",
            )
        ),
    )

    assert second.matched_by == "sender"
    assert second.contact.id == first.id
    assert second.contact.remote_jid == "123456789@lid"
    assert second.contact.metadata["lid_id"] == "123456789"
    assert second.contact.alternate_ids == ["5511999990000", "123456789"]

    third = resolver.resolve(instance, _ids(text("só lid", message_id="MSG3", remote_jid="123456789@lid")))
    assert third.contact.id == first.id
    assert len(world.repo.contacts) == 1


def test_sender_id_is_tried_when_explicit_phone_is_unknown(world):
    resolver = _resolver(world)
    instance = _instance(world)
    known = resolver.resolve(instance, _ids(text("oi"))).contact

    resolved = resolver.resolve(
        instance,
        _ids(
            text(
                "outro aparelho",
                message_id="MSG2",
                remote_jid="424242@lid",
                senderPn="5511999990000@s.whatsapp.net",
                phone_number="+55 11 98888-0000",
            )
        ),
    )

    assert resolved.matched_by == "sender"
    assert resolved.contact.id == known.id
    assert len(world.repo.contacts) == 1


def test_canonical_phone_upgrades_from_transient_to_real_number(world):
    resolver = _resolver(world)
    instance = _instance(world)
    created = resolver.resolve(instance, _ids(text("oi", remote_jid="999@lid"))).contact
    assert created.phone_number == "999"

    upgraded = resolver.resolve(
        instance,
        _ids(
            text(
                "oi",
                message_id="MSG2",
                remote_jid="999@lid",
                senderPn="5521988887777@s.whatsapp.net",
            )
        ),
    ).contact

    assert upgraded.id == created.id
    assert upgraded.phone_number == "5521988887777"
    assert "999" in upgraded.alternate_ids


def test_meaningless_push_name_is_not_stored(world):
    resolved = _resolver(world).resolve(_instance(world), _ids(text("oi", push_name="Você")))

    assert resolved.contact.name is None


def test_heuristic_links_single_recent_outbound_contact(world):
    target = _outbound_contact(world, "5511911112222")

    resolved = _resolver(world).resolve(_instance(world), _ids(text("oi", remote_jid="777@lid")))

    assert resolved.matched_by == "heuristic"
    assert resolved.contact.id == target.id
    assert resolved.contact.metadata["lid_id"] == "777"
    assert resolved.contact.remote_jid == "777@lid"


def test_heuristic_skips_when_ambiguous(world):
    _outbound_contact(world, "5511911112222")
    _outbound_contact(world, "5511933334444", minutes_ago=10)

    resolved = _resolver(world).resolve(_instance(world), _ids(text("oi", remote_jid="777@lid")))

    assert resolved.created
    assert resolved.contact.phone_number == "777"


def test_heuristic_ignores_old_outbound_messages(world):
    _outbound_contact(world, "5511911112222", minutes_ago=45)

    resolved = _resolver(world).resolve(_instance(world), _ids(text("oi", remote_jid="777@lid")))

    assert resolved.created


def test_group_contact_uses_gateway_metadata(world):
    full_jid = "5511999990000-1539103087@g.us"
    world.gateway.groups[full_jid] = {"name": "Equipe Vendas", "picture_url": "https://pic"}
    resolver = _resolver(world)
    payload = text(
        "bom dia",
        remote_jid=full_jid,
        participant="5511888887777@s.whatsapp.net",
    )

    created = resolver.resolve(_instance(world), _ids(payload))
    again = resolver.resolve(_instance(world), _ids(payload))

    assert created.created
    assert created.contact.is_group
    assert created.contact.phone_number == "1539103087"
    assert created.contact.remote_jid == "1539103087@g.us"
    assert created.contact.name == "Equipe Vendas"
    assert created.contact.metadata["full_jid"] == full_jid
    assert again.matched_by == "group"
    assert again.contact.id == created.contact.id


def test_group_only_id():
    assert group_only_id("5541999-1539103087@g.us") == "1539103087"
    assert group_only_id("1539103087@g.us") == "1539103087"
