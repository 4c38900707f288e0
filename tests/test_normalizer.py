import pytest

from chatops.conversations import normalizer
from chatops.conversations.normalizer import PayloadVariant


def test_plain_conversation_text():
    result = normalizer.normalize({"conversation": "Oi, tudo bem?"})

    assert result.content == "Oi, tudo bem?"
    assert result.message_type == "text"
    assert result.media_url is None


def test_extended_text_with_quote():
    message = {
        "extendedTextMessage": {
            "text": "respondendo",
            "contextInfo": {"stanzaId": "QUOTED1"},
        }
    }

    result = normalizer.normalize(message)

    assert result.content == "respondendo"
    assert result.quoted_message_id == "QUOTED1"


def test_image_uses_caption_and_default_mimetype():
    message = {"imageMessage": {"url": "https://mmg.whatsapp.net/x.enc", "caption": "foto"}}

    result = normalizer.normalize(message)

    assert result.content == "foto"
    assert result.message_type == "image"
    assert result.media_mimetype == "image/jpeg"
    assert result.media_url == "https://mmg.whatsapp.net/x.enc"


def test_image_without_caption_gets_placeholder():
    result = normalizer.normalize({"imageMessage": {"mimetype": "image/png"}})

    assert result.content == "[Image]"
    assert result.media_mimetype == "image/png"


def test_document_keeps_file_name():
    message = {
        "documentMessage": {
            "fileName": "boleto.pdf",
            "mimetype": "application/pdf",
            "url": "https://mmg.whatsapp.net/doc",
        }
    }

    result = normalizer.normalize(message)

    assert result.content == "boleto.pdf"
    assert result.message_type == "document"
    assert result.file_name == "boleto.pdf"


def test_media_url_prefers_top_level_field():
    message = {"mediaUrl": "https://cdn.example/a.ogg", "audioMessage": {"url": "https://other"}}

    assert normalizer.normalize(message).media_url == "https://cdn.example/a.ogg"


@pytest.mark.parametrize(
    "message, content, message_type",
    [
        ({"audioMessage": {}}, "[Audio]", "audio"),
        ({"stickerMessage": {}}, "[Sticker]", "sticker"),
        ({"locationMessage": {"degreesLatitude": 1}}, "[Location]", "location"),
        ({"contactMessage": {"displayName": "Ana"}}, "[Contact]", "contact"),
        ({"pollCreationMessage": {"name": "Qual dia?"}}, "Qual dia?", "poll"),
        ({"buttonsResponseMessage": {"selectedDisplayText": "Sim"}}, "Sim", "buttons"),
        (
            {"listResponseMessage": {"singleSelectReply": {"selectedRowId": "row-2"}}},
            "row-2",
            "list",
        ),
        (
            {"templateMessage": {"hydratedTemplate": {"hydratedContentText": "Bem-vindo"}}},
            "Bem-vindo",
            "template",
        ),
    ],
)
def test_variants_map_to_content_and_type(message, content, message_type):
    result = normalizer.normalize(message)

    assert result.content == content
    assert result.message_type == message_type


def test_unknown_payload_is_never_empty():
    result = normalizer.normalize({"someFutureMessage": {"x": 1}})

    assert result.content == normalizer.UNSUPPORTED_PLACEHOLDER
    assert result.message_type == "unsupported"


def test_empty_payload_gets_generic_placeholder():
    result = normalizer.normalize({})

    assert result.content == normalizer.GENERIC_PLACEHOLDER


def test_structured_string_is_not_shown_raw():
    assert normalizer.normalize('{"a": 1}').content == normalizer.UNSUPPORTED_PLACEHOLDER
    assert normalizer.normalize("  plain  ").content == "plain"


def test_reactions_and_protocol_messages_are_routed_elsewhere():
    reaction = {"reactionMessage": {"text": "👍", "key": {"id": "M1"}}}
    revoke = {"protocolMessage": {"type": 0, "key": {"id": "M2"}}}

    assert normalizer.classify(reaction) is PayloadVariant.REACTION
    assert normalizer.classify(revoke) is PayloadVariant.PROTOCOL
    with pytest.raises(ValueError):
        normalizer.normalize(reaction)
    assert normalizer.reaction_parts(reaction) == ("👍", "M1")
    assert normalizer.protocol_kind(revoke) == normalizer.PROTOCOL_REVOKE
    assert normalizer.protocol_target_id(revoke) == "M2"


def test_edit_protocol_is_not_a_revoke():
    edit = {"protocolMessage": {"type": "MESSAGE_EDIT", "key": {"id": "M3"}}}

    assert normalizer.protocol_kind(edit) == normalizer.PROTOCOL_EDIT
