import pytest

from chatops.conversations import media
from chatops.conversations.media import MediaRehoster
from chatops.conversations.models import NormalizedMessage
from chatops.storage import LocalDiskStorage, S3ObjectStorage

CDN_URL = "https://mmg.whatsapp.net/v/t62/abc.enc"


class _FakeObjectStorage:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.objects: dict[str, tuple[bytes, str]] = {}

    def put(self, key, data, content_type):
        if self.fail:
            raise RuntimeError("bucket unavailable")
        self.objects[key] = (data, content_type)
        return key


class _FakeS3Client:
    def __init__(self):
        self.calls = []

    def put_object(self, **kwargs):
        self.calls.append(kwargs)

    def generate_presigned_url(self, operation, Params, ExpiresIn):
        return f"https://s3.local/{Params['Bucket']}/{Params['Key']}?ttl={ExpiresIn}"


def _image(url=CDN_URL, mimetype="image/jpeg", file_name=None):
    return NormalizedMessage(
        content="[Image]",
        message_type="image",
        media_url=url,
        media_mimetype=mimetype,
        file_name=file_name,
    )


def _instance(world):
    return world.repo.get_instance_by_name("main")


@pytest.mark.parametrize(
    "url, expected",
    [
        (CDN_URL, True),
        ("http://minio:9000/evolution/abc.jpg", True),
        ("http://gateway.internal:9000/evolution/file", True),
        ("whatsapp-media/main/abc.jpg", False),
        ("/storage/whatsapp-media/main/abc.jpg", False),
        ("https://example.com/picture.png", False),
        (None, False),
    ],
)
def test_transient_url_detection(url, expected):
    assert media.is_transient_url(url) is expected


def test_file_names_are_path_safe():
    assert media.safe_file_name("A/B", "audio/ogg; codecs=opus") == "A_B.ogg"
    assert media.safe_file_name("X", None, "../../etc/passwd") == "X_.._.._etc_passwd"
    assert media.extension_for("application/x-custom") == "x-custom"
    assert media.extension_for(None) == "bin"


def test_durable_url_is_left_alone(world):
    rehoster = MediaRehoster(world.gateway, _FakeObjectStorage(), LocalDiskStorage(world.storage_dir))

    result = rehoster.rehost(_instance(world), {"id": "M1"}, _image("https://example.com/a.jpg"), "M1")

    assert result.outcome == media.SKIPPED
    assert result.reference == "https://example.com/a.jpg"
    assert world.gateway.media_requests == []


def test_transient_media_is_stored_durably(world):
    world.gateway.media = b"jpeg-bytes"
    storage = _FakeObjectStorage()
    rehoster = MediaRehoster(world.gateway, storage, LocalDiskStorage(world.storage_dir))

    result = rehoster.rehost(_instance(world), {"id": "M1"}, _image(), "M1")

    assert result.outcome == media.DURABLE
    assert result.reference == "whatsapp-media/main/M1.jpg"
    assert storage.objects["whatsapp-media/main/M1.jpg"] == (b"jpeg-bytes", "image/jpeg")


def test_falls_back_to_local_disk_when_upload_fails(world):
    world.gateway.media = b"jpeg-bytes"
    rehoster = MediaRehoster(
        world.gateway, _FakeObjectStorage(fail=True), LocalDiskStorage(world.storage_dir)
    )

    result = rehoster.rehost(_instance(world), {"id": "M1"}, _image(), "M1")

    assert result.outcome == media.LOCAL
    assert result.reference == "/storage/whatsapp-media/main/M1.jpg"
    assert (world.storage_dir / "whatsapp-media" / "main" / "M1.jpg").read_bytes() == b"jpeg-bytes"


def test_direct_download_is_tried_after_gateway_fetch(world):
    world.gateway.downloads[CDN_URL] = b"raw"
    rehoster = MediaRehoster(world.gateway, None, LocalDiskStorage(world.storage_dir))

    result = rehoster.rehost(
        _instance(world), {"id": "M1"}, _image(mimetype="application/pdf", file_name="nota.pdf"), "M1"
    )

    assert result.outcome == media.LOCAL
    assert result.reference.endswith("whatsapp-media/main/M1_nota.pdf")


def test_keeps_original_url_when_bytes_unavailable(world):
    rehoster = MediaRehoster(world.gateway, _FakeObjectStorage(), LocalDiskStorage(world.storage_dir))

    result = rehoster.rehost(_instance(world), {"id": "M1"}, _image(), "M1")

    assert result.outcome == media.ORIGINAL
    assert result.reference == CDN_URL


def test_s3_storage_puts_objects_with_content_type():
    client = _FakeS3Client()
    storage = S3ObjectStorage("media", client=client)

    key = storage.put("whatsapp-media/main/M1.jpg", b"x", "image/jpeg")

    assert key == "whatsapp-media/main/M1.jpg"
    assert client.calls == [
        {"Bucket": "media", "Key": key, "Body": b"x", "ContentType": "image/jpeg"}
    ]
    assert storage.signed_url(key, expires_in=60).endswith("whatsapp-media/main/M1.jpg?ttl=60")


def test_same_named_documents_do_not_overwrite_each_other(world):
    rehoster = MediaRehoster(world.gateway, None, LocalDiskStorage(world.storage_dir))
    contract = _image(mimetype="application/pdf", file_name="contrato.pdf")

    world.gateway.media = b"CONTRACT-OF-ALICE"
    alice = rehoster.rehost(_instance(world), {"id": "A1"}, contract, "A1")
    world.gateway.media = b"CONTRACT-OF-BOB"
    bob = rehoster.rehost(_instance(world), {"id": "B1"}, contract, "B1")

    assert alice.reference != bob.reference
    folder = world.storage_dir / "whatsapp-media" / "main"
    assert (folder / "A1_contrato.pdf").read_bytes() == b"CONTRACT-OF-ALICE"
    assert (folder / "B1_contrato.pdf").read_bytes() == b"CONTRACT-OF-BOB"
