"""Tests for app/storage/object_storage.py."""
from __future__ import annotations

import base64
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from app.core.errors import InvalidInputError
from app.storage.object_storage import (
    ImagePayload,
    S3ObjectStorage,
    decode_image,
    image_key,
    random_image_name,
)


def _data_uri(data: bytes, mime_type: str = "image/png") -> str:
    return f"data:{mime_type};base64," + base64.b64encode(data).decode()


def _client_error(operation: str) -> ClientError:
    return ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, operation)


class TestS3ObjectStorage:
    def test_upload_puts_object(self):
        client = MagicMock()
        storage = S3ObjectStorage("notices", client=client)

        assert storage.upload_file(b"abc", "image/png", "images/a.png") is True
        client.put_object.assert_called_once_with(
            Bucket="notices", Key="images/a.png", Body=b"abc", ContentType="image/png",
        )

    def test_upload_failure_returns_false(self):
        client = MagicMock()
        client.put_object.side_effect = _client_error("PutObject")
        storage = S3ObjectStorage("notices", client=client)

        assert storage.upload_file(b"abc", "image/png", "images/a.png") is False

    def test_delete(self):
        client = MagicMock()
        storage = S3ObjectStorage("notices", client=client)

        assert storage.delete_file("images/a.png") is True
        client.delete_object.assert_called_once_with(Bucket="notices", Key="images/a.png")

        client.delete_object.side_effect = _client_error("DeleteObject")
        assert storage.delete_file("images/a.png") is False


class TestDecodeImage:
    def test_decodes_payload(self):
        payload = decode_image(_data_uri(b"\x89PNG", "image/jpeg"), max_bytes=100)

        assert payload.data == b"\x89PNG"
        assert payload.mime_type == "image/jpeg"
        assert payload.extension == ".jpeg"

    @pytest.mark.parametrize("value", ["not-an-image", "data:text/plain;base64,aGVsbG8=", "data:image/png;base64,@@@"])
    def test_rejects_non_images(self, value):
        with pytest.raises(InvalidInputError, match="invalid_image_format"):
            decode_image(value, max_bytes=100)

    def test_rejects_oversized(self):
        with pytest.raises(InvalidInputError, match="image_size_too_large"):
            decode_image(_data_uri(b"x" * 11), max_bytes=10)


def test_random_name_and_key():
    name = random_image_name(ImagePayload(data=b"", mime_type="image/gif"))

    assert name.endswith(".gif")
    assert len(name) == 32 + len(".gif")
    assert image_key(name) == f"images/{name}"
    assert random_image_name(ImagePayload(data=b"", mime_type="image/gif")) != name
