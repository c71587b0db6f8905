"""Object storage for post images.

``ObjectStorage`` is the contract the post service depends on;
``S3ObjectStorage`` is the production adapter (AWS S3 or any
S3-compatible endpoint via boto3).  Images arrive from clients as base64
``data:image/<type>;base64,...`` URIs.
"""
from __future__ import annotations

import base64
import binascii
import logging
import re
import secrets
from dataclasses import dataclass
from typing import Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from app.core.errors import InvalidInputError

logger = logging.getLogger(__name__)

IMAGE_PREFIX = "images/"

_DATA_URI = re.compile(r"^data:(image/\w+);base64,(.+)$", re.DOTALL)


class ObjectStorage(Protocol):
    def upload_file(self, data: bytes, mime_type: str, key: str) -> bool:
        ...

    def delete_file(self, key: str) -> bool:
        ...


class S3ObjectStorage:
    """Store objects in one S3 bucket.

    Failures are logged and reported as ``False``; callers decide whether
    that is fatal.
    """

    def __init__(self, bucket: str, region: str = "us-east-1", endpoint_url: str | None = None, client=None):
        self.bucket = bucket
        self.client = client or boto3.client("s3", region_name=region, endpoint_url=endpoint_url)

    def upload_file(self, data: bytes, mime_type: str, key: str) -> bool:
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=mime_type)
        except (ClientError, BotoCoreError) as exc:
            logger.error("S3 upload failed key=%s error=%s", key, exc)
            return False
        return True

    def delete_file(self, key: str) -> bool:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            logger.error("S3 delete failed key=%s error=%s", key, exc)
            return False
        return True


@dataclass(frozen=True)
class ImagePayload:
    data: bytes
    mime_type: str

    @property
    def extension(self) -> str:
        return "." + self.mime_type.split("/", 1)[1]


def decode_image(data_uri: str, max_bytes: int) -> ImagePayload:
    """Decode a base64 image data URI.

    Raises ``InvalidInputError`` for anything that is not a base64 image
    or that decodes to more than *max_bytes*.
    """
    match = _DATA_URI.match(data_uri.strip())
    if match is None:
        raise InvalidInputError("invalid_image_format", field="image")
    mime_type, encoded = match.groups()
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidInputError("invalid_image_format", field="image")
    if len(data) > max_bytes:
        raise InvalidInputError("image_size_too_large", field="image")
    return ImagePayload(data=data, mime_type=mime_type)


def random_image_name(payload: ImagePayload) -> str:
    return secrets.token_hex(16) + payload.extension


def image_key(image_name: str) -> str:
    return IMAGE_PREFIX + image_name
