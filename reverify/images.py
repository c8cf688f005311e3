# reverify/images.py
#
# Image storage for the face similarity path: reference images recorded at
# registration time, and captured images kept as review artifacts.
import base64
import binascii
import logging
import secrets
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Tuple
from urllib.parse import unquote, urlparse

import boto3

from .errors import InvalidRequest, ReferenceImageMissing

log = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 5 * 1024 * 1024  # Rekognition limit for inline image bytes


def decode_image_b64(data: str) -> bytes:
    """Decode a base64 image; a "data:image/...;base64," prefix is dropped."""
    s = (data or "").strip()
    if s.startswith("data:"):
        _, _, s = s.partition(",")
    try:
        raw = base64.b64decode(s, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidRequest("image is not valid base64")
    if not raw:
        raise InvalidRequest("image is empty")
    if len(raw) > MAX_IMAGE_BYTES:
        raise InvalidRequest("image exceeds 5 MiB")
    return raw


def parse_image_ref(ref: str, default_bucket: str) -> Tuple[str, str]:
    """
    Accepts:
      s3://bucket/key
      https://bucket.s3.<region>.amazonaws.com/key
      https://s3.<region>.amazonaws.com/bucket/key
      plain key (resolved against default_bucket)
    """
    p = urlparse(ref)
    if p.scheme == "s3":
        return p.netloc, p.path.lstrip("/")
    if p.scheme in ("http", "https"):
        host = p.hostname or ""
        path = unquote(p.path).lstrip("/")
        if host.startswith(("s3.", "s3-")):
            bucket, _, key = path.partition("/")
            return bucket, key
        for marker in (".s3.", ".s3-"):
            if marker in host:
                return host.split(marker, 1)[0], path
        return default_bucket, path
    return default_bucket, ref.lstrip("/")


class ImageStore(ABC):
    @abstractmethod
    def get(self, ref: str) -> bytes:
        ...

    @abstractmethod
    def put_captured(self, subject_id: str, data: bytes, captured_at: datetime) -> str:
        """Store a captured image and return its reference."""


class S3ImageStore(ImageStore):
    def __init__(self, client, bucket: str):
        self._s3 = client
        self.bucket = bucket

    @classmethod
    def from_region(cls, region: str, bucket: str) -> "S3ImageStore":
        return cls(boto3.client("s3", region_name=region), bucket)

    def get(self, ref: str) -> bytes:
        bucket, key = parse_image_ref(ref, self.bucket)
        try:
            obj = self._s3.get_object(Bucket=bucket, Key=key)
        except self._s3.exceptions.ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                log.warning("reference image missing bucket=%s key=%s", bucket, key)
                raise ReferenceImageMissing()
            raise
        return obj["Body"].read()

    def put_captured(self, subject_id: str, data: bytes, captured_at: datetime) -> str:
        key = f"captured/{subject_id}/{captured_at.strftime('%Y%m%dT%H%M%SZ')}-{secrets.token_hex(4)}.jpg"
        self._s3.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType="image/jpeg",
            ServerSideEncryption="AES256",
        )
        log.info("stored captured image subject=%s key=%s", subject_id, key)
        return f"s3://{self.bucket}/{key}"
