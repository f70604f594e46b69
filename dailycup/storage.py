import io
import logging
import os
import uuid

import boto3
from botocore.client import Config

from .config import Settings, get_settings

logger = logging.getLogger(__name__)

_s3 = None


def _client(settings: Settings):
    global _s3
    if _s3 is None and settings.AWS_ACCESS_KEY_ID and settings.AWS_SECRET_ACCESS_KEY and settings.S3_BUCKET:
        _s3 = boto3.client('s3', region_name=settings.AWS_DEFAULT_REGION or "ap-southeast-1",
                           aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
                           aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
                           config=Config(signature_version='s3v4'))
    return _s3


def store_bytes(file_type: str, data: bytes, filename: str, content_type: str,
                settings: Settings | None = None) -> str:
    """Persist an evidence file and return the URL the order row references."""
    settings = settings or get_settings()
    name = f"{uuid.uuid4().hex}_{os.path.basename(filename)}"
    s3 = _client(settings)
    if s3:
        key = f"{file_type}/{name}"
        s3.upload_fileobj(io.BytesIO(data), settings.S3_BUCKET, key, ExtraArgs={"ContentType": content_type})
        return f"https://{settings.S3_BUCKET}.s3.amazonaws.com/{key}"
    subdir = os.path.join(settings.LOCAL_FILES_DIR, file_type)
    os.makedirs(subdir, exist_ok=True)
    path = os.path.join(subdir, name)
    with open(path, "wb") as f:
        f.write(data)
    logger.info("Stored %s locally at %s", file_type, path)
    return f"/files/{file_type}/{name}"
