from __future__ import annotations

import logging
import shutil
import time
from pathlib import Path

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from upload_scanner.core.config import settings


logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_BYTES = 81920
NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}


def _client():
    return boto3.client(
        "s3",
        region_name=settings.AWS_REGION or None,
        endpoint_url=settings.S3_ENDPOINT_URL or None,
        aws_access_key_id=settings.S3_ACCESS_KEY or None,
        aws_secret_access_key=settings.S3_SECRET_KEY or None,
        # MinIO and other S3-compatible stores need path-style addressing.
        config=Config(s3={"addressing_style": "path"}),
    )


def _bucket() -> str:
    return settings.S3_BUCKET_NAME


def is_not_found(exc: ClientError) -> bool:
    code = str((exc.response or {}).get("Error", {}).get("Code", ""))
    return code in NOT_FOUND_CODES


def download_to_path(key: str, destination: Path | str) -> int:
    """
    Stream ``key`` into ``destination``. Returns the number of bytes written.
    """
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)

    s3 = _client()
    response = s3.get_object(Bucket=_bucket(), Key=key)
    body = response["Body"]
    try:
        with open(destination, "wb") as fh:
            shutil.copyfileobj(body, fh, DOWNLOAD_CHUNK_BYTES)
    finally:
        body.close()

    size = destination.stat().st_size
    logger.info("Downloaded s3://%s/%s to %s (%s bytes)", _bucket(), key, destination, size)
    return size


def object_exists(key: str) -> bool:
    s3 = _client()
    try:
        s3.head_object(Bucket=_bucket(), Key=key)
    except ClientError as exc:
        if is_not_found(exc):
            return False
        raise
    return True


def copy_object(source_key: str, destination_key: str) -> None:
    s3 = _client()
    s3.copy_object(
        Bucket=_bucket(),
        Key=destination_key,
        CopySource={"Bucket": _bucket(), "Key": source_key},
    )
    logger.info("Copied s3://%s/%s -> %s", _bucket(), source_key, destination_key)


def delete_object(key: str) -> None:
    s3 = _client()
    s3.delete_object(Bucket=_bucket(), Key=key)
    logger.info("Deleted s3://%s/%s", _bucket(), key)


def ensure_bucket_exists(*, attempts: int = 10, delay_seconds: float = 1.0) -> None:
    """
    Create the bucket if it is missing. Object storage often starts after the worker in local
    setups, so transient errors are retried.
    """
    bucket = _bucket()
    for attempt in range(1, attempts + 1):
        s3 = _client()
        try:
            try:
                s3.head_bucket(Bucket=bucket)
                return
            except ClientError as exc:
                if not is_not_found(exc):
                    raise
            s3.create_bucket(Bucket=bucket)
            logger.info("Created bucket %s", bucket)
            return
        except (ClientError, BotoCoreError):
            if attempt == attempts:
                raise
            logger.warning("Bucket check failed (attempt %s/%s); retrying", attempt, attempts)
            time.sleep(delay_seconds)
