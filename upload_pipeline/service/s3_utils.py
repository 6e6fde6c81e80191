import logging

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from upload_pipeline.core.config import (
    AWS_ACCESS_KEY_ID,
    AWS_REGION,
    AWS_S3_BUCKET,
    AWS_SECRET_ACCESS_KEY,
    S3_ENDPOINT_URL,
)

logger = logging.getLogger(__name__)

# delete_objects accepts at most 1000 keys per request
DELETE_BATCH_SIZE = 1000


def create_s3_client():
    return boto3.client(
        "s3",
        region_name=AWS_REGION,
        endpoint_url=S3_ENDPOINT_URL,
        aws_access_key_id=AWS_ACCESS_KEY_ID,
        aws_secret_access_key=AWS_SECRET_ACCESS_KEY,
        config=Config(signature_version="s3v4"),
    )


class S3BlobStore:
    """Thin wrapper over the bucket that holds every uploaded file."""

    def __init__(self, client=None, bucket: str = AWS_S3_BUCKET):
        self.client = client or create_s3_client()
        self.bucket = bucket

    def list_keys(self, prefix: str) -> list[str]:
        """
        List every object key under ``prefix``.

        Follows continuation tokens, so prefixes with more than 1000 objects
        are returned in full.
        """
        paginator = self.client.get_paginator("list_objects_v2")
        keys = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            keys.extend(obj["Key"] for obj in page.get("Contents", []))
        return keys

    def delete_keys(self, keys) -> dict:
        keys = list(dict.fromkeys(keys))
        deleted, errors = [], []
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start:start + DELETE_BATCH_SIZE]
            response = self.client.delete_objects(
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": key} for key in batch], "Quiet": False},
            )
            deleted.extend(item["Key"] for item in response.get("Deleted", []))
            for error in response.get("Errors", []):
                logger.warning("Failed to delete %s: %s %s", error.get("Key"), error.get("Code"), error.get("Message"))
                errors.append({
                    "key": error.get("Key"),
                    "code": error.get("Code"),
                    "message": error.get("Message"),
                })
        logger.info("Deleted %d objects from %s (%d errors)", len(deleted), self.bucket, len(errors))
        return {"deleted": deleted, "errors": errors}

    def head(self, key: str) -> dict | None:
        """Object metadata, or None when the key does not exist."""
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return None
            raise

        return {
            "key": key,
            "size": response.get("ContentLength", 0),
            "content_type": response.get("ContentType", ""),
            "etag": response.get("ETag", ""),
            "last_modified": response.get("LastModified"),
        }
