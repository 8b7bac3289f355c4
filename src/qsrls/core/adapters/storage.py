from __future__ import annotations

import uuid

import boto3

from qsrls.core.errors import remote_call


class S3Adapter:
    """Adapter around S3 bucket/object APIs for one region."""

    def __init__(self, session: boto3.session.Session, region: str) -> None:
        self.region = region
        self.client = session.client("s3", region_name=region)

    def head_bucket(self, bucket: str) -> None:
        """Raise RemoteError if the bucket does not exist or is not accessible."""
        with remote_call("HeadBucket"):
            self.client.head_bucket(Bucket=bucket)

    def create_bucket(self, prefix: str) -> str:
        """Create a bucket named `{prefix}{uuid4}` and return its name."""
        name = f"{prefix}{uuid.uuid4()}"
        kwargs: dict = {"Bucket": name}
        # us-east-1 rejects an explicit LocationConstraint
        if self.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        with remote_call("CreateBucket"):
            self.client.create_bucket(**kwargs)
        return name

    def put_object(self, bucket: str, key: str, content: str) -> None:
        """Write a text/csv object."""
        with remote_call("PutObject"):
            self.client.put_object(
                Bucket=bucket,
                Key=key,
                Body=content.encode("utf-8"),
                ContentType="text/csv",
            )

    def list_objects(self, bucket: str, prefix: str) -> list[str]:
        """Return every object key under a prefix."""
        keys: list[str] = []
        paginator = self.client.get_paginator("list_objects_v2")
        with remote_call("ListObjectsV2"):
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                keys.extend(o["Key"] for o in page.get("Contents") or [] if o.get("Key"))
        return keys

    def delete_object(self, bucket: str, key: str) -> None:
        """Delete one object."""
        with remote_call("DeleteObject"):
            self.client.delete_object(Bucket=bucket, Key=key)
