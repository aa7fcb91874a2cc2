from __future__ import annotations

import abc
import logging
import shutil
from pathlib import Path
from typing import IO, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from book_ingest.core.errors import AssetExistsError, TransportError

logger = logging.getLogger(__name__)

CACHE_CONTROL = "public, max-age=31536000, immutable"


class AssetWriter(abc.ABC):
    """Object storage for validated assets. Never overwrites an occupied path."""

    @abc.abstractmethod
    def exists(self, path: str) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    def upload(self, fileobj: IO[bytes], path: str, content_type: str) -> str:
        """Store `fileobj` at `path`; returns the public URL. Raises AssetExistsError if occupied."""
        raise NotImplementedError

    @abc.abstractmethod
    def public_url(self, path: str) -> str:
        raise NotImplementedError

    @abc.abstractmethod
    def discard(self, path: str) -> None:
        raise NotImplementedError


class LocalAssetWriter(AssetWriter):
    def __init__(self, root: str, base_url: Optional[str] = None) -> None:
        self.root = Path(root).expanduser().resolve()
        self.base_url = (base_url or self.root.as_uri()).rstrip("/")

    def _target(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if self.root not in target.parents:
            raise ValueError(f"path escapes asset root: {path}")
        return target

    def exists(self, path: str) -> bool:
        return self._target(path).exists()

    def upload(self, fileobj: IO[bytes], path: str, content_type: str) -> str:
        target = self._target(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            # "x" fails if the file exists, atomically
            out = target.open("xb")
        except FileExistsError as e:
            raise AssetExistsError(path) from e
        try:
            with out:
                shutil.copyfileobj(fileobj, out)
        except Exception as e:
            # a partial file would block every later attempt at this path
            target.unlink(missing_ok=True)
            raise TransportError(f"local write failed | path={path} | err={e}") from e
        logger.debug("asset stored | backend=local | path=%s | type=%s", path, content_type)
        return self.public_url(path)

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/{path}"

    def discard(self, path: str) -> None:
        try:
            self._target(path).unlink()
        except FileNotFoundError:
            return
        logger.info("asset discarded | backend=local | path=%s", path)


class S3AssetWriter(AssetWriter):
    def __init__(
        self,
        bucket: str,
        region: str = "us-west-2",
        public_domain: Optional[str] = None,
        *,
        prefix: str = "",
        client=None,
    ) -> None:
        if client is None:
            client = boto3.client("s3", region_name=region)
        self.s3 = client
        self.bucket = bucket
        self.region = region
        self.public_domain = public_domain
        self.prefix = prefix.strip("/")

    def _key(self, path: str) -> str:
        return f"{self.prefix}/{path}" if self.prefix else path

    def exists(self, path: str) -> bool:
        try:
            self.s3.head_object(Bucket=self.bucket, Key=self._key(path))
            return True
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise TransportError(f"s3 head_object failed: {e}") from e

    def upload(self, fileobj: IO[bytes], path: str, content_type: str) -> str:
        if self.exists(path):
            raise AssetExistsError(path)
        key = self._key(path)
        try:
            self.s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=fileobj,
                ContentType=content_type,
                CacheControl=CACHE_CONTROL,
                # conditional write: S3 rejects the put if the key appeared meanwhile
                IfNoneMatch="*",
            )
        except ClientError as e:
            err = e.response.get("Error", {})
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            if status == 412 or err.get("Code") in ("PreconditionFailed", "ConditionalRequestConflict"):
                raise AssetExistsError(path) from e
            raise TransportError(f"s3 put_object failed: {e}") from e
        except BotoCoreError as e:
            raise TransportError(f"s3 put_object failed: {e}") from e
        logger.debug("asset stored | backend=s3 | bucket=%s | key=%s", self.bucket, key)
        return self.public_url(path)

    def public_url(self, path: str) -> str:
        key = self._key(path)
        if self.public_domain:
            return f"https://{self.public_domain}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def discard(self, path: str) -> None:
        self.s3.delete_object(Bucket=self.bucket, Key=self._key(path))
        logger.info("asset discarded | backend=s3 | bucket=%s | key=%s", self.bucket, self._key(path))
