"""
Blob storage for generated QC documents.

Keys are relative, slash-separated paths such as
"iso-docs/3/QP-01-2/v4-h17.txt". The local backend writes under a root
directory; the S3 backend writes to one bucket (any S3-compatible endpoint).
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO


class StorageError(RuntimeError):
    pass


def normalize_key(key: str) -> str:
    parts = [p for p in (key or "").replace("\\", "/").split("/") if p not in ("", ".")]
    if not parts or ".." in parts:
        raise StorageError(f"Invalid storage key: {key!r}")
    return "/".join(parts)


class Storage:
    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        raise NotImplementedError

    def open(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def verify(self) -> None:
        """Raise StorageError if the backend is unusable."""


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path

    def _path(self, key: str) -> Path:
        return self.root / normalize_key(key)

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        p = self._path(key)
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_name(p.name + ".part")
        tmp.write_bytes(data)
        # Regenerated documents replace the previous file atomically.
        os.replace(tmp, p)

    def open(self, key: str) -> BinaryIO:
        try:
            return self._path(key).open("rb")
        except FileNotFoundError as e:
            raise StorageError(f"No such document: {key}") from e

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def verify(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Storage root {self.root} is not writable: {e}") from e


@dataclass(frozen=True)
class S3Storage(Storage):
    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str

    def _client(self):
        import boto3

        return boto3.client(
            "s3",
            endpoint_url=f"https://{self.endpoint}" if self.endpoint else None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
        )

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        extra: dict[str, object] = {"ContentType": content_type} if content_type else {}
        self._client().put_object(Bucket=self.bucket, Key=normalize_key(key), Body=data, **extra)

    def open(self, key: str) -> BinaryIO:
        from botocore.exceptions import ClientError

        try:
            obj = self._client().get_object(Bucket=self.bucket, Key=normalize_key(key))
        except ClientError as e:
            raise StorageError(f"No such document: {key}") from e
        return obj["Body"]  # type: ignore[return-value]

    def exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError

        try:
            self._client().head_object(Bucket=self.bucket, Key=normalize_key(key))
            return True
        except ClientError:
            return False

    def verify(self) -> None:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._client().head_bucket(Bucket=self.bucket)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Cannot access S3 bucket '{self.bucket}': {e}") from e


S3_REQUIRED_KEYS = ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")


def storage_from_config(config: dict) -> Storage:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    if backend == "s3":
        missing = [k for k in S3_REQUIRED_KEYS if not (config.get(k) or "").strip()]
        if missing:
            raise StorageError(f"Missing S3 settings: {', '.join(missing)}")
        return S3Storage(
            endpoint=config["S3_ENDPOINT"].strip(),
            region=(config.get("S3_REGION") or "nyc3").strip(),
            bucket=config["S3_BUCKET"].strip(),
            access_key_id=config["S3_ACCESS_KEY_ID"].strip(),
            secret_access_key=config["S3_SECRET_ACCESS_KEY"].strip(),
        )
    if backend != "local":
        raise StorageError(f"Unknown STORAGE_BACKEND: {backend}")
    root = (config.get("LOCAL_STORAGE_ROOT") or "").strip()
    return LocalStorage(root=Path(root) if root else Path(os.getcwd()) / "storage")
