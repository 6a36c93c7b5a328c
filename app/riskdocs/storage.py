from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO


class StorageError(RuntimeError):
    pass


class ObjectExists(StorageError):
    """A write-once put found different bytes already stored under the key."""


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class Storage:
    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        raise NotImplementedError

    def put_once(self, key: str, data: bytes, *, content_type: str | None = None) -> bool:
        """
        Write-once upload (no overwrite).
        Returns True when the object was created, False when identical bytes were already there.
        Raises ObjectExists when different bytes are already stored under `key`.
        """
        raise NotImplementedError

    def open(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def read_bytes(self, key: str) -> bytes:
        with self.open(key) as fh:
            return fh.read()

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def signed_url(self, key: str, *, expires_in: int, filename: str | None = None) -> str | None:
        """Time-limited download URL, or None when the backend cannot sign (serve bytes instead)."""
        return None


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path

    def _path(self, key: str) -> Path:
        safe_key = key.lstrip("/").replace("\\", "/")
        return self.root / safe_key

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        p = self._path(key)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)

    def put_once(self, key: str, data: bytes, *, content_type: str | None = None) -> bool:
        p = self._path(key)
        p.parent.mkdir(parents=True, exist_ok=True)
        try:
            with p.open("xb") as fh:
                fh.write(data)
            return True
        except FileExistsError:
            if _sha256(p.read_bytes()) == _sha256(data):
                return False
            raise ObjectExists(f"Object already exists with different content: {key}")

    def open(self, key: str) -> BinaryIO:
        p = self._path(key)
        try:
            return p.open("rb")
        except FileNotFoundError as e:
            raise StorageError(f"Object not found: {key}") from e

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


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
        extra: dict[str, object] = {}
        if content_type:
            extra["ContentType"] = content_type
        self._client().put_object(Bucket=self.bucket, Key=key, Body=data, **extra)

    def put_once(self, key: str, data: bytes, *, content_type: str | None = None) -> bool:
        client = self._client()
        extra: dict[str, object] = {"Metadata": {"sha256": _sha256(data)}}
        if content_type:
            extra["ContentType"] = content_type
        try:
            head = client.head_object(Bucket=self.bucket, Key=key)
        except client.exceptions.ClientError as e:
            if e.response.get("Error", {}).get("Code") not in ("404", "NoSuchKey", "NotFound"):
                raise StorageError(f"S3 head_object failed for {key}: {e}") from e
            head = None
        if head is not None:
            stored = (head.get("Metadata") or {}).get("sha256")
            if stored is None:
                stored = _sha256(self.read_bytes(key))
            if stored == _sha256(data):
                return False
            raise ObjectExists(f"Object already exists with different content: {key}")
        client.put_object(Bucket=self.bucket, Key=key, Body=data, **extra)
        return True

    def open(self, key: str) -> BinaryIO:
        obj = self._client().get_object(Bucket=self.bucket, Key=key)
        return obj["Body"]  # type: ignore[return-value]

    def read_bytes(self, key: str) -> bytes:
        return self.open(key).read()

    def exists(self, key: str) -> bool:
        client = self._client()
        try:
            client.head_object(Bucket=self.bucket, Key=key)
            return True
        except client.exceptions.ClientError:
            return False

    def delete(self, key: str) -> None:
        self._client().delete_object(Bucket=self.bucket, Key=key)

    def signed_url(self, key: str, *, expires_in: int, filename: str | None = None) -> str | None:
        params: dict[str, object] = {"Bucket": self.bucket, "Key": key}
        if filename:
            params["ResponseContentDisposition"] = f'attachment; filename="{filename}"'
        return self._client().generate_presigned_url("get_object", Params=params, ExpiresIn=int(expires_in))


def storage_from_config(config: dict) -> Storage:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    if backend == "s3":
        return S3Storage(
            endpoint=(config.get("S3_ENDPOINT") or "").strip(),
            region=(config.get("S3_REGION") or "nyc3").strip(),
            bucket=(config.get("S3_BUCKET") or "").strip(),
            access_key_id=(config.get("S3_ACCESS_KEY_ID") or "").strip(),
            secret_access_key=(config.get("S3_SECRET_ACCESS_KEY") or "").strip(),
        )
    # default local
    root = Path(config.get("STORAGE_ROOT") or (Path(os.getcwd()) / "storage"))
    return LocalStorage(root=root)
