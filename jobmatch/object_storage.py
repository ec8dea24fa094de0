from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path, PurePosixPath


@dataclass(frozen=True)
class ObjectStorageConfig:
    backend: str
    bucket: str
    root: str
    endpoint: str
    region: str
    access_key: str
    secret_key: str
    force_path_style: bool


class ObjectStorageBackend:
    backend_name = "base"

    def get_object(self, *, object_key: str) -> bytes:
        raise NotImplementedError

    def put_object(
        self,
        *,
        object_key: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> None:
        raise NotImplementedError


class LocalObjectStorage(ObjectStorageBackend):
    backend_name = "local"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        self._bucket = config.bucket
        self._root = Path(config.root)
        self._root.mkdir(parents=True, exist_ok=True)

    def get_object(self, *, object_key: str) -> bytes:
        path = self._path_for_key(object_key)
        if not path.exists():
            raise FileNotFoundError(object_key)
        return path.read_bytes()

    def put_object(
        self,
        *,
        object_key: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> None:
        path = self._path_for_key(object_key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content_bytes)

    def _path_for_key(self, object_key: str) -> Path:
        key = PurePosixPath(object_key.lstrip("/"))
        if ".." in key.parts or not key.parts:
            raise ValueError(f"invalid object key: {object_key}")
        return self._root / self._bucket / Path(*key.parts)


class S3ObjectStorage(ObjectStorageBackend):
    """S3-compatible storage; Cloudflare R2 is addressed through its account endpoint."""

    backend_name = "s3"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        try:
            import boto3  # type: ignore
            from botocore.config import Config
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("boto3 is required for s3 object storage backend") from exc
        self._bucket = config.bucket
        session = boto3.session.Session(
            aws_access_key_id=config.access_key or None,
            aws_secret_access_key=config.secret_key or None,
            region_name=config.region or None,
        )
        self._client = session.client(
            "s3",
            endpoint_url=config.endpoint or None,
            config=Config(s3={"addressing_style": "path" if config.force_path_style else "auto"}),
        )

    def get_object(self, *, object_key: str) -> bytes:
        response = self._client.get_object(Bucket=self._bucket, Key=object_key)
        body = response["Body"]
        try:
            return body.read()
        finally:
            body.close()

    def put_object(
        self,
        *,
        object_key: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> None:
        self._client.put_object(
            Bucket=self._bucket,
            Key=object_key,
            Body=content_bytes,
            ContentType=content_type or "application/octet-stream",
        )


def _flag(env: Mapping[str, str], name: str, default: str) -> bool:
    return str(env.get(name, default)).strip().lower() not in {"0", "false", "no", "off"}


def create_object_storage_from_env(environ: Mapping[str, str] | None = None) -> ObjectStorageBackend:
    env = os.environ if environ is None else environ
    backend = env.get("JOBMATCH_OBJECT_STORAGE_BACKEND", "local").strip().lower() or "local"
    endpoint = env.get("OBJECT_STORAGE_ENDPOINT", "").strip()
    region = env.get("OBJECT_STORAGE_REGION", "").strip()
    r2_account_id = env.get("R2_ACCOUNT_ID", "").strip()
    if r2_account_id and not endpoint:
        endpoint = f"https://{r2_account_id}.r2.cloudflarestorage.com"
        region = region or "auto"
    config = ObjectStorageConfig(
        backend=backend,
        bucket=env.get("OBJECT_STORAGE_BUCKET", "").strip() or env.get("R2_BUCKET", "").strip() or "jobmatch",
        root=env.get("OBJECT_STORAGE_ROOT", "/tmp/jobmatch-object-storage").strip()
        or "/tmp/jobmatch-object-storage",
        endpoint=endpoint,
        region=region,
        access_key=env.get("OBJECT_STORAGE_ACCESS_KEY", "").strip() or env.get("R2_ACCESS_KEY", "").strip(),
        secret_key=env.get("OBJECT_STORAGE_SECRET_KEY", "").strip() or env.get("R2_SECRET_KEY", "").strip(),
        force_path_style=_flag(env, "OBJECT_STORAGE_FORCE_PATH_STYLE", "true"),
    )
    if config.backend == "s3":
        return S3ObjectStorage(config=config)
    if config.backend == "local":
        return LocalObjectStorage(config=config)
    raise RuntimeError(f"unsupported object storage backend: {config.backend}")
