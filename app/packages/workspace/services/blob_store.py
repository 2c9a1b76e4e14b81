"""Blob 存储抽象与实现：统一封装本地目录与 S3 的对象读写。

key 统一为 "{project_id}/{path}" 形式（见 ``path_utils.blob_key_for``）。
约定：
- upload 为覆盖写（upsert）；
- download/move 在源对象不存在时抛出 ``BlobNotFoundError``；
- remove_many 为尽力而为：失败只记日志并返回失败的 key，从不抛出；
- 其余后端故障统一转换为 ``StoreUnavailableError``。
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from app.packages.workspace.core.config import Settings, get_settings
from app.packages.workspace.core.enums import BlobBackendEnum
from app.packages.workspace.core.exceptions import BlobNotFoundError, StoreUnavailableError, ValidationError
from app.packages.workspace.core.logger import logger

_S3_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}
_S3_DELETE_BATCH = 1000


@dataclass(frozen=True)
class BlobObject:
    key: str
    last_modified: Optional[datetime]


class BlobStore:
    """Blob 存储接口。"""

    def upload(self, key: str, data: bytes) -> None:
        raise NotImplementedError

    def download(self, key: str) -> bytes:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def move(self, old_key: str, new_key: str) -> None:
        raise NotImplementedError

    def remove_many(self, keys: Iterable[str]) -> List[str]:
        raise NotImplementedError

    def list_objects(self, prefix: str) -> List[BlobObject]:
        """列出 prefix 下的全部对象，仅供对账任务使用。"""
        raise NotImplementedError


# ------------------------------------------
# 本地文件系统实现
# ------------------------------------------


class LocalBlobStore(BlobStore):
    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:  # pragma: no cover - 极端情况下可能失败
            raise StoreUnavailableError(f"cannot create blob root {self.root}: {exc}") from exc

    # 统一的安全路径拼接，防止路径遍历
    def _resolve(self, key: str) -> Path:
        rel = key.strip().lstrip("/")
        if not rel:
            raise ValidationError("非法存储 key")
        candidate = (self.root / rel).resolve()
        try:
            candidate.relative_to(self.root)
        except ValueError as exc:
            raise ValidationError("非法存储 key: 越权访问") from exc
        if candidate == self.root:
            raise ValidationError("非法存储 key")
        return candidate

    def _prune_empty_dirs(self, start: Path) -> None:
        current = start
        while current != self.root and self.root in current.parents:
            try:
                current.rmdir()
            except OSError:
                return
            current = current.parent

    def upload(self, key: str, data: bytes) -> None:
        target = self._resolve(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            # 先写临时文件再原子替换，避免读到半截内容
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".upload-")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(data)
                os.replace(tmp_name, target)
            except OSError:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise StoreUnavailableError(f"local upload {key}: {exc}") from exc

    def download(self, key: str) -> bytes:
        target = self._resolve(key)
        if not target.is_file():
            raise BlobNotFoundError(key)
        try:
            return target.read_bytes()
        except FileNotFoundError as exc:
            raise BlobNotFoundError(key) from exc
        except OSError as exc:
            raise StoreUnavailableError(f"local download {key}: {exc}") from exc

    def move(self, old_key: str, new_key: str) -> None:
        src = self._resolve(old_key)
        dst = self._resolve(new_key)
        if src == dst:
            return
        if not src.is_file():
            raise BlobNotFoundError(old_key)
        try:
            dst.parent.mkdir(parents=True, exist_ok=True)
            os.replace(src, dst)
        except FileNotFoundError as exc:
            raise BlobNotFoundError(old_key) from exc
        except OSError as exc:
            raise StoreUnavailableError(f"local move {old_key} -> {new_key}: {exc}") from exc
        self._prune_empty_dirs(src.parent)

    def remove_many(self, keys: Iterable[str]) -> List[str]:
        failed: list[str] = []
        for key in keys:
            try:
                target = self._resolve(key)
                target.unlink(missing_ok=True)
                self._prune_empty_dirs(target.parent)
            except (OSError, ValidationError):
                logger.warning("Local blob removal failed: %s", key, exc_info=True)
                failed.append(key)
        return failed

    def exists(self, key: str) -> bool:
        return self._resolve(key).is_file()

    def list_objects(self, prefix: str) -> List[BlobObject]:
        rel = prefix.strip("/")
        base = self.root / rel if rel else self.root
        if not base.is_dir():
            return []
        objects: list[BlobObject] = []
        try:
            for dirpath, _dirnames, filenames in os.walk(base):
                for filename in filenames:
                    if filename.startswith(".upload-"):
                        continue
                    full = Path(dirpath) / filename
                    objects.append(
                        BlobObject(
                            key=full.relative_to(self.root).as_posix(),
                            last_modified=datetime.fromtimestamp(full.stat().st_mtime, tz=timezone.utc),
                        )
                    )
        except OSError as exc:
            raise StoreUnavailableError(f"local list {prefix}: {exc}") from exc
        return sorted(objects, key=lambda obj: obj.key)


# ------------------------------------------
# S3 实现（boto3），兼容 MinIO / Supabase Storage 等 S3 协议端点
# ------------------------------------------


class S3BlobStore(BlobStore):
    def __init__(
        self,
        *,
        bucket: str,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        prefix: Optional[str] = None,
        client=None,
    ):
        self.bucket = bucket
        self.prefix = (prefix or "").strip("/")
        self._client = client or boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
        )

    # 拼接基于 path_prefix 的对象 key
    def _join_key(self, key: str) -> str:
        rel = key.lstrip("/")
        return f"{self.prefix}/{rel}" if self.prefix else rel

    def _strip_key(self, full_key: str) -> str:
        if self.prefix and full_key.startswith(self.prefix + "/"):
            return full_key[len(self.prefix) + 1:]
        return full_key

    @staticmethod
    def _is_missing(exc: ClientError) -> bool:
        return str(exc.response.get("Error", {}).get("Code")) in _S3_MISSING_CODES

    def upload(self, key: str, data: bytes) -> None:
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=self._join_key(key),
                Body=data,
                ContentType="text/plain; charset=utf-8",
            )
        except (ClientError, BotoCoreError) as exc:
            raise StoreUnavailableError(f"s3 upload {key}: {exc}") from exc

    def download(self, key: str) -> bytes:
        try:
            resp = self._client.get_object(Bucket=self.bucket, Key=self._join_key(key))
            return resp["Body"].read()
        except ClientError as exc:
            if self._is_missing(exc):
                raise BlobNotFoundError(key) from exc
            raise StoreUnavailableError(f"s3 download {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StoreUnavailableError(f"s3 download {key}: {exc}") from exc

    def move(self, old_key: str, new_key: str) -> None:
        if old_key == new_key:
            return
        src = self._join_key(old_key)
        dst = self._join_key(new_key)
        try:
            self._client.copy_object(Bucket=self.bucket, Key=dst, CopySource={"Bucket": self.bucket, "Key": src})
        except ClientError as exc:
            if self._is_missing(exc):
                raise BlobNotFoundError(old_key) from exc
            raise StoreUnavailableError(f"s3 copy {old_key} -> {new_key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StoreUnavailableError(f"s3 copy {old_key} -> {new_key}: {exc}") from exc
        try:
            self._client.delete_object(Bucket=self.bucket, Key=src)
        except (ClientError, BotoCoreError):
            # 新对象已就位；旧对象残留交给对账任务清理
            logger.warning("S3 move left source object behind: %s", old_key, exc_info=True)

    def remove_many(self, keys: Iterable[str]) -> List[str]:
        key_list = [k for k in keys if k]
        failed: list[str] = []
        for i in range(0, len(key_list), _S3_DELETE_BATCH):
            batch = key_list[i : i + _S3_DELETE_BATCH]
            try:
                resp = self._client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": self._join_key(k)} for k in batch], "Quiet": True},
                )
            except (ClientError, BotoCoreError):
                logger.warning("S3 batch delete failed for %s keys", len(batch), exc_info=True)
                failed.extend(batch)
                continue
            for err in resp.get("Errors", []) or []:
                logger.warning("S3 delete failed: %s (%s)", err.get("Key"), err.get("Code"))
                failed.append(self._strip_key(err.get("Key", "")))
        return failed

    def exists(self, key: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=self._join_key(key))
            return True
        except ClientError as exc:
            if self._is_missing(exc):
                return False
            raise StoreUnavailableError(f"s3 head {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StoreUnavailableError(f"s3 head {key}: {exc}") from exc

    def list_objects(self, prefix: str) -> List[BlobObject]:
        objects: list[BlobObject] = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=self._join_key(prefix)):
                for obj in page.get("Contents", []):
                    objects.append(BlobObject(key=self._strip_key(obj["Key"]), last_modified=obj.get("LastModified")))
        except (ClientError, BotoCoreError) as exc:
            raise StoreUnavailableError(f"s3 list {prefix}: {exc}") from exc
        return sorted(objects, key=lambda obj: obj.key)


def build_blob_store(settings: Optional[Settings] = None) -> BlobStore:
    settings = settings or get_settings()
    backend = (settings.blob_backend or "").upper()
    if backend == BlobBackendEnum.LOCAL.value:
        return LocalBlobStore(settings.blob_local_root_path)
    if backend == BlobBackendEnum.S3.value:
        if not settings.s3_bucket:
            raise RuntimeError("S3 配置不完整：缺少 S3_BUCKET")
        return S3BlobStore(
            bucket=settings.s3_bucket,
            region=settings.s3_region,
            endpoint_url=settings.s3_endpoint_url,
            access_key_id=settings.s3_access_key_id,
            secret_access_key=settings.s3_secret_access_key,
            prefix=settings.s3_key_prefix,
        )
    raise RuntimeError(f"不支持的 Blob 存储类型: {settings.blob_backend}")
