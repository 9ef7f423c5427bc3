from __future__ import annotations

import io
import logging
import time
from pathlib import Path
from typing import Callable, TypeVar

from minio import Minio

from narrator.core.config import Settings, settings
from narrator.util.ids import new_uuid

log = logging.getLogger("object_store")

T = TypeVar("T")

_EXT_BY_TYPE = {"image/jpeg": "jpg", "image/png": "png", "image/webp": "webp"}


class FrameObjectStore:
    """Camera frames keyed by ``image_ref``.

    MinIO is the primary backend. When it cannot be reached the bytes go to (and are read
    from) a local directory instead, so capture keeps working offline and in tests.
    """

    def __init__(
        self,
        *,
        client_factory: Callable[[], Minio],
        bucket: str,
        local_dir: str | Path,
        attempts: int = 2,
        retry_sleep_s: float = 0.3,
    ) -> None:
        self._client_factory = client_factory
        self._bucket = bucket
        self._local_dir = Path(local_dir)
        self._attempts = attempts
        self._retry_sleep_s = retry_sleep_s

    @classmethod
    def from_settings(cls, s: Settings) -> "FrameObjectStore":
        def client() -> Minio:
            return Minio(
                endpoint=s.MINIO_ENDPOINT,
                access_key=s.MINIO_ACCESS_KEY,
                secret_key=s.MINIO_SECRET_KEY,
                secure=s.MINIO_SECURE,
            )

        return cls(client_factory=client, bucket=s.MINIO_BUCKET, local_dir=s.LOCAL_OBJECT_STORE_DIR)

    def put_frame(self, data: bytes, *, content_type: str = "image/jpeg") -> str:
        """Store a new frame under a fresh key and return that key."""

        image_ref = f"frames/{new_uuid()}.{_EXT_BY_TYPE.get(content_type, 'bin')}"
        return self.put(image_ref, data, content_type=content_type)

    def put(self, image_ref: str, data: bytes, *, content_type: str = "application/octet-stream") -> str:
        def upload() -> str:
            c = self._client_factory()
            if not c.bucket_exists(self._bucket):
                c.make_bucket(self._bucket)
            c.put_object(self._bucket, image_ref, io.BytesIO(data), length=len(data), content_type=content_type)
            return image_ref

        try:
            return self._retry(upload)
        except Exception as e:
            log.warning("MinIO write failed for %s; using local copy: %s", image_ref, e)
            path = self._local_dir / image_ref
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
            return image_ref

    def get(self, image_ref: str) -> bytes | None:
        """Frame bytes, or None when neither backend has them."""

        def download() -> bytes:
            res = self._client_factory().get_object(self._bucket, image_ref)
            try:
                return res.read()
            finally:
                res.close()
                res.release_conn()

        try:
            return self._retry(download)
        except Exception:
            try:
                return (self._local_dir / image_ref).read_bytes()
            except OSError:
                return None

    def ready(self) -> bool:
        try:
            self._client_factory().bucket_exists(self._bucket)
            return True
        except Exception:
            return False

    def ensure_bucket(self) -> None:
        def create() -> None:
            c = self._client_factory()
            if not c.bucket_exists(self._bucket):
                c.make_bucket(self._bucket)

        self._retry(create, attempts=3)

    def _retry(self, fn: Callable[[], T], *, attempts: int | None = None) -> T:
        attempts = attempts or self._attempts
        for i in range(attempts):
            try:
                return fn()
            except Exception:
                if i == attempts - 1:
                    raise
                time.sleep(self._retry_sleep_s * (2**i))
        raise RuntimeError("unreachable")


def frame_store() -> FrameObjectStore:
    return FrameObjectStore.from_settings(settings)
