"""Cloud Storage adapter over the sync google-cloud-storage client."""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor

from loguru import logger

log = logger.bind(component="gcs")


class GCSStorage:
    """StorageClient backed by google-cloud-storage."""

    def __init__(self, client: object, thread_pool: ThreadPoolExecutor) -> None:
        self._client = client
        self._pool = thread_pool

    @classmethod
    def create(cls, *, project: str | None = None, thread_pool_size: int = 4) -> GCSStorage:
        from google.cloud import storage  # type: ignore[reportMissingImports]

        return cls(
            client=storage.Client(project=project),
            thread_pool=ThreadPoolExecutor(
                max_workers=thread_pool_size, thread_name_prefix="gcs-io",
            ),
        )

    def close(self) -> None:
        self._pool.shutdown(wait=False)

    async def write_object(
        self,
        bucket: str,
        path: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
    ) -> None:
        blob = self._client.bucket(bucket).blob(path)  # type: ignore[attr-defined]

        def _upload() -> None:
            blob.upload_from_string(data, content_type=content_type)

        await asyncio.get_running_loop().run_in_executor(self._pool, _upload)
        log.trace("Wrote gs://{bucket}/{path} ({n} bytes)", bucket=bucket, path=path, n=len(data))
