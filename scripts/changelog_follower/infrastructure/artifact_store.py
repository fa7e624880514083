from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

import boto3

from changelog_follower.domain.interfaces import IArtifactStore

log = logging.getLogger(__name__)

CACHE_CONTROL = "public, max-age=60"


class S3ArtifactStore(IArtifactStore):
    """
    Public website bucket. A PutObject either lands completely or not at
    all, so readers never see a half-written document.
    """

    def __init__(self, bucket: str, region: str = "us-east-1", client=None) -> None:
        self.bucket = bucket
        self._s3    = client or boto3.client("s3", region_name=region)

    def put(self, path: str, content: str, content_type: str) -> None:
        key = path.lstrip("/")
        self._s3.put_object(
            Bucket       = self.bucket,
            Key          = key,
            Body         = content.encode("utf-8"),
            ContentType  = content_type,
            CacheControl = CACHE_CONTROL,
        )
        log.debug("Published s3://%s/%s (%s)", self.bucket, key, content_type)


class LocalArtifactStore(IArtifactStore):
    """
    Filesystem stand-in for a bucket, for running everything on one host.
    Writes go to a temp file in the target directory and are swapped in
    with os.replace, which is atomic on POSIX and Windows.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        target = (self.root / path.lstrip("/")).resolve()
        if self.root.resolve() not in target.parents:
            raise ValueError(f"Artifact path escapes the store root: {path}")
        return target

    def put(self, path: str, content: str, content_type: str) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(content)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        log.debug("Published %s (%s)", target, content_type)
