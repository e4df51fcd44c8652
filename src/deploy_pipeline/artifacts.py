"""
Content-addressable artifact storage.

Artifacts are keyed by the sha256 of their content. Writing the same content
twice returns the same artifact and leaves the stored object untouched.
Garbage collection of unreferenced artifacts is left to the operator.
"""
import gzip
import hashlib
import io
import logging
import os
import tarfile
import tempfile
from pathlib import Path
from typing import Iterable, Optional, Union

from botocore.exceptions import ClientError

from .errors import ArtifactNotFound
from .models import Artifact
from .settings import Settings, get_settings
from .utils.aws_clients import get_s3_client
from .utils.decorators import log_execution_time

logger = logging.getLogger(__name__)


def compute_digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def pack_files(base_dir: Union[str, Path], patterns: Iterable[str]) -> Optional[bytes]:
    """Pack files under ``base_dir`` matching glob ``patterns`` into a tar.gz.

    Entries are sorted and their metadata normalized so identical inputs
    produce identical bytes (and therefore identical digests).
    Returns None when no file matches.
    """
    base_dir = Path(base_dir)
    matched = set()
    for pattern in patterns:
        for path in base_dir.glob(pattern):
            if path.is_file():
                matched.add(path)
            elif path.is_dir():
                matched.update(p for p in path.rglob("*") if p.is_file())

    if not matched:
        return None

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for path in sorted(matched):
            info = tar.gettarinfo(str(path), arcname=str(path.relative_to(base_dir)))
            info.mtime = 0
            info.uid = info.gid = 0
            info.uname = info.gname = ""
            with open(path, "rb") as f:
                tar.addfile(info, f)

    # mtime=0 on the gzip header keeps the archive reproducible
    return gzip.compress(buffer.getvalue(), mtime=0)


class ArtifactStore:
    """Base class for artifact storage (to be extended by specific backends)"""

    def put(self, data: bytes, run_id: str) -> Artifact:
        raise NotImplementedError

    def get(self, digest: str) -> bytes:
        raise NotImplementedError

    def exists(self, digest: str) -> bool:
        raise NotImplementedError

    def put_file(self, path: Union[str, Path], run_id: str) -> Artifact:
        with open(path, "rb") as f:
            return self.put(f.read(), run_id)

    def fetch(self, artifact: Artifact, dest_dir: Union[str, Path]) -> Path:
        """Materialize an artifact into ``dest_dir``.

        Tarballs are extracted; any other content is written as ``artifact.bin``.
        """
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        data = self.get(artifact.digest)

        try:
            with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
                tar.extractall(dest_dir, filter="data")
        except tarfile.ReadError:
            (dest_dir / "artifact.bin").write_bytes(data)

        logger.info(f"Fetched artifact {artifact.digest[:12]} into {dest_dir}")
        return dest_dir


class LocalArtifactStore(ArtifactStore):
    """Stores artifacts on the local file system under ``<root>/<aa>/<digest>``"""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        logger.info(f"LocalArtifactStore initialized at: {self.root}")

    def _path(self, digest: str) -> Path:
        return self.root / digest[:2] / digest

    @log_execution_time
    def put(self, data: bytes, run_id: str) -> Artifact:
        digest = compute_digest(data)
        path = self._path(digest)

        if path.exists():
            logger.info(f"Artifact {digest[:12]} already stored, skipping write")
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Write to a temp file then rename so readers never see partial content
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
            logger.info(f"Stored artifact {digest[:12]} ({len(data)} bytes) for {run_id}")

        return Artifact(digest=digest, location=path.resolve().as_uri(), run_id=run_id, size=len(data))

    def get(self, digest: str) -> bytes:
        path = self._path(digest)
        if not path.exists():
            raise ArtifactNotFound(f"Artifact not found: {digest}")
        return path.read_bytes()

    def exists(self, digest: str) -> bool:
        return self._path(digest).exists()


class S3ArtifactStore(ArtifactStore):
    """Stores artifacts in an S3 bucket under ``<prefix>/<digest>``"""

    def __init__(self, bucket_name: str, s3_client=None, prefix: str = "artifacts"):
        self.bucket_name = bucket_name
        self.prefix = prefix.strip("/")
        self.s3_client = s3_client or get_s3_client()
        logger.info(f"Using S3 bucket for artifacts: {self.bucket_name}")

    def _key(self, digest: str) -> str:
        return f"{self.prefix}/{digest}"

    def exists(self, digest: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=self._key(digest))
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise

    @log_execution_time
    def put(self, data: bytes, run_id: str) -> Artifact:
        digest = compute_digest(data)
        key = self._key(digest)

        if self.exists(digest):
            logger.info(f"Artifact {digest[:12]} already in s3://{self.bucket_name}, skipping upload")
        else:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                ContentType="application/octet-stream",
                Metadata={"run-id": run_id, "sha256": digest},
            )
            logger.info(f"Uploaded artifact {digest[:12]} ({len(data)} bytes) to s3://{self.bucket_name}/{key}")

        return Artifact(digest=digest, location=f"s3://{self.bucket_name}/{key}", run_id=run_id, size=len(data))

    def get(self, digest: str) -> bytes:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=self._key(digest))
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                raise ArtifactNotFound(f"Artifact not found: {digest}") from e
            raise
        return response["Body"].read()


def get_artifact_store(settings: Optional[Settings] = None) -> ArtifactStore:
    """Return the artifact store selected by ``artifact_backend``."""
    settings = settings or get_settings()
    if settings.artifact_backend == "s3":
        return S3ArtifactStore(settings.artifact_bucket, s3_client=get_s3_client(settings))
    return LocalArtifactStore(settings.artifact_dir)
