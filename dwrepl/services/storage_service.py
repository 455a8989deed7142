"""
Workspace object storage

The workspace is the object-storage prefix a replication job owns: the
snapshot part files, the change-capture output and the job markers all
live under it. Keys passed to and returned from these classes are
relative to the workspace root.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from ..exceptions import ConfigurationError, StorageError


@dataclass(frozen=True)
class StorageCredentials:
    """Resolved AWS credentials handed to stages and the capture sink"""
    access_key_id: str
    secret_access_key: str
    session_token: Optional[str] = None

    def __repr__(self) -> str:
        return f"StorageCredentials(access_key_id={self.access_key_id!r}, secret_access_key='***')"


class WorkspaceStorage:
    """Base class for workspace storage backends"""

    scheme = ""

    def __init__(self, uri: str):
        self.uri = uri.rstrip("/")
        self.logger = structlog.get_logger()

    def url_for(self, key: str = "") -> str:
        """Absolute URL of a key (or of the workspace root)"""
        return f"{self.uri}/{key.strip('/')}" if key else self.uri

    @property
    def credentials(self) -> Optional[StorageCredentials]:
        return None

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def list(self, prefix: str = "") -> List[str]:
        raise NotImplementedError

    def read_text(self, key: str) -> str:
        raise NotImplementedError

    def write_text(self, key: str, data: str) -> None:
        raise NotImplementedError


class S3WorkspaceStorage(WorkspaceStorage):
    """Workspace on S3, accessed with boto3"""

    scheme = "s3"

    def __init__(self, uri: str, session: Optional[boto3.session.Session] = None):
        super().__init__(uri)
        parsed = urlparse(self.uri)
        if not parsed.netloc:
            raise ConfigurationError(f"S3 workspace must be like s3://<bucket>/<path>, got: {uri}")
        self.bucket = parsed.netloc
        self.prefix = parsed.path.strip("/")
        self.session = session or boto3.session.Session()
        self.client = self.session.client("s3")
        self._credentials: Optional[StorageCredentials] = None

    def _key(self, key: str) -> str:
        key = key.strip("/")
        return f"{self.prefix}/{key}" if self.prefix else key

    def _relative(self, full_key: str) -> str:
        if self.prefix:
            return full_key[len(self.prefix) + 1:]
        return full_key

    @property
    def credentials(self) -> StorageCredentials:
        """Resolve credentials from the default boto3 provider chain"""
        if self._credentials is None:
            resolved = self.session.get_credentials()
            if resolved is None:
                raise StorageError("No AWS credentials found; configure the default credential chain")
            frozen = resolved.get_frozen_credentials()
            self._credentials = StorageCredentials(
                access_key_id=frozen.access_key,
                secret_access_key=frozen.secret_key,
                session_token=frozen.token,
            )
        return self._credentials

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=self._key(key))
            return True
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(f"Failed to probe {self.url_for(key)}: {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to probe {self.url_for(key)}: {e}")

    def list(self, prefix: str = "") -> List[str]:
        full_prefix = self._key(prefix)
        if full_prefix and prefix.endswith("/"):
            full_prefix += "/"
        keys = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=full_prefix):
                keys.extend(self._relative(obj["Key"]) for obj in page.get("Contents", []))
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to list {self.url_for(prefix)}: {e}")
        self.logger.debug("Listed workspace objects", prefix=full_prefix, count=len(keys))
        return keys

    def read_text(self, key: str) -> str:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=self._key(key))
            return response["Body"].read().decode("utf-8")
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to read {self.url_for(key)}: {e}")

    def write_text(self, key: str, data: str) -> None:
        try:
            self.client.put_object(Bucket=self.bucket, Key=self._key(key), Body=data.encode("utf-8"))
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to write {self.url_for(key)}: {e}")
        self.logger.info("Wrote workspace object", key=self._key(key), bucket=self.bucket)


class LocalWorkspaceStorage(WorkspaceStorage):
    """Workspace on the local filesystem (file:// URIs)"""

    scheme = "file"

    def __init__(self, uri: str):
        super().__init__(uri)
        self.root = Path(urlparse(self.uri).path)

    def exists(self, key: str) -> bool:
        return (self.root / key).is_file()

    def list(self, prefix: str = "") -> List[str]:
        if not self.root.exists():
            return []
        keys = sorted(path.relative_to(self.root).as_posix()
                      for path in self.root.rglob("*") if path.is_file())
        return [key for key in keys if key.startswith(prefix)]

    def read_text(self, key: str) -> str:
        try:
            return (self.root / key).read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Failed to read {self.url_for(key)}: {e}")

    def write_text(self, key: str, data: str) -> None:
        path = self.root / key
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(data, encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Failed to write {self.url_for(key)}: {e}")
        self.logger.info("Wrote workspace object", path=str(path))


def open_workspace(uri: str) -> WorkspaceStorage:
    """Open the workspace backend matching the URI scheme"""
    scheme = urlparse(uri).scheme
    if scheme == S3WorkspaceStorage.scheme:
        return S3WorkspaceStorage(uri)
    if scheme == LocalWorkspaceStorage.scheme:
        return LocalWorkspaceStorage(uri)
    raise ConfigurationError(f"Unsupported storage scheme '{scheme}' in {uri}")
