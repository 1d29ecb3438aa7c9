"""Configured storage volumes and their filesystem handles.

A volume is either a local directory (``file://`` URI) or a bucket prefix on
an S3-compatible object store (``s3://bucket/prefix``). S3 access goes through
a cached boto3 client configured from the ``s3`` block of the configuration.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Tuple
from urllib.parse import urlparse

import boto3
import httpx
from botocore.client import Config

from tablet_shared.constants import (
    SCHEME_FILE,
    SCHEME_S3,
    SUPPORTED_SCHEMES,
    VOLUME_PROPERTY_SEPARATOR,
)
from tablet_shared.errors import DuplicateVolume, InvalidVolume, NoVolumesConfigured
from tablet_shared.paths import normalize_root

from .logging_config import log

_CFG: Dict = {}


def configure(cfg: Dict) -> None:
    """Configure object-store access with application settings.

    Args:
        cfg: Configuration dictionary produced by tablet_volumes.config.set_config().
    """
    global _CFG
    _CFG = cfg or {}
    _client.cache_clear()


def _s3_cfg() -> Dict:
    s3_cfg = _CFG.get("s3", {}) if isinstance(_CFG, dict) else {}
    return s3_cfg if isinstance(s3_cfg, dict) else {}


def _endpoint_url() -> str | None:
    """Resolve the S3-compatible endpoint URL.

    Returns:
        Optional[str]: Endpoint URL or None for default boto behavior.
    """
    s3_cfg = _s3_cfg()

    url = s3_cfg.get("url")
    if isinstance(url, str):
        trimmed_url = url.strip()
        if trimmed_url and not trimmed_url.startswith(("http://", "https://")):
            s3_cfg["url"] = f"https://{trimmed_url}"
            log.info("Normalized s3.url to %s", s3_cfg["url"])

    return s3_cfg.get("url") or None


@lru_cache(maxsize=1)
def _client():
    """Create a cached boto3 S3 client.

    Returns:
        botocore.client.S3: Configured client instance.
    """
    s3_cfg = _s3_cfg()
    return boto3.client(
        "s3",
        endpoint_url=_endpoint_url(),
        aws_access_key_id=s3_cfg.get("user"),
        aws_secret_access_key=s3_cfg.get("password"),
        config=Config(
            signature_version=s3_cfg.get("signature_version") or "s3v4",
            s3={"addressing_style": "path"},
        ),
    )


class LocalFileSystem:
    """Filesystem handle for ``file://`` volumes."""

    def mkdirs(self, path: str) -> None:
        _local_path(path).mkdir(parents=True, exist_ok=True)

    def exists(self, path: str) -> bool:
        return _local_path(path).exists()

    def write_bytes(self, path: str, data: bytes) -> None:
        target = _local_path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    def list_dir(self, path: str) -> List[str]:
        target = _local_path(path)
        if not target.is_dir():
            return []
        return sorted(child.name for child in target.iterdir())


class S3FileSystem:
    """Filesystem handle for ``s3://bucket/prefix`` volumes.

    Directories are zero-byte ``<key>/`` marker objects.
    """

    def __init__(self, bucket: str):
        self.bucket = bucket

    def _key(self, path: str) -> str:
        parsed = urlparse(path)
        if parsed.scheme != SCHEME_S3 or parsed.netloc != self.bucket:
            raise InvalidVolume(f"path {path} is not in bucket {self.bucket}")
        return parsed.path.lstrip("/")

    def mkdirs(self, path: str) -> None:
        key = self._key(path).rstrip("/") + "/"
        _client().put_object(Bucket=self.bucket, Key=key, Body=b"")

    def exists(self, path: str) -> bool:
        key = self._key(path).rstrip("/")
        # Siblings such as "<key>-old/" sort before "<key>/", so look below the
        # directory prefix and at the exact key separately.
        below = _client().list_objects_v2(Bucket=self.bucket, Prefix=key + "/", MaxKeys=1)
        if below.get("Contents"):
            return True
        exact = _client().list_objects_v2(Bucket=self.bucket, Prefix=key, MaxKeys=1)
        return any(obj["Key"] == key for obj in exact.get("Contents", []))

    def write_bytes(self, path: str, data: bytes) -> None:
        _client().put_object(Bucket=self.bucket, Key=self._key(path), Body=data)

    def list_dir(self, path: str) -> List[str]:
        prefix = self._key(path).rstrip("/") + "/"
        paginator = _client().get_paginator("list_objects_v2")
        names = set()
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix, Delimiter="/"):
            for common in page.get("CommonPrefixes", []):
                names.add(common["Prefix"][len(prefix) :].rstrip("/"))
            for obj in page.get("Contents", []):
                name = obj["Key"][len(prefix) :]
                if name:
                    names.add(name)
        return sorted(names)


def _local_path(path: str) -> Path:
    parsed = urlparse(path)
    if parsed.scheme == SCHEME_FILE:
        return Path(parsed.path)
    return Path(path)


@dataclass(frozen=True)
class Volume:
    """A configured storage root.

    Bare absolute paths are normalized to ``file://`` URIs.
    """

    root: str

    def __post_init__(self):
        object.__setattr__(self, "root", _normalize_volume_root(self.root))

    @property
    def scheme(self) -> str:
        return urlparse(self.root).scheme

    def filesystem(self) -> LocalFileSystem | S3FileSystem:
        """Return the implementation-specific handle for this volume."""
        if self.scheme == SCHEME_S3:
            return S3FileSystem(urlparse(self.root).netloc)
        return LocalFileSystem()

    def __str__(self) -> str:
        return self.root


def _normalize_volume_root(root: str) -> str:
    if not isinstance(root, str) or not root.strip():
        raise InvalidVolume("volume root must be a non-empty string")
    candidate = root.strip()
    if candidate.startswith("/"):
        candidate = f"{SCHEME_FILE}://{candidate}"
    parsed = urlparse(candidate)
    if parsed.scheme not in SUPPORTED_SCHEMES:
        raise InvalidVolume(f"unsupported volume root {root!r}; expected one of {SUPPORTED_SCHEMES}")
    if parsed.scheme == SCHEME_S3 and not parsed.netloc:
        raise InvalidVolume(f"volume root {root!r} names no bucket")
    if parsed.scheme == SCHEME_FILE and not parsed.path.startswith("/"):
        raise InvalidVolume(f"volume root {root!r} is not an absolute path")
    return normalize_root(candidate)


@dataclass(frozen=True)
class VolumeSet:
    """Ordered, immutable collection of unique volumes."""

    volumes: Tuple[Volume, ...] = field(default_factory=tuple)

    def __post_init__(self):
        volumes = tuple(v if isinstance(v, Volume) else Volume(v) for v in self.volumes)
        seen = set()
        for volume in volumes:
            if volume.root in seen:
                raise DuplicateVolume(volume.root)
            seen.add(volume.root)
        object.__setattr__(self, "volumes", volumes)

    @classmethod
    def parse(cls, value: str | Iterable[str] | None) -> "VolumeSet":
        """Build a volume set from the comma-separated configuration property.

        Args:
            value: Property value, a list of roots, or None.

        Returns:
            VolumeSet: Volumes in configuration order.
        """
        if value is None:
            return cls()
        if isinstance(value, str):
            roots = [part.strip() for part in value.split(VOLUME_PROPERTY_SEPARATOR)]
        else:
            roots = [str(part).strip() for part in value]
        return cls(tuple(Volume(root) for root in roots if root))

    @property
    def roots(self) -> List[str]:
        return [v.root for v in self.volumes]

    def __len__(self) -> int:
        return len(self.volumes)

    def __iter__(self) -> Iterator[Volume]:
        return iter(self.volumes)

    def __contains__(self, item) -> bool:
        root = item.root if isinstance(item, Volume) else Volume(item).root
        return root in self.roots

    def get(self, root: str) -> Volume | None:
        """Return the configured volume with ``root``, if any."""
        normalized = Volume(root).root
        for volume in self.volumes:
            if volume.root == normalized:
                return volume
        return None

    def default(self) -> Volume:
        """Return the first configured volume."""
        if not self.volumes:
            raise NoVolumesConfigured("no volumes configured")
        return self.volumes[0]

    def with_volumes(self, volumes: Iterable[Volume]) -> "VolumeSet":
        """Return a new set with ``volumes`` appended."""
        return VolumeSet(self.volumes + tuple(volumes))

    def to_property(self) -> str:
        return VOLUME_PROPERTY_SEPARATOR.join(self.roots)


async def ensure_volume_available(volume: Volume) -> bool:
    """Check that a volume can be reached.

    Local volumes must exist as directories. S3 volumes probe the configured
    endpoint, or the bucket itself when the default AWS endpoint is used.

    Returns:
        bool: True if available, False otherwise.
    """
    if volume.scheme == SCHEME_FILE:
        return await asyncio.to_thread(_local_path(volume.root).is_dir)

    endpoint = _endpoint_url()
    log.debug("Checking volume %s @: %s", volume.root, endpoint or "default endpoint")
    try:
        if endpoint:
            async with httpx.AsyncClient(timeout=3.0) as client:
                resp = await client.get(endpoint)
            # Unauthenticated probes are usually answered with 403.
            return resp.status_code < 500
        bucket = urlparse(volume.root).netloc
        await asyncio.to_thread(_client().head_bucket, Bucket=bucket)
        return True
    except Exception:  # noqa: BLE001
        return False


__all__ = [
    "LocalFileSystem",
    "S3FileSystem",
    "Volume",
    "VolumeSet",
    "configure",
    "ensure_volume_available",
]
