"""Cluster configuration: local config.yaml overlaid with environment variables."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Dict

import yaml

from tablet_shared.constants import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_MIN_VOLUMES,
    DEFAULT_RETRY_DELAY,
    DEFAULT_WORKERS,
    DEFAULT_WRITE_RETRIES,
    PROP_INSTANCE_VOLUMES,
    STRATEGY_BALANCED,
)
from tablet_shared.errors import VolumeError

from .logging_config import log
from .metadata_store import LocalMetadataTable, MetadataDirectoryStore
from .volumes import VolumeSet

DEFAULT_CONFIG_PATH = "config.yaml"

_ENV_OVERRIDES = (
    ("INSTANCE_NAME", "instance", "name"),
    ("INSTANCE_VOLUMES", "instance", PROP_INSTANCE_VOLUMES),
    ("INSTANCE_COORDINATOR", "instance", "coordinator"),
    ("S3_URL", "s3", "url"),
    ("S3_USER", "s3", "user"),
    ("S3_PASSWORD", "s3", "password"),
    ("REBALANCE_WORKERS", "rebalance", "workers"),
)


def _load_yaml(path: Path) -> dict:
    """Return the mapping stored in ``path``, or an empty dict."""
    cfg: dict = {}
    try:
        if path.exists():
            with path.open("r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh) or {}
            if not isinstance(data, dict):
                log.warning("Config file %s does not contain a mapping", path)
            else:
                cfg.update(data)
    except Exception as exc:  # noqa: BLE001
        log.warning("Failed to load config from %s: %s", path, exc)
    return cfg


def set_config(path: str | Path | None = None) -> dict:
    """Build configuration from config.yaml overlaid with environment variables.

    Args:
        path: Config file location; defaults to ``config.yaml`` in the
            working directory.

    Returns:
        dict: Configuration map derived from local file and environment variables.
    """
    cfg = _load_yaml(Path(path or DEFAULT_CONFIG_PATH))

    # Environment variables override config.yaml values
    for env_name, section, key in _ENV_OVERRIDES:
        value = os.getenv(env_name)
        if value:
            block = cfg.setdefault(section, {})
            if isinstance(block, dict):
                block[key] = value

    # Check whether the S3 url has the http/s protocol prefix
    s3_cfg = cfg.get("s3")
    if isinstance(s3_cfg, dict):
        url = s3_cfg.get("url")
        if isinstance(url, str):
            trimmed_url = url.strip()
            if trimmed_url and not trimmed_url.startswith(("http://", "https://")):
                s3_cfg["url"] = f"https://{trimmed_url}"
                log.info("Normalized s3.url to %s", s3_cfg["url"])

    masked_cfg = _mask_sensitive(cfg)
    log.info("Configuration loaded: %s", masked_cfg)
    return cfg


def _mask_sensitive(data):
    """Return a copy of the cluster config safe to log: S3 credentials are masked."""
    if isinstance(data, dict):
        return {k: _mask_sensitive_value(k, v) for k, v in data.items()}
    if isinstance(data, list):
        return [_mask_sensitive(item) for item in data]
    return data


def _mask_sensitive_value(key: str, value):
    """Mask ``value`` when ``key`` names a credential (``s3.password``, access keys)."""
    if isinstance(value, dict):
        return _mask_sensitive(value)
    if isinstance(value, list):
        return [_mask_sensitive_value(key, item) for item in value]
    if isinstance(value, str) and _is_sensitive_key(key):
        if len(value) <= 6:
            return f"{value[:1]}***{value[-1:]}"
        return f"{value[:3]}***{value[-3:]}"
    return value


def _is_sensitive_key(key: str) -> bool:
    """Return True for config keys that hold credentials."""
    key_lower = str(key).lower()
    return any(token in key_lower for token in ("password", "secret", "token", "key"))


def _section(cfg: Dict, name: str) -> Dict:
    block = cfg.get(name) if isinstance(cfg, dict) else None
    return block if isinstance(block, dict) else {}


def instance_volumes(cfg: Dict) -> VolumeSet:
    """Return the volume set named by the ``instance.volumes`` property."""
    return VolumeSet.parse(_section(cfg, "instance").get(PROP_INSTANCE_VOLUMES))


def rebalance_settings(cfg: Dict) -> Dict:
    """Return rebalance tuning values with defaults applied and types coerced."""
    block = _section(cfg, "rebalance")
    create_dirs = block.get("create_directories", True)
    if isinstance(create_dirs, str):
        create_dirs = create_dirs.strip().lower() not in ("0", "false", "no", "off")
    return {
        "workers": int(block.get("workers") or DEFAULT_WORKERS),
        "batch_size": int(block.get("batch_size") or DEFAULT_BATCH_SIZE),
        "write_retries": int(block.get("write_retries", DEFAULT_WRITE_RETRIES)),
        "retry_delay": float(block.get("retry_delay", DEFAULT_RETRY_DELAY)),
        "min_volumes": int(block.get("min_volumes") or DEFAULT_MIN_VOLUMES),
        "create_directories": bool(create_dirs),
        "strategy": str(block.get("strategy") or STRATEGY_BALANCED),
    }


def open_store(cfg: Dict) -> MetadataDirectoryStore:
    """Open the metadata directory store of the configured instance.

    Raises:
        VolumeError: If the coordinator or instance name is missing.
    """
    instance = _section(cfg, "instance")
    coordinator = instance.get("coordinator")
    name = instance.get("name")
    if not coordinator or not name:
        raise VolumeError("instance.coordinator and instance.name must be configured")
    table = LocalMetadataTable.open(str(coordinator), str(name))
    return MetadataDirectoryStore(table, batch_size=rebalance_settings(cfg)["batch_size"])


def read_config_file(path: str | Path) -> dict:
    """Return the mapping stored in a config file that is about to be rewritten.

    Unlike :func:`set_config`, an unreadable file is an error here: rewriting
    it from an empty mapping would drop every other setting.

    Raises:
        VolumeError: If the file does not parse or does not hold a mapping.
    """
    target = Path(path)
    if not target.exists():
        return {}
    try:
        with target.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as exc:
        raise VolumeError(f"refusing to rewrite unreadable config {target}: {exc}") from exc
    if data is not None and not isinstance(data, dict):
        raise VolumeError(f"refusing to rewrite config {target}: not a mapping")
    return data or {}


def write_config_volumes(path: str | Path, volume_set: VolumeSet) -> None:
    """Persist ``volume_set`` as the ``instance.volumes`` property of a config file.

    Other keys of the file are preserved; environment overrides are not
    written back.

    Raises:
        VolumeError: If the existing file cannot be read as a mapping; the
            file is left untouched.
    """
    target = Path(path)
    data = read_config_file(target)
    instance = data.get("instance")
    if not isinstance(instance, dict):
        instance = data["instance"] = {}
    instance[PROP_INSTANCE_VOLUMES] = volume_set.to_property()

    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".config-", dir=str(target.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            yaml.safe_dump(data, fh, default_flow_style=False, sort_keys=False)
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    log.info("Wrote instance.volumes=%s to %s", volume_set.to_property(), target)


__all__ = [
    "instance_volumes",
    "open_store",
    "read_config_file",
    "rebalance_settings",
    "set_config",
    "write_config_volumes",
]
