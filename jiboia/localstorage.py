"""Object storage that writes data into a local directory."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

import yaml

from jiboia.domain import ConfigError, StorageError, UploadResult, WorkUnit

TYPE = "localstorage"


@dataclass
class LocalStorageConfig:
    path: str = ""


def _load_mapping(data) -> dict:
    try:
        raw = yaml.safe_load(data) if data else None
    except yaml.YAMLError as err:
        raise ConfigError(f"error parsing localstorage config: {err}") from err
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("error parsing localstorage config: expected a mapping")
    return raw


def parse_config(data) -> LocalStorageConfig:
    """Parse the YAML settings of a local storage."""
    raw = _load_mapping(data)
    path = raw.get("path")
    return LocalStorageConfig(path="" if path is None else str(path))


def _join(*parts: str) -> str:
    return os.path.normpath("/".join(part for part in parts if part))


def _validate_path(path: str) -> str:
    try:
        is_dir = os.path.isdir(path) if os.stat(path) else False
    except FileNotFoundError as err:
        raise ConfigError(f"the directory for the path doesn't exist: {err}") from err
    except OSError as err:
        raise ConfigError(f"error on the provided path: {err}") from err
    if not is_dir:
        raise ConfigError("provided path is not a directory")
    return path.removesuffix("/")


class LocalStorage:
    """Writes each work unit to ``<path>/<prefix>/<filename>``."""

    storage_type = TYPE
    name = TYPE

    def __init__(self, config: LocalStorageConfig, logger: logging.Logger | None = None) -> None:
        try:
            self.path = _validate_path(config.path)
        except ConfigError as err:
            raise ConfigError(f"error creating localstorage: {err}") from err
        self._log = logger or logging.getLogger(__name__)

    def upload(self, work_unit: WorkUnit) -> UploadResult:
        """Write the work unit's data to a file, creating directories as needed."""
        directory = _join(self.path, work_unit.prefix)
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as err:
            raise StorageError(f"error creating directory: {err}") from err

        full_path = _join(self.path, work_unit.prefix, work_unit.filename)
        try:
            with open(full_path, "wb") as handle:
                handle.write(work_unit.data)
        except OSError as err:
            raise StorageError(f"error writing data into file: {err}") from err

        self._log.debug("wrote data to local storage", extra={"path": full_path})
        return UploadResult(
            bucket=TYPE,
            path=full_path,
            url=full_path,
            size_in_bytes=len(work_unit.data),
        )