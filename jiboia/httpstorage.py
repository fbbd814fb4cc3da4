"""Object storage that POSTs data to an HTTP endpoint."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import requests
import yaml
from requests.adapters import HTTPAdapter

from jiboia.domain import ConfigError, StorageError, UploadResult, WorkUnit

TYPE = "httpstorage"
_PLACEHOLDER = "%s"
_TIMEOUT_SECONDS = 60
_MAX_CONNECTIONS = 10


@dataclass
class HttpStorageConfig:
    url: str = ""


def parse_config(data) -> HttpStorageConfig:
    """Parse the YAML settings of an HTTP storage."""
    try:
        raw = yaml.safe_load(data) if data else None
    except yaml.YAMLError as err:
        raise ConfigError(f"error parsing httpstorage config: {err}") from err
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("error parsing httpstorage config: expected a mapping")
    url = raw.get("url")
    return HttpStorageConfig(url="" if url is None else str(url))


def validate_url(url: str) -> str:
    """Return the URL if it is usable, raising ConfigError otherwise."""
    if not url.startswith("http"):
        raise ConfigError("the url should start with http or https")
    if url.count(_PLACEHOLDER) > 1:
        raise ConfigError("multiple %s detected on URL, only 1 is allowed")
    if _PLACEHOLDER in url and "/" + _PLACEHOLDER not in url:
        raise ConfigError("the %s should be preceded by a / on URL")
    return url


def assemble_url(url: str, prefix: str, filename: str) -> tuple[str, str]:
    """Fill the URL placeholder with ``prefix/filename``; return (url, path)."""
    if _PLACEHOLDER not in url:
        return url, ""
    url = url.removeprefix("/")
    path = f"{prefix.strip('/')}/{filename.strip('/')}"
    return url.replace(_PLACEHOLDER, path, 1), path


class HttpStorage:
    """Sends each work unit as the body of a POST request."""

    storage_type = TYPE
    name = TYPE

    def __init__(
        self,
        config: HttpStorageConfig,
        logger: logging.Logger | None = None,
        session: requests.Session | None = None,
    ) -> None:
        try:
            self.url = validate_url(config.url)
        except ConfigError as err:
            raise ConfigError(f"error creating httpstorage: {err}") from err
        self._log = logger or logging.getLogger(__name__)
        if session is None:
            session = requests.Session()
            adapter = HTTPAdapter(pool_connections=_MAX_CONNECTIONS, pool_maxsize=_MAX_CONNECTIONS)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        self._session = session

    def upload(self, work_unit: WorkUnit) -> UploadResult:
        """POST the data; any non-2xx answer is an error."""
        url, path = assemble_url(self.url, work_unit.prefix, work_unit.filename)
        try:
            response = self._session.post(url, data=work_unit.data, timeout=_TIMEOUT_SECONDS)
        except requests.RequestException as err:
            raise StorageError(f"error doing http request: {err}") from err
        status = response.status_code
        response.close()
        if not 200 <= status < 300:
            raise StorageError(f"request failed with status {status}")
        return UploadResult(
            bucket=TYPE,
            path=path,
            url=url,
            size_in_bytes=len(work_unit.data),
        )