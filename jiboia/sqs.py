"""External queue that announces stored objects on an SQS queue."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Protocol

import yaml

from jiboia.awsclient import SqsClient
from jiboia.domain import MSG_SCHEMA_VERSION, ConfigError, MessageContext

TYPE = "sqs"
_FIELDS = ("url", "region", "endpoint", "access_key", "secret_key")
_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


class MessageSender(Protocol):
    def send_message(self, queue_url: str, body: str) -> str: ...


@dataclass
class SqsConfig:
    url: str = ""
    region: str = ""
    endpoint: str = ""
    access_key: str = ""
    secret_key: str = ""


def parse_config(data) -> SqsConfig:
    """Parse the YAML settings of an SQS queue."""
    try:
        raw = yaml.safe_load(data) if data else None
    except yaml.YAMLError as err:
        raise ConfigError(f"error parsing SQS config: {err}") from err
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("error parsing SQS config: expected a mapping")
    values = {}
    for field in _FIELDS:
        value = raw.get(field)
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            raise ConfigError(f"error parsing SQS config: {field} must be a scalar")
        values[field] = str(value)
    return SqsConfig(**values)


def _encode(message: dict) -> str:
    text = json.dumps(message, separators=(",", ":"), ensure_ascii=False)
    for char, escaped in _ESCAPES.items():
        text = text.replace(char, escaped)
    return text


class SqsQueue:
    """Sends one JSON message per stored object."""

    queue_type = TYPE

    def __init__(
        self,
        config: SqsConfig,
        flow_name: str,
        logger: logging.Logger | None = None,
        client: MessageSender | None = None,
    ) -> None:
        if not config.url:
            raise ConfigError(f"invalid url for SQS {config.url}")
        self.queue_url = config.url
        self.name = flow_name
        self._client = client if client is not None else SqsClient(
            region=config.region,
            endpoint=config.endpoint,
            access_key=config.access_key,
            secret_key=config.secret_key,
        )
        self._log = logging.LoggerAdapter(
            logger or logging.getLogger(__name__), {"external_queue_type": TYPE}
        )

    def _body(self, message: MessageContext) -> str:
        obj = {
            "path": message.path,
            "full_url": message.url,
            "size_in_bytes": message.size_in_bytes,
        }
        if message.compression_type:
            obj["compression_algorithm"] = message.compression_type
        return _encode(
            {
                "schema_version": MSG_SCHEMA_VERSION,
                "flow_name": self.name,
                "bucket": {"name": message.bucket, "region": message.region},
                "object": obj,
            }
        )

    def enqueue(self, message: MessageContext) -> None:
        """Send the message; errors of the client propagate unchanged."""
        body = self._body(message)
        self._log.debug("sending SQS message to %s", self.queue_url)
        message_id = self._client.send_message(self.queue_url, body)
        self._log.debug("enqueued message on SQS, id %s", message_id)