"""Minimal signed clients for the S3 and SQS HTTP APIs."""

from __future__ import annotations

import hashlib
import hmac
import json
import os
from datetime import datetime, timezone
from typing import NamedTuple
from urllib.parse import parse_qsl, quote, unquote, urlsplit

import requests

from jiboia.domain import ConfigError, StorageError

_ALGORITHM = "AWS4-HMAC-SHA256"
_DEFAULT_REGION = "us-east-1"
_UNRESERVED = "-_.~"


def _canonical_uri(path: str) -> str:
    return quote(unquote(path or "/"), safe="/" + _UNRESERVED)


def _canonical_query(query: str) -> str:
    pairs = parse_qsl(query, keep_blank_values=True)
    encoded = sorted(
        (quote(key, safe=_UNRESERVED), quote(value, safe=_UNRESERVED)) for key, value in pairs
    )
    return "&".join(f"{key}={value}" for key, value in encoded)


def _hmac(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def sign_request(method, url, headers, body, region, service, access_key, secret_key, timestamp):
    """Return ``headers`` extended with an AWS Signature Version 4 for the request.

    ``url`` must already be percent-encoded; ``timestamp`` is taken as UTC when naive.
    """
    parts = urlsplit(url)
    moment = timestamp.astimezone(timezone.utc) if timestamp.tzinfo else timestamp
    amz_date = moment.strftime("%Y%m%dT%H%M%SZ")
    date_stamp = moment.strftime("%Y%m%d")
    payload_hash = hashlib.sha256(bytes(body)).hexdigest()

    replaced = {"authorization", "x-amz-date", "x-amz-content-sha256", "host"}
    result = {name: value for name, value in headers.items() if name.lower() not in replaced}
    result["x-amz-date"] = amz_date
    result["x-amz-content-sha256"] = payload_hash

    canonical = {name.lower(): " ".join(str(value).split()) for name, value in result.items()}
    canonical["host"] = parts.netloc
    names = sorted(canonical)
    canonical_headers = "".join(f"{name}:{canonical[name]}\n" for name in names)
    signed_headers = ";".join(names)

    canonical_request = "\n".join(
        [
            method.upper(),
            _canonical_uri(parts.path),
            _canonical_query(parts.query),
            canonical_headers,
            signed_headers,
            payload_hash,
        ]
    )
    scope = f"{date_stamp}/{region}/{service}/aws4_request"
    string_to_sign = "\n".join(
        [_ALGORITHM, amz_date, scope, hashlib.sha256(canonical_request.encode("utf-8")).hexdigest()]
    )

    key = ("AWS4" + secret_key).encode("utf-8")
    for part in (date_stamp, region, service, "aws4_request"):
        key = _hmac(key, part)
    signature = hmac.new(key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

    result["Authorization"] = (
        f"{_ALGORITHM} Credential={access_key}/{scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )
    return result


class _Credentials(NamedTuple):
    access_key: str
    secret_key: str
    session_token: str


def _normalize_endpoint(endpoint: str) -> str:
    endpoint = (endpoint or "").rstrip("/")
    if endpoint and "://" not in endpoint:
        endpoint = "https://" + endpoint
    return endpoint


class _AwsClient:
    service = ""

    def __init__(
        self,
        region: str = "",
        endpoint: str = "",
        access_key: str = "",
        secret_key: str = "",
        session: requests.Session | None = None,
    ) -> None:
        self.region = region or os.environ.get("AWS_REGION") or _DEFAULT_REGION
        self.endpoint = _normalize_endpoint(endpoint)
        self._access_key = access_key
        self._secret_key = secret_key
        self._session = session if session is not None else requests.Session()

    def _credentials(self) -> _Credentials:
        if self._access_key and self._secret_key:
            return _Credentials(self._access_key, self._secret_key, "")
        access = os.environ.get("AWS_ACCESS_KEY_ID", "")
        secret = os.environ.get("AWS_SECRET_ACCESS_KEY", "")
        if not access or not secret:
            raise ConfigError("no AWS credentials available")
        return _Credentials(access, secret, os.environ.get("AWS_SESSION_TOKEN", ""))

    def _request(self, method: str, url: str, headers: dict, body: bytes, timeout: float | None):
        creds = self._credentials()
        headers = dict(headers)
        if creds.session_token:
            headers["x-amz-security-token"] = creds.session_token
        signed = sign_request(
            method,
            url,
            headers,
            body,
            self.region,
            self.service,
            creds.access_key,
            creds.secret_key,
            datetime.now(timezone.utc),
        )
        return self._session.request(method, url, headers=signed, data=body, timeout=timeout)


class S3Client(_AwsClient):
    """Puts objects into S3 buckets."""

    service = "s3"

    def __init__(
        self,
        region: str = "",
        endpoint: str = "",
        access_key: str = "",
        secret_key: str = "",
        force_path_style: bool = False,
        session: requests.Session | None = None,
    ) -> None:
        super().__init__(region, endpoint, access_key, secret_key, session)
        self.force_path_style = force_path_style

    def _object_url(self, bucket: str, key: str) -> str:
        base = self.endpoint or f"https://s3.{self.region}.amazonaws.com"
        quoted_key = quote(key, safe="/" + _UNRESERVED)
        if self.force_path_style or "." in bucket:
            return f"{base}/{bucket}/{quoted_key}"
        parts = urlsplit(base)
        return f"{parts.scheme}://{bucket}.{parts.netloc}{parts.path}/{quoted_key}"

    def upload(self, bucket, key, body, timeout=None):
        """Store ``body`` under ``key`` and return the object's location."""
        url = self._object_url(bucket, key)
        try:
            response = self._request("PUT", url, {}, bytes(body), timeout)
        except requests.RequestException as err:
            raise StorageError(f"error uploading object: {err}") from err
        if not 200 <= response.status_code < 300:
            raise StorageError(f"upload failed with status {response.status_code}: {response.text}")
        return url


class SqsClient(_AwsClient):
    """Sends messages to SQS queues."""

    service = "sqs"

    def send_message(self, queue_url, body):
        """Send ``body`` to the queue and return the message id."""
        url = self.endpoint or f"https://sqs.{self.region}.amazonaws.com"
        if not urlsplit(url).path:
            url += "/"
        payload = json.dumps({"QueueUrl": queue_url, "MessageBody": body}).encode("utf-8")
        headers = {
            "Content-Type": "application/x-amz-json-1.0",
            "X-Amz-Target": "AmazonSQS.SendMessage",
        }
        try:
            response = self._request("POST", url, headers, payload, None)
        except requests.RequestException as err:
            raise ConnectionError(f"error sending SQS message: {err}") from err
        if not 200 <= response.status_code < 300:
            raise ConnectionError(f"SQS request failed with status {response.status_code}: {response.text}")
        return response.json().get("MessageId", "")