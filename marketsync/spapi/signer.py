"""AWS Signature Version 4 signing for SP-API requests."""

import hashlib
import hmac
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union
from urllib.parse import quote
import structlog

from marketsync.config import Credentials
from marketsync.errors import ConfigurationFault, SignatureError

logger = structlog.get_logger(__name__)

ALGORITHM = "AWS4-HMAC-SHA256"
SIGNED_HEADER_NAMES = ("host", "x-amz-access-token", "x-amz-content-sha256", "x-amz-date")


@dataclass
class SignedRequest:
    """A request ready to send. Built per call, never reused."""

    method: str
    url: str
    path: str
    canonical_query: str
    host: str
    amz_date: str
    payload_hash: str
    signature: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None


class SigV4Signer:
    """AWS Signature Version 4 request signer."""

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        region: str,
        endpoint: str,
        service: str = "execute-api",
    ):
        """
        Initialize SigV4 signer.

        Args:
            access_key: AWS access key ID
            secret_key: AWS secret access key
            region: AWS region the SP-API endpoint lives in
            endpoint: SP-API base URL, e.g. https://sellingpartnerapi-eu.amazon.com
            service: AWS service name (execute-api for SP-API)

        Raises:
            ConfigurationFault: If any credential is empty
        """
        missing = [
            name for name, value in (
                ("AMZ_AWS_ACCESS_KEY_ID", access_key),
                ("AMZ_AWS_SECRET_ACCESS_KEY", secret_key),
                ("AMZ_AWS_REGION", region),
                ("AMZ_SPAPI_ENDPOINT", endpoint),
            ) if not value
        ]
        if missing:
            raise ConfigurationFault(missing)

        self.access_key = access_key
        self.secret_key = secret_key
        self.region = region
        self.endpoint = endpoint.rstrip("/")
        self.service = service
        self.host = self.endpoint.split("://", 1)[-1].split("/", 1)[0]

    @classmethod
    def from_credentials(cls, credentials: Credentials) -> "SigV4Signer":
        return cls(
            access_key=credentials.aws_access_key_id,
            secret_key=credentials.aws_secret_access_key,
            region=credentials.aws_region,
            endpoint=credentials.spapi_endpoint,
        )

    @staticmethod
    def _sign(key: bytes, msg: str) -> bytes:
        """HMAC-SHA256 signing."""
        return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()

    def _get_signature_key(self, date_stamp: str) -> bytes:
        """Derive signing key."""
        k_date = self._sign(f"AWS4{self.secret_key}".encode("utf-8"), date_stamp)
        k_region = self._sign(k_date, self.region)
        k_service = self._sign(k_region, self.service)
        k_signing = self._sign(k_service, "aws4_request")
        return k_signing

    @staticmethod
    def encode_rfc3986(value: str) -> str:
        """Percent-encode per RFC 3986; ``! * ' ( )`` are escaped too."""
        return quote(value, safe="-_.~")

    @staticmethod
    def _query_value(value: Any) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    @classmethod
    def _canonical_uri(cls, path: str) -> str:
        """Create canonical URI."""
        if not path:
            return "/"
        return "/".join(cls.encode_rfc3986(part) for part in path.split("/"))

    @classmethod
    def _canonical_query_string(cls, params: Optional[Mapping[str, Any]]) -> str:
        """Create canonical query string, sorted by key. ``None`` values are dropped."""
        if not params:
            return ""

        pairs = [
            (cls.encode_rfc3986(str(k)), cls.encode_rfc3986(cls._query_value(v)))
            for k, v in params.items()
            if v is not None
        ]
        return "&".join(f"{k}={v}" for k, v in sorted(pairs))

    @staticmethod
    def _canonical_headers(headers: Dict[str, str]) -> str:
        """Create canonical headers string."""
        canonical = []
        for key in sorted(headers.keys(), key=str.lower):
            canonical.append(f"{key.lower()}:{' '.join(headers[key].split())}\n")
        return "".join(canonical)

    @staticmethod
    def _signed_headers(headers: Dict[str, str]) -> str:
        """Create signed headers string."""
        return ";".join(sorted(h.lower() for h in headers.keys()))

    @staticmethod
    def _hash_payload(payload: Union[str, bytes, None]) -> str:
        """SHA256 of the raw body; no body hashes the empty string."""
        if payload is None:
            payload = b""
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        return hashlib.sha256(payload).hexdigest()

    def sign(
        self,
        method: str,
        path: str,
        access_token: str,
        params: Optional[Mapping[str, Any]] = None,
        body: Union[str, bytes, None] = None,
        extra_headers: Optional[Dict[str, str]] = None,
        amz_date: Optional[str] = None,
    ) -> SignedRequest:
        """
        Sign an SP-API request.

        Args:
            method: HTTP method (GET, POST, etc.)
            path: API path starting with '/'
            access_token: LWA access token, sent as x-amz-access-token
            params: Query parameters
            body: Raw request body
            extra_headers: Unsigned headers to send along (e.g. content-type)
            amz_date: Fixed timestamp (YYYYMMDDTHHMMSSZ); defaults to now

        Returns:
            SignedRequest with the full header set

        Raises:
            SignatureError: If method, path or access token are malformed
        """
        if not method or not method.isalpha():
            raise SignatureError(f"Invalid HTTP method: {method!r}")
        if not path.startswith("/"):
            raise SignatureError(f"Path must start with '/': {path!r}")
        if not access_token:
            raise SignatureError("An access token is required to sign SP-API requests")

        amz_date = amz_date or get_amz_date()
        if len(amz_date) != 16 or amz_date[8] != "T" or not amz_date.endswith("Z"):
            raise SignatureError(f"Malformed x-amz-date: {amz_date!r}")
        date_stamp = amz_date[:8]  # YYYYMMDD

        raw_body = body.encode("utf-8") if isinstance(body, str) else body
        payload_hash = self._hash_payload(raw_body)

        headers_to_sign = {
            "host": self.host,
            "x-amz-access-token": access_token,
            "x-amz-content-sha256": payload_hash,
            "x-amz-date": amz_date,
        }

        canonical_uri = self._canonical_uri(path)
        canonical_querystring = self._canonical_query_string(params)
        canonical_headers_str = self._canonical_headers(headers_to_sign)
        signed_headers_str = self._signed_headers(headers_to_sign)

        canonical_request = "\n".join([
            method.upper(),
            canonical_uri,
            canonical_querystring,
            canonical_headers_str,
            signed_headers_str,
            payload_hash,
        ])

        credential_scope = f"{date_stamp}/{self.region}/{self.service}/aws4_request"
        canonical_request_hash = hashlib.sha256(canonical_request.encode("utf-8")).hexdigest()

        string_to_sign = "\n".join([
            ALGORITHM,
            amz_date,
            credential_scope,
            canonical_request_hash,
        ])

        signing_key = self._get_signature_key(date_stamp)
        signature = hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

        authorization_header = (
            f"{ALGORITHM} "
            f"Credential={self.access_key}/{credential_scope}, "
            f"SignedHeaders={signed_headers_str}, "
            f"Signature={signature}"
        )

        headers = {k: v for k, v in (extra_headers or {}).items() if k.lower() not in SIGNED_HEADER_NAMES}
        headers.update(headers_to_sign)
        headers["Authorization"] = authorization_header

        url = f"{self.endpoint}{canonical_uri}"
        if canonical_querystring:
            url = f"{url}?{canonical_querystring}"

        logger.debug(
            "request_signed",
            method=method,
            path=path,
            signed_headers=signed_headers_str,
        )

        return SignedRequest(
            method=method.upper(),
            url=url,
            path=canonical_uri,
            canonical_query=canonical_querystring,
            host=self.host,
            amz_date=amz_date,
            payload_hash=payload_hash,
            signature=signature,
            headers=headers,
            body=raw_body,
        )


def get_amz_date(now: Optional[datetime] = None) -> str:
    """Get timestamp in Amazon date format (ISO8601 basic)."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
