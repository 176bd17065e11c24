"""Volcengine OpenAPI request signing (HMAC-SHA256, V4 style)."""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field
from datetime import UTC, datetime
from urllib.parse import quote

ALGORITHM = "HMAC-SHA256"


@dataclass(frozen=True)
class SignedRequest:
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""


def _hmac_sha256(key: bytes, data: str) -> bytes:
    return hmac.new(key, data.encode("utf-8"), hashlib.sha256).digest()


def _sha256_hex(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _signing_key(secret_access_key: str, date_stamp: str, region: str, service: str) -> bytes:
    k_date = _hmac_sha256(secret_access_key.encode("utf-8"), date_stamp)
    k_region = _hmac_sha256(k_date, region)
    k_service = _hmac_sha256(k_region, service)
    return _hmac_sha256(k_service, "request")


def canonical_query_string(params: dict[str, str]) -> str:
    return "&".join(
        f"{quote(str(key), safe='-_.~')}={quote(str(params[key]), safe='-_.~')}" for key in sorted(params)
    )


def sign_request(
    *,
    access_key_id: str,
    secret_access_key: str,
    service: str,
    region: str,
    host: str,
    method: str,
    query: dict[str, str],
    body: str = "",
    path: str = "/",
    now: datetime | None = None,
) -> SignedRequest:
    """Build the signed URL and headers for one Volcengine API call.

    Requests with a body additionally sign ``content-type`` and
    ``x-content-sha256``, which the Ark API requires.
    """
    moment = (now or datetime.now(tz=UTC)).astimezone(UTC)
    x_date = moment.strftime("%Y%m%dT%H%M%SZ")
    date_stamp = x_date[:8]

    query_string = canonical_query_string(query)
    payload_hash = _sha256_hex(body)

    if body and method.upper() == "POST":
        canonical_headers = (
            f"content-type:application/json\nhost:{host}\n"
            f"x-content-sha256:{payload_hash}\nx-date:{x_date}\n"
        )
        signed_headers = "content-type;host;x-content-sha256;x-date"
    else:
        canonical_headers = f"host:{host}\nx-date:{x_date}\n"
        signed_headers = "host;x-date"

    canonical_request = "\n".join(
        [method.upper(), path, query_string, canonical_headers, signed_headers, payload_hash]
    )
    credential_scope = f"{date_stamp}/{region}/{service}/request"
    string_to_sign = "\n".join([ALGORITHM, x_date, credential_scope, _sha256_hex(canonical_request)])

    signature = hmac.new(
        _signing_key(secret_access_key, date_stamp, region, service),
        string_to_sign.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()

    headers = {
        "Authorization": (
            f"{ALGORITHM} Credential={access_key_id}/{credential_scope}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        ),
        "X-Date": x_date,
        "Host": host,
        "Content-Type": "application/json",
    }
    if "x-content-sha256" in signed_headers:
        headers["X-Content-Sha256"] = payload_hash

    url = f"https://{host}{path}"
    if query_string:
        url = f"{url}?{query_string}"
    return SignedRequest(url=url, headers=headers, body=body)
