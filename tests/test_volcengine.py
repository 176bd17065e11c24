from datetime import UTC, datetime

import pytest

from keyledger.http_client import ProviderError
from keyledger.providers import CredentialError, UsageQuery
from keyledger.providers.volcengine_provider import (
    VolcengineProviderClient,
    normalize_volcengine_usage,
    parse_volcengine_credential,
)
from keyledger.providers.volcengine_signature import canonical_query_string, sign_request

SIGNED_AT = datetime(2025, 1, 15, 8, 30, tzinfo=UTC)


class FakeHTTP:
    def __init__(self, payload: dict | None = None, error: ProviderError | None = None) -> None:
        self.payload = payload or {}
        self.error = error
        self.calls: list[dict] = []

    def request(self, method, url, *, params=None, data=None, headers=None):
        self.calls.append({"method": method, "url": url, "data": data, "headers": headers})
        if self.error is not None:
            raise self.error
        return self.payload

    def close(self) -> None:
        pass


def test_credential_must_be_ak_sk_pair() -> None:
    assert parse_volcengine_credential(" AKLTabc : secret ") == ("AKLTabc", "secret")
    with pytest.raises(CredentialError, match="AK:SK"):
        parse_volcengine_credential("AKLTabc")


def test_canonical_query_is_sorted_and_encoded() -> None:
    assert canonical_query_string({"Version": "2018-01-01", "Action": "List Keys"}) == (
        "Action=List%20Keys&Version=2018-01-01"
    )


def test_signature_is_deterministic_for_fixed_time() -> None:
    kwargs = dict(
        access_key_id="AKLTtest",
        secret_access_key="secret",
        service="iam",
        region="cn-north-1",
        host="iam.volcengineapi.com",
        method="GET",
        query={"Action": "ListAccessKeys", "Version": "2018-01-01"},
        now=SIGNED_AT,
    )

    first = sign_request(**kwargs)
    second = sign_request(**kwargs)
    other_secret = sign_request(**{**kwargs, "secret_access_key": "different"})

    assert first.headers == second.headers
    assert first.headers["X-Date"] == "20250115T083000Z"
    assert first.headers["Authorization"].startswith(
        "HMAC-SHA256 Credential=AKLTtest/20250115/cn-north-1/iam/request, SignedHeaders=host;x-date, Signature="
    )
    assert first.headers["Authorization"] != other_secret.headers["Authorization"]
    assert first.url == "https://iam.volcengineapi.com/?Action=ListAccessKeys&Version=2018-01-01"
    assert "X-Content-Sha256" not in first.headers


def test_post_body_signs_content_headers() -> None:
    signed = sign_request(
        access_key_id="AKLTtest",
        secret_access_key="secret",
        service="ark",
        region="cn-beijing",
        host="open.volcengineapi.com",
        method="POST",
        query={"Action": "GetUsage", "Version": "2024-01-01"},
        body='{"Aggregation": "Day"}',
        now=SIGNED_AT,
    )

    assert "SignedHeaders=content-type;host;x-content-sha256;x-date" in signed.headers["Authorization"]
    assert len(signed.headers["X-Content-Sha256"]) == 64


def test_daily_usage_rows_are_attributed_to_calling_key() -> None:
    buckets = normalize_volcengine_usage(
        {
            "Items": [
                {"Date": "2025-01-01", "PromptTokens": 80, "CompletionTokens": 20, "CachedTokens": 30},
                {"Date": "2025-01-02", "TotalTokens": 40},
                {"PromptTokens": 5},
            ]
        },
        access_key_id="AKLTcaller",
        window_start=datetime(2025, 1, 1, tzinfo=UTC),
        window_end=datetime(2025, 1, 3, tzinfo=UTC),
    )

    assert [bucket.period_start.date().isoformat() for bucket in buckets] == ["2025-01-01", "2025-01-02"]
    first = buckets[0].fragments[0]
    assert first.provider_key_id == "AKLTcaller"
    assert (first.input_tokens, first.cache_read_tokens, first.output_tokens) == (50, 30, 20)
    assert buckets[1].fragments[0].total_tokens == 40


def test_account_totals_become_one_window_bucket() -> None:
    start = datetime(2025, 1, 1, tzinfo=UTC)
    end = datetime(2025, 2, 1, tzinfo=UTC)

    buckets = normalize_volcengine_usage(
        {"PromptTokens": 1000, "CompletionTokens": 250}, access_key_id="AKLTcaller", window_start=start, window_end=end
    )
    empty = normalize_volcengine_usage({}, access_key_id="AKLTcaller", window_start=start, window_end=end)

    assert len(buckets) == 1
    assert (buckets[0].period_start, buckets[0].period_end) == (start, end)
    assert buckets[0].fragments[0].total_tokens == 1250
    assert empty == []


def test_list_keys_reads_access_key_metadata() -> None:
    http = FakeHTTP(
        {
            "Result": {
                "AccessKeyMetadata": [
                    {"AccessKeyId": "AKLTone", "UserName": "ops", "Status": "active", "CreateDate": "2024-06-01T00:00:00Z"},
                    {"AccessKeyId": "AKLTtwo", "UserName": "old", "Status": "inactive"},
                ]
            }
        }
    )
    client = VolcengineProviderClient("AKLTone:secret", http=http)

    keys = client.list_keys()

    assert [(key.provider_key_id, key.name, key.status) for key in keys] == [
        ("AKLTone", "ops", "active"),
        ("AKLTtwo", "old", "inactive"),
    ]
    assert http.calls[0]["method"] == "GET"
    assert "Action=ListAccessKeys" in http.calls[0]["url"]


def test_provider_errors_get_friendly_messages() -> None:
    http = FakeHTTP(error=ProviderError("SignatureDoesNotMatch: mismatch", status_code=403))
    client = VolcengineProviderClient("AKLTone:secret", http=http)

    with pytest.raises(ProviderError) as exc_info:
        client.fetch_usage(UsageQuery(start=datetime(2025, 1, 1, tzinfo=UTC), end=datetime(2025, 1, 2, tzinfo=UTC)))

    assert exc_info.value.message == "Signature mismatch; check the SecretAccessKey"
    assert exc_info.value.status_code == 403
    assert http.calls[0]["method"] == "POST"
