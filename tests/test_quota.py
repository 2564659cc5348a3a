# tests/test_quota.py
from __future__ import annotations

import httpx
import pytest
import respx
from httpx import Response

from bulkjobs.config import QuotaConfig
from bulkjobs.exceptions import QuotaRejected
from bulkjobs.models import JobKind
from bulkjobs.quota import HttpQuotaProvider, StaticQuotaProvider, default_quota_provider

URL = "http://billing.test/credits"


def test_static_provider_per_kind_and_owner_set():
    quota = StaticQuotaProvider({JobKind.FIND: 3}, owners={"user_a"})
    assert quota.available("user_a", JobKind.FIND) == 3
    assert quota.available("user_a", JobKind.VERIFY) == 0
    assert quota.available("user_b", JobKind.FIND) is None


@pytest.mark.parametrize(
    "payload, expected",
    [
        ({"credits_find": 12, "credits_verify": 40}, 12),
        ({"find": 7}, 7),
        ({"data": {"credits_find": 5}}, 5),
        ({"credits_find": True}, 0),
        ([], 0),
    ],
)
@respx.mock
def test_http_provider_reads_balance(payload, expected):
    route = respx.get(URL).mock(return_value=Response(200, json=payload))

    assert HttpQuotaProvider(URL).available("user_a", JobKind.FIND) == expected
    assert route.calls.last.request.headers["x-user-id"] == "user_a"


@respx.mock
def test_http_provider_unknown_owner():
    respx.get(URL).mock(return_value=Response(404))
    assert HttpQuotaProvider(URL).available("ghost", JobKind.VERIFY) is None


@respx.mock
def test_http_provider_outage_is_a_retryable_rejection():
    respx.get(URL).mock(side_effect=httpx.ConnectError("refused"))

    with pytest.raises(QuotaRejected) as excinfo:
        HttpQuotaProvider(URL).available("user_a", JobKind.VERIFY)

    assert excinfo.value.code == "quota_unavailable"
    assert excinfo.value.message == "Failed to check your credits. Please try again."


def test_default_provider_selection():
    static = default_quota_provider(QuotaConfig(api_url="", dev_allowance=9))
    assert isinstance(static, StaticQuotaProvider)
    assert static.available("anyone", JobKind.VERIFY) == 9

    remote = default_quota_provider(QuotaConfig(api_url=URL, dev_allowance=9))
    assert isinstance(remote, HttpQuotaProvider)
