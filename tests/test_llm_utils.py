import asyncio
import dataclasses
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import httpx
import pytest

from fakes import TEST_ORACLE_SETTINGS
from services.exceptions import OracleConfigurationError, OracleError
from services.ml.llm_utils import (
    Malformed,
    OracleBackend,
    Parsed,
    coerce_product_id,
    decode_json_array,
    decode_json_object,
    resolve_oracle_backend,
)
from services.ml.oracle import (
    TASK_ANALYSIS,
    DirectAPIOracle,
    GatewayAPIOracle,
    MultiProviderSDKOracle,
    UnavailableOracle,
    build_oracle,
    build_oracle_or_unavailable,
)


# ---------- decoding ----------

def test_decode_object_strips_fences_and_prose():
    raw = 'Sure! ```json\n{"upsell": [1, 2], "crosssell": []}\n``` hope that helps'

    result = decode_json_object(raw)

    assert result == Parsed({"upsell": [1, 2], "crosssell": []})


def test_decode_object_first_balanced_block_wins():
    raw = 'noise {"upsell": [1], "meta": {"nested": true}} trailing {"upsell": [9]}'

    result = decode_json_object(raw)

    assert isinstance(result, Parsed)
    assert result.data == {"upsell": [1], "meta": {"nested": True}}


@pytest.mark.parametrize("raw", [None, "", "   ", "no json here", '{"upsell": [1,', "[1, 2, 3]"])
def test_decode_object_malformed(raw):
    assert isinstance(decode_json_object(raw), Malformed)


def test_decode_array_skips_invalid_brackets():
    raw = 'see [note] then [{"tag": "jeans", "related": ["t-shirt"]}]'

    result = decode_json_array(raw)

    assert result == Parsed([{"tag": "jeans", "related": ["t-shirt"]}])


def test_decode_array_fenced():
    result = decode_json_array('```json\n[{"id": 1, "tags": ["hoodie"]}]\n```')

    assert isinstance(result, Parsed)
    assert result.data[0]["tags"] == ["hoodie"]


@pytest.mark.parametrize(
    "value,expected",
    [
        (5, 5),
        ("5", 5),
        (" 42 ", 42),
        (5.0, 5),
        ("5.0", 5),
        (5.5, None),
        ("5.5", None),
        (True, None),
        ("abc", None),
        (None, None),
        ([5], None),
    ],
)
def test_coerce_product_id(value, expected):
    assert coerce_product_id(value) == expected


# ---------- backend resolution ----------

def _settings(**overrides):
    return dataclasses.replace(TEST_ORACLE_SETTINGS, **overrides)


def test_sdk_flag_wins_over_keys():
    settings = _settings(use_sdk=True, direct_api_key="d", gateway_api_key="g")
    assert resolve_oracle_backend(settings) is OracleBackend.SDK


def test_dedicated_key_wins_over_gateway():
    settings = _settings(direct_api_key="d", gateway_api_key="g")
    assert resolve_oracle_backend(settings) is OracleBackend.DIRECT


def test_gateway_key_used_last():
    assert resolve_oracle_backend(_settings(gateway_api_key="g")) is OracleBackend.GATEWAY


def test_no_backend_configured_raises():
    with pytest.raises(OracleConfigurationError):
        resolve_oracle_backend(_settings())


def test_build_oracle_instantiates_resolved_backend():
    oracle = build_oracle(_settings(gateway_api_key="g"))
    try:
        assert isinstance(oracle, GatewayAPIOracle)
    finally:
        asyncio.run(oracle.close())

    sdk = build_oracle(_settings(use_sdk=True, sdk_api_key="k", sdk_base_url="http://oracle.test/v1"))
    try:
        assert isinstance(sdk, MultiProviderSDKOracle)
    finally:
        asyncio.run(sdk.close())


def test_unconfigured_oracle_degrades_to_unavailable():
    oracle = build_oracle_or_unavailable(_settings())

    assert isinstance(oracle, UnavailableOracle)
    with pytest.raises(OracleError):
        asyncio.run(oracle.complete("anything"))


# ---------- HTTP backend ----------

def _direct_oracle(handler):
    settings = _settings(direct_api_key="secret")
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return DirectAPIOracle(settings, client=client)


def test_direct_oracle_returns_message_content():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": '{"upsell": [1]}'}}]})

    async def call():
        oracle = _direct_oracle(handler)
        try:
            return await oracle.complete("rank these", system="be brief", task=TASK_ANALYSIS)
        finally:
            await oracle.close()

    assert asyncio.run(call()) == '{"upsell": [1]}'
    assert seen["auth"] == "Bearer secret"
    assert seen["body"]["model"] == "analysis-model"
    assert seen["body"]["temperature"] == 0.3
    assert seen["body"]["messages"][0] == {"role": "system", "content": "be brief"}
    assert seen["body"]["messages"][1] == {"role": "user", "content": "rank these"}


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="upstream exploded"),
        httpx.Response(200, json={"choices": []}),
        httpx.Response(200, json={"choices": [{"message": {"content": "   "}}]}),
        httpx.Response(200, text="<html>not json</html>"),
    ],
)
def test_direct_oracle_failures_raise_oracle_error(response):
    async def call():
        oracle = _direct_oracle(lambda request: response)
        try:
            await oracle.complete("rank these")
        finally:
            await oracle.close()

    with pytest.raises(OracleError):
        asyncio.run(call())


def test_direct_oracle_network_error_raises_oracle_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async def call():
        oracle = _direct_oracle(handler)
        try:
            await oracle.complete("rank these")
        finally:
            await oracle.close()

    with pytest.raises(OracleError):
        asyncio.run(call())
