from __future__ import annotations

import json
from typing import List

import httpx
import pytest

from chat_relay.config import LLMSettings
from chat_relay.errors import LLMError
from chat_relay.llm import LLMClient, retry_delay

ENDPOINT = "http://llm.test/v1/chat/completions"


def ok_payload(text: str = "Hello there") -> dict:
    return {
        "choices": [{"message": {"role": "assistant", "content": f"  {text}  "}}],
        "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7},
    }


def make_client(handler, sleeps: List[float], **kw) -> LLMClient:
    return LLMClient(
        ENDPOINT,
        "test-model",
        transport=httpx.MockTransport(handler),
        sleep=sleeps.append,
        **kw,
    )


def test_retry_delay_is_capped():
    assert [retry_delay(n) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


def test_complete_sends_openai_body():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        seen["ua"] = request.headers["user-agent"]
        return httpx.Response(200, json=ok_payload())

    sleeps: List[float] = []
    client = make_client(handler, sleeps, max_tokens=50, temperature=0.2, top_p=0.5)
    reply = client.complete([{"role": "user", "content": "x" * 5000}])

    assert reply == "Hello there"
    body = seen["body"]
    assert body["model"] == "test-model"
    assert body["stream"] is False
    assert body["max_tokens"] == 50
    assert body["temperature"] == 0.2
    assert body["top_p"] == 0.5
    assert len(body["messages"][0]["content"]) == 2000
    assert seen["ua"] == "ChatRelay/1.0"
    assert sleeps == []


def test_server_errors_are_retried_with_backoff():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] < 3:
            return httpx.Response(503, text="loading model")
        return httpx.Response(200, json=ok_payload("finally"))

    sleeps: List[float] = []
    client = make_client(handler, sleeps, max_retries=3)
    assert client.complete([{"role": "user", "content": "hi"}]) == "finally"
    assert calls["n"] == 3
    assert sleeps == [1.0, 2.0]


def test_connection_errors_exhaust_retries():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    sleeps: List[float] = []
    client = make_client(handler, sleeps, max_retries=3)
    with pytest.raises(LLMError, match="LLM request failed"):
        client.complete([{"role": "user", "content": "hi"}])
    assert sleeps == [1.0, 2.0]


def test_client_errors_are_not_retried():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(400, text="bad request")

    sleeps: List[float] = []
    client = make_client(handler, sleeps)
    with pytest.raises(LLMError) as exc:
        client.complete([{"role": "user", "content": "hi"}])
    assert exc.value.status == 400
    assert calls["n"] == 1
    assert sleeps == []


@pytest.mark.parametrize(
    "payload",
    [
        {"error": {"message": "model not loaded"}},
        {"choices": []},
        {"choices": [{"message": {"content": ""}}]},
        {"choices": ["oops"]},
        {"choices": [{"message": "plain text"}]},
        ["not", "an", "object"],
    ],
)
def test_unusable_payloads_raise(payload):
    sleeps: List[float] = []
    client = make_client(lambda r: httpx.Response(200, json=payload), sleeps)
    with pytest.raises(LLMError):
        client.complete([{"role": "user", "content": "hi"}])


def test_empty_messages_rejected():
    client = make_client(lambda r: httpx.Response(200, json=ok_payload()), [])
    with pytest.raises(LLMError):
        client.complete([])


def test_test_connection_reports_failures():
    ok = make_client(lambda r: httpx.Response(200, json=ok_payload("OK")), [])
    assert ok.test_connection() == {"success": True, "response": "OK", "working": True}

    bad = make_client(lambda r: httpx.Response(401, text="nope"), [])
    result = bad.test_connection()
    assert result["success"] is False
    assert result["working"] is False


def test_from_settings():
    s = LLMSettings(endpoint=ENDPOINT, model="m", max_retries=5, timeout=30)
    client = LLMClient.from_settings(s, transport=httpx.MockTransport(lambda r: httpx.Response(200, json=ok_payload())))
    info = client.info()
    assert info["endpoint"] == ENDPOINT
    assert info["model"] == "m"
    assert info["max_retries"] == 5
    assert info["timeout"] == 30.0
    client.close()
