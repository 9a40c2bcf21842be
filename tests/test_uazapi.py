import asyncio
import json

import httpx
import pytest

from zapflow.services import uazapi


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("(11) 98765-4321", "5511987654321"),
        ("1198765432", "551198765432"),
        ("+55 11 98765-4321", "5511987654321"),
        ("5511987654321@s.whatsapp.net", "5511987654321"),
        ("4420795550123", "4420795550123"),
        ("351912345678", "351912345678"),
    ],
)
def test_format_phone_number(raw, expected):
    assert uazapi.format_phone_number(raw) == expected


@pytest.fixture
def gateway(monkeypatch):
    requests = []
    responses = {"status": 200}

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(responses["status"], json={"id": "wamid-1"})

    monkeypatch.setattr(uazapi, "_client", httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    return requests, responses


def test_send_text_posts_with_instance_token(gateway):
    requests, _ = gateway

    data = asyncio.run(uazapi.send_text("tok-1", "5511987654321", "Yes, we're open 9-6!"))

    assert data == {"id": "wamid-1"}
    request = requests[0]
    assert request.url.path == "/send/text"
    assert request.headers["token"] == "tok-1"
    assert json.loads(request.content) == {"number": "5511987654321", "text": "Yes, we're open 9-6!"}


def test_send_text_falls_back_to_global_token(gateway, monkeypatch):
    monkeypatch.setenv("UAZAPI_GLOBAL_TOKEN", "global-tok")
    requests, _ = gateway

    asyncio.run(uazapi.send_text(None, "5511987654321", "hi"))

    assert requests[0].headers["token"] == "global-tok"


def test_send_text_raises_on_error_status(gateway):
    _, responses = gateway
    responses["status"] = 500

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(uazapi.send_text("tok-1", "5511987654321", "hi"))


def test_send_presence_is_best_effort(gateway):
    requests, responses = gateway

    assert asyncio.run(uazapi.send_presence("tok-1", "5511987654321")) is True
    assert json.loads(requests[0].content) == {"number": "5511987654321", "presence": "composing"}

    responses["status"] = 503
    assert asyncio.run(uazapi.send_presence("tok-1", "5511987654321", "paused")) is False


@pytest.mark.parametrize(
    "data, expected",
    [
        ({"id": "wamid-1"}, "wamid-1"),
        ({"messageId": "3EB0AA"}, "3EB0AA"),
        ({"messageid": "owner:3EB0BB"}, "owner:3EB0BB"),
        ({"key": {"id": "3EB0CC"}}, "3EB0CC"),
        ({}, None),
        ("queued", None),
    ],
)
def test_extract_message_id(data, expected):
    assert uazapi.extract_message_id(data) == expected
