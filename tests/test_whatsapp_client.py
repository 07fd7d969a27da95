import hashlib
import hmac
from types import SimpleNamespace

import pytest
import requests

from bkbot.text import chunk_message
from bkbot.whatsapp_client import WhatsAppClient, WhatsAppError, parse_webhook, verify_signature


class FakeHttp:
    def __init__(self, responses=None, error=None):
        self.responses = list(responses or [])
        self.error = error
        self.posts = []
        self.gets = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.posts.append((url, json))
        if self.error:
            raise self.error
        return self.responses.pop(0) if self.responses else SimpleNamespace(status_code=200, text="{}")

    def get(self, url, headers=None, timeout=None):
        self.gets.append(url)
        return self.responses.pop(0)


def test_short_body_is_one_chunk():
    assert chunk_message("hola") == ["hola"]
    assert chunk_message("   ") == []


def test_chunks_break_on_lines_and_respect_limit():
    body = "\n".join(f"{i}. DISPLAY IPHONE {i} — $850.00 — ✅ Hay existencia" for i in range(60))
    chunks = chunk_message(body, 300)
    assert len(chunks) > 1
    assert all(len(c) <= 300 for c in chunks)
    assert "\n".join(chunks) == body


def test_overlong_line_is_split_on_spaces():
    chunks = chunk_message("palabra " * 100, 50)
    assert all(len(c) <= 50 for c in chunks)
    assert all(not c.startswith(" ") for c in chunks)


def test_send_text_posts_every_chunk():
    http = FakeHttp()
    wa = WhatsAppClient("token", "12345", chunk_limit=20, http=http)
    sent = wa.send_text("5215550000001", "linea uno\nlinea dos\nlinea tres")
    assert sent == 2
    url, payload = http.posts[0]
    assert url.endswith("/v20.0/12345/messages")
    assert payload["to"] == "5215550000001"
    assert payload["text"]["body"] == "linea uno\nlinea dos"


def test_send_text_raises_on_transport_failure():
    with pytest.raises(WhatsAppError):
        WhatsAppClient("t", "1", http=FakeHttp(error=requests.ConnectionError("down"))).send_text("1", "hola")
    rejected = FakeHttp(responses=[SimpleNamespace(status_code=401, text="bad token")])
    with pytest.raises(WhatsAppError):
        WhatsAppClient("t", "1", http=rejected).send_text("1", "hola")


def test_fetch_media_follows_lookup_url():
    http = FakeHttp(responses=[
        SimpleNamespace(status_code=200, json=lambda: {"url": "https://cdn.example/m1", "mime_type": "image/png"}),
        SimpleNamespace(status_code=200, content=b"\x89PNG"),
    ])
    data, mime = WhatsAppClient("t", "1", http=http).fetch_media("m1")
    assert (data, mime) == (b"\x89PNG", "image/png")
    assert http.gets == ["https://graph.facebook.com/v20.0/m1", "https://cdn.example/m1"]


def test_parse_webhook_handles_each_message_kind():
    body = {"entry": [{"changes": [{"value": {
        "messages": [
            {"from": "521", "id": "a", "type": "text", "text": {"body": "hola"}},
            {"from": "521", "id": "b", "type": "image", "image": {"id": "MEDIA", "mime_type": "image/jpeg", "caption": "este"}},
            {"from": "521", "id": "c", "type": "interactive", "interactive": {"button_reply": {"id": "x", "title": "Pro Max"}}},
            {"from": "521", "id": "d", "type": "audio", "audio": {"id": "AUD"}},
            {"id": "e", "type": "text", "text": {"body": "sin remitente"}},
        ],
        "statuses": [{"id": "z", "status": "delivered"}],
    }}]}]}
    messages = parse_webhook(body)
    assert [m.message_id for m in messages] == ["a", "b", "c", "d"]
    assert messages[1].media_id == "MEDIA" and messages[1].text == "este"
    assert (messages[2].type, messages[2].text) == ("text", "Pro Max")
    assert messages[3].type == "audio"
    assert parse_webhook({"entry": [{"changes": [{"value": {"statuses": [{}]}}]}]}) == []
    assert parse_webhook([]) == []


def test_verify_signature():
    payload = b'{"entry": []}'
    good = "sha256=" + hmac.new(b"secret", payload, hashlib.sha256).hexdigest()
    assert verify_signature(payload, good, "secret")
    assert not verify_signature(payload, good, "other")
    assert not verify_signature(payload, None, "secret")
    assert not verify_signature(payload, "md5=abc", "secret")
