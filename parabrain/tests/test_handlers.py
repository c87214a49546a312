"""Tests for the Telegram and LINE channel handlers."""

import base64
import hashlib
import hmac
import json

import httpx
import pytest

from parabrain.capture.handlers import LineHandler, Message, TelegramAPIError, TelegramHandler
from parabrain.capture.handlers.telegram import TELEGRAM_TEXT_LIMIT, infer_mime_type
from parabrain.common.config import CaptureSettings
from parabrain.common.schemas import CaptureSource

FAST = CaptureSettings(retry_count=0, retry_base_delay=0.0)


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _telegram(handler=None, **kwargs):
    handler = handler or (lambda request: httpx.Response(200, json={"ok": True}))
    return TelegramHandler("TOKEN", kwargs.pop("settings", FAST), client=_client(handler), **kwargs)


def _text_update(text="buy milk", user_id=42, chat_id=42):
    return {
        "update_id": 1001,
        "message": {
            "message_id": 7,
            "from": {"id": user_id},
            "chat": {"id": chat_id},
            "text": text,
        },
    }


class TestMessage:
    def test_photo_log_message(self):
        msg = Message(text="", user="1", channel="1", source=CaptureSource.TELEGRAM, event_id="e",
                      photo_file_id="f", caption="  slip \n lunch ")
        assert msg.is_photo and msg.is_valid
        assert not msg.is_id_command
        assert msg.log_message == "[PHOTO] slip lunch"

    def test_id_command(self):
        msg = Message(text=" ID ", user="1", channel="1", source=CaptureSource.LINE, event_id="e")
        assert msg.is_id_command

    def test_empty_is_invalid(self):
        assert not Message(text="  ", user="1", channel="1", source=CaptureSource.WEB, event_id="e").is_valid


class TestTelegramParse:
    @pytest.mark.asyncio
    async def test_text_message(self):
        msg = await _telegram().parse_event(_text_update())
        assert msg.text == "buy milk"
        assert msg.user == "42"
        assert msg.channel == "42"
        assert msg.event_id == "1001"
        assert msg.message_id == 7
        assert msg.source is CaptureSource.TELEGRAM

    @pytest.mark.asyncio
    async def test_largest_photo_kept(self):
        update = {
            "update_id": 5,
            "message": {
                "message_id": 8,
                "from": {"id": 1},
                "chat": {"id": 1},
                "caption": "receipt",
                "photo": [
                    {"file_id": "small", "file_size": 100},
                    {"file_id": "large", "file_size": 5000},
                    {"file_id": "medium", "file_size": 900},
                ],
            },
        }
        msg = await _telegram().parse_event(update)
        assert msg.photo_file_id == "large"
        assert msg.caption == "receipt"

    @pytest.mark.asyncio
    async def test_event_id_without_update_id(self):
        update = _text_update()
        del update["update_id"]
        msg = await _telegram().parse_event(update)
        assert msg.event_id == "42:7"

    @pytest.mark.asyncio
    async def test_non_message_ignored(self):
        assert await _telegram().parse_events({"callback_query": {"id": "x"}}) == []


class TestTelegramAccess:
    def test_secret_token(self):
        handler = _telegram(webhook_secret="s3cret")
        assert handler.verify_signature(b"{}", "s3cret")
        assert not handler.verify_signature(b"{}", "wrong")
        assert not handler.verify_signature(b"{}", "")

    def test_no_secret_accepts_all(self):
        assert _telegram().verify_signature(b"{}", "")

    @pytest.mark.asyncio
    async def test_allow_list(self):
        handler = _telegram(allowed_user_id="42", allowed_chat_id="42")
        assert handler.should_process(await handler.parse_event(_text_update()))
        assert not handler.should_process(await handler.parse_event(_text_update(user_id=7)))
        assert not handler.should_process(await handler.parse_event(_text_update(chat_id=-100)))

    def test_mime_inference(self):
        assert infer_mime_type("photos/file_1.PNG") == "image/png"
        assert infer_mime_type("photos/file_2") == "image/jpeg"


class TestTelegramSend:
    @pytest.mark.asyncio
    async def test_reply_references_message(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"ok": True})

        tg = _telegram(handler)
        msg = await tg.parse_event(_text_update())
        await tg.send_reply(msg, "x" * 5000)

        assert bodies[0]["reply_to_message_id"] == 7
        assert bodies[0]["chat_id"] == "42"
        assert len(bodies[0]["text"]) == TELEGRAM_TEXT_LIMIT

    @pytest.mark.asyncio
    async def test_reply_falls_back_without_reference(self):
        bodies = []

        def handler(request):
            body = json.loads(request.content)
            bodies.append(body)
            if "reply_to_message_id" in body:
                return httpx.Response(400, json={"ok": False, "description": "Bad Request: message to be replied not found"})
            return httpx.Response(200, json={"ok": True})

        tg = _telegram(handler)
        msg = await tg.parse_event(_text_update())
        await tg.send_reply(msg, "done")

        assert len(bodies) == 2
        assert "reply_to_message_id" not in bodies[1]

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self):
        tg = _telegram(lambda request: httpx.Response(403, json={"ok": False, "description": "Forbidden: bot was blocked"}))
        msg = await tg.parse_event(_text_update())
        with pytest.raises(TelegramAPIError, match="blocked"):
            await tg.send_reply(msg, "done")

    @pytest.mark.asyncio
    async def test_send_retries_server_error(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(502)
            return httpx.Response(200, json={"ok": True})

        tg = _telegram(handler, settings=CaptureSettings(retry_count=1, retry_base_delay=0.0))
        await tg.send_text("42", "hi")
        assert len(calls) == 2


class TestTelegramPhoto:
    @staticmethod
    def _handler(data, content_type="image/png"):
        def handler(request):
            if request.url.path.endswith("/getFile"):
                assert request.url.params["file_id"] == "large"
                return httpx.Response(200, json={"ok": True, "result": {"file_path": "photos/file_1.jpg"}})
            assert request.url.path == "/file/botTOKEN/photos/file_1.jpg"
            return httpx.Response(200, content=data, headers={"content-type": content_type})
        return handler

    @pytest.mark.asyncio
    async def test_download(self):
        photo = await _telegram(self._handler(b"abc")).fetch_photo("large")
        assert photo.image_base64 == "YWJj"
        assert photo.mime_type == "image/png"
        assert photo.byte_length == 3

    @pytest.mark.asyncio
    async def test_mime_from_path_when_header_generic(self):
        photo = await _telegram(self._handler(b"abc", "application/octet-stream")).fetch_photo("large")
        assert photo.mime_type == "image/jpeg"

    @pytest.mark.asyncio
    async def test_size_cap(self):
        tg = _telegram(self._handler(b"x" * 20), settings=CaptureSettings(retry_count=0, image_max_bytes=10))
        with pytest.raises(TelegramAPIError, match="too large"):
            await tg.fetch_photo("large")

    @pytest.mark.asyncio
    async def test_get_file_failure(self):
        tg = _telegram(lambda request: httpx.Response(200, json={"ok": False}))
        with pytest.raises(TelegramAPIError):
            await tg.fetch_photo("large")


def _line(handler=None, **kwargs):
    handler = handler or (lambda request: httpx.Response(200, json={}))
    return LineHandler("ACCESS", FAST, client=_client(handler), **kwargs)


LINE_BODY = {
    "events": [
        {
            "type": "message",
            "webhookEventId": "01HX",
            "replyToken": "rt-1",
            "source": {"userId": "U123"},
            "message": {"type": "text", "id": "m1", "text": "ซื้อนม"},
        },
        {"type": "follow", "source": {"userId": "U123"}},
        {
            "type": "message",
            "replyToken": "rt-2",
            "source": {"userId": "U123"},
            "message": {"type": "sticker", "id": "m2"},
        },
        {
            "type": "message",
            "replyToken": "rt-3",
            "source": {"userId": "U123"},
            "message": {"type": "text", "id": "m3", "text": "id"},
        },
    ]
}


class TestLine:
    @pytest.mark.asyncio
    async def test_parse_text_events_only(self):
        messages = await _line().parse_events(LINE_BODY)
        assert [m.text for m in messages] == ["ซื้อนม", "id"]
        assert messages[0].event_id == "01HX"
        assert messages[1].event_id == "m3"
        assert messages[0].reply_token == "rt-1"
        assert messages[0].source is CaptureSource.LINE

    @pytest.mark.asyncio
    async def test_parse_event_first_text(self):
        assert (await _line().parse_event(LINE_BODY)).text == "ซื้อนม"

    def test_signature(self):
        body = json.dumps(LINE_BODY).encode("utf-8")
        good = base64.b64encode(hmac.new(b"chan-secret", body, hashlib.sha256).digest()).decode("ascii")
        handler = _line(channel_secret="chan-secret")
        assert handler.verify_signature(body, good)
        assert not handler.verify_signature(body, "bad")
        assert not handler.verify_signature(body, "")
        assert _line().verify_signature(body, "")

    @pytest.mark.asyncio
    async def test_allow_list_and_id_reply(self):
        handler = _line(allowed_user_id="U999")
        msg = (await handler.parse_events(LINE_BODY))[0]
        assert not handler.is_allowed(msg)
        assert handler.id_reply(msg) == "Your User ID is:\nU123"

    @pytest.mark.asyncio
    async def test_send_reply(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={})

        line = _line(handler)
        msg = (await line.parse_events(LINE_BODY))[0]
        await line.send_reply(msg, "รับทราบครับ")

        request = seen[0]
        assert request.headers["authorization"] == "Bearer ACCESS"
        assert json.loads(request.content) == {
            "replyToken": "rt-1",
            "messages": [{"type": "text", "text": "รับทราบครับ"}],
        }

    @pytest.mark.asyncio
    async def test_send_reply_without_token(self, caplog):
        import logging
        line = _line(lambda request: pytest.fail("no request expected"))
        msg = Message(text="hi", user="U1", channel="U1", source=CaptureSource.LINE, event_id="e9")
        with caplog.at_level(logging.WARNING, logger="parabrain.capture.handlers.line"):
            await line.send_reply(msg, "hi")
        assert "no reply token" in caplog.text
