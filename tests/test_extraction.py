import json
import socket
import threading
import time

import pytest
import requests
from urllib3.exceptions import MaxRetryError, ReadTimeoutError

from receipt_app.errors import (
    ExtractionFormatError,
    ReceiptShapeError,
    UpstreamError,
    UpstreamTimeoutError,
)
from receipt_app.services.extraction import SYSTEM_PROMPT, ExtractionService, _is_timeout

from fakes import MILK_RECEIPT, FakeResponse, FakeSession, completion


@pytest.fixture()
def session():
    return FakeSession()


@pytest.fixture()
def extractor(session):
    return ExtractionService("sk-test", "org-test", "proj-test", timeout=12, session=session)


class TestRequest:
    def test_payload_and_headers(self, extractor, session):
        session.queue_completion(json.dumps(MILK_RECEIPT))
        extractor.request_completion("https://images.example.com/r.jpg")

        sent = session.posts[0]
        assert sent["url"] == "https://api.openai.com/v1/chat/completions"
        assert sent["timeout"] == 12
        assert sent["headers"]["Authorization"] == "Bearer sk-test"
        assert sent["headers"]["OpenAI-Organization"] == "org-test"
        assert sent["headers"]["OpenAI-Project"] == "proj-test"

        body = sent["json"]
        assert body["model"] == "gpt-4o-2024-08-06"
        assert body["temperature"] == 1
        assert body["max_tokens"] == 1000
        assert body["top_p"] == 1
        assert body["frequency_penalty"] == 0
        assert body["presence_penalty"] == 0
        assert body["response_format"] == {"type": "json_object"}
        assert body["messages"][0]["content"][0]["text"] == SYSTEM_PROMPT
        assert body["messages"][1]["content"][0]["image_url"]["url"] == "https://images.example.com/r.jpg"

    def test_server_error_is_upstream_error(self, extractor, session):
        session.post_answers.append(FakeResponse(503, {"error": {"message": "overloaded"}}))
        with pytest.raises(UpstreamError) as exc:
            extractor.request_completion("https://images.example.com/r.jpg")
        assert not isinstance(exc.value, UpstreamTimeoutError)
        assert "503" in exc.value.message

    def test_rejected_credentials_are_upstream_error(self, extractor, session):
        session.post_answers.append(FakeResponse(401, {"error": {"message": "bad key"}}))
        with pytest.raises(UpstreamError):
            extractor.request_completion("https://images.example.com/r.jpg")

    def test_timeout(self, extractor, session):
        session.post_answers.append(requests.ReadTimeout("read timed out"))
        with pytest.raises(UpstreamTimeoutError):
            extractor.request_completion("https://images.example.com/r.jpg")

    def test_connection_error(self, extractor, session):
        session.post_answers.append(requests.ConnectionError("refused"))
        with pytest.raises(UpstreamError):
            extractor.request_completion("https://images.example.com/r.jpg")


class TestParse:
    def test_valid_receipt(self, extractor):
        parsed, document = extractor.parse_completion(completion(json.dumps(MILK_RECEIPT)))
        assert parsed == MILK_RECEIPT
        assert [item.name for item in document.items] == ["Milk", "Bread"]
        assert document.total == 6

    def test_markdown_fences_are_stripped(self, extractor):
        content = "```json\n" + json.dumps(MILK_RECEIPT) + "\n```"
        parsed, _ = extractor.parse_completion(completion(content))
        assert parsed == MILK_RECEIPT

    def test_missing_taxes_default_to_empty(self, extractor):
        _, document = extractor.parse_completion(completion('{"items": [], "total": 0}'))
        assert document.taxes == []

    def test_not_json_is_format_error(self, extractor):
        with pytest.raises(ExtractionFormatError) as exc:
            extractor.parse_completion(completion("Sorry, I can't read that receipt."))
        assert not isinstance(exc.value, ReceiptShapeError)
        assert exc.value.message == "Invalid receipt data format"

    def test_null_is_shape_error(self, extractor):
        with pytest.raises(ReceiptShapeError) as exc:
            extractor.parse_completion(completion("null"))
        assert exc.value.message == "Invalid receipt data structure"

    def test_list_is_shape_error(self, extractor):
        with pytest.raises(ReceiptShapeError):
            extractor.parse_completion(completion("[1, 2, 3]"))

    def test_currency_strings_are_shape_error(self, extractor):
        content = json.dumps({"items": [{"name": "Milk", "price": "$3.50"}], "taxes": [], "total": 3.5})
        with pytest.raises(ReceiptShapeError):
            extractor.parse_completion(completion(content))

    def test_missing_choices_is_format_error(self, extractor):
        with pytest.raises(ExtractionFormatError):
            extractor.parse_completion({"choices": []})


def test_fetch_image(extractor, session):
    session.queue_image(b"\x89PNG...")
    assert extractor.fetch_image("https://images.example.com/r.png") == b"\x89PNG..."
    assert session.gets == ["https://images.example.com/r.png"]


def test_fetch_image_not_found(extractor, session):
    session.get_answers.append(FakeResponse(404))
    with pytest.raises(UpstreamError):
        extractor.fetch_image("https://images.example.com/missing.png")


@pytest.fixture()
def silent_server():
    """A local server that accepts connections and never answers."""
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(5)
    listener.settimeout(0.05)
    accepted = []
    stop = threading.Event()

    def serve():
        while not stop.is_set():
            try:
                conn, _ = listener.accept()
            except (socket.timeout, OSError):
                continue
            accepted.append(conn)

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{listener.getsockname()[1]}/v1/chat/completions", accepted
    stop.set()
    thread.join(timeout=1)
    for conn in accepted:
        conn.close()
    listener.close()


def test_read_timeout_with_retrying_session_is_not_retried(silent_server):
    url, accepted = silent_server
    extractor = ExtractionService("sk-test", api_url=url, timeout=0.3, retries=1)

    with pytest.raises(UpstreamTimeoutError):
        extractor.request_completion("https://images.example.com/r.jpg")

    time.sleep(0.2)
    assert len(accepted) == 1


def test_timeout_wrapped_by_urllib3_counts_as_timeout():
    wrapped = MaxRetryError(None, "/v1/chat/completions", ReadTimeoutError(None, "/v1/chat/completions", "read timed out"))
    assert _is_timeout(requests.ConnectionError(wrapped))
    assert not _is_timeout(requests.ConnectionError("connection refused"))


def test_wrapped_timeout_maps_to_504_error(extractor, session):
    wrapped = MaxRetryError(None, "/v1/chat/completions", ReadTimeoutError(None, "/v1/chat/completions", "read timed out"))
    session.post_answers.append(requests.ConnectionError(wrapped))
    with pytest.raises(UpstreamTimeoutError) as exc:
        extractor.request_completion("https://images.example.com/r.jpg")
    assert exc.value.status_code == 504
