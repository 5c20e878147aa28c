# tests/test_completion_services.py

import pytest
import requests

from core.exceptions import CompletionError
from infrastructure.completion_services import OllamaCompletionBackend

MESSAGES = [{"role": "user", "content": "What is HbA1c?"}]


class _Response:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error", response=self)

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class _Session:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append({"url": url, "json": json, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response


def _backend(session) -> OllamaCompletionBackend:
    return OllamaCompletionBackend(base_url="http://llm.local/", model="llama3.1:8b", timeout=7, session=session)


def test_complete_posts_chat_request():
    session = _Session(_Response(payload={"message": {"role": "assistant", "content": "  Glycated haemoglobin.  "}}))

    reply = _backend(session).complete(MESSAGES)

    assert reply == "Glycated haemoglobin."
    post = session.posts[0]
    assert post["url"] == "http://llm.local/api/chat"
    assert post["json"] == {"model": "llama3.1:8b", "messages": MESSAGES, "stream": False}
    assert post["timeout"] == 7


@pytest.mark.parametrize("session", [
    _Session(error=requests.exceptions.Timeout()),
    _Session(error=requests.exceptions.ConnectionError()),
    _Session(_Response(status_code=500, text="boom")),
    _Session(_Response(payload=None)),
    _Session(_Response(payload={"message": {"content": "   "}})),
    _Session(_Response(payload={"done": True})),
])
def test_failures_are_completion_errors(session):
    with pytest.raises(CompletionError):
        _backend(session).complete(MESSAGES)


def test_no_messages_is_rejected():
    session = _Session()
    with pytest.raises(CompletionError):
        _backend(session).complete([])
    assert session.posts == []
