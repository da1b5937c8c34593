from pathlib import Path

import pytest

from finance_assistant import create_app
from finance_assistant.extraction import DocumentExtractor


class FakeResponse:
    def __init__(self, text):
        self.text = text


class FakeGemini:
    """Stands in for ``genai.GenerativeModel``.

    Replies for document prompts are looked up by the inline document bytes;
    text-only prompts get ``text_reply``. A reply that is an exception is raised.
    """

    def __init__(self):
        self.replies = {}
        self.text_reply = "{}"
        self.calls = []
        self.models = []

    def model_factory(self, **kwargs):
        self.models.append(kwargs)
        return _FakeModel(self, kwargs)


class _FakeModel:
    def __init__(self, gemini, kwargs):
        self._gemini = gemini
        self.kwargs = kwargs

    def generate_content(self, contents):
        self._gemini.calls.append({"model": self.kwargs, "contents": contents})
        reply = self._gemini.text_reply
        if isinstance(contents, list):
            for part in contents:
                if isinstance(part, dict) and "data" in part:
                    reply = self._gemini.replies.get(part["data"], reply)
        if isinstance(reply, Exception):
            raise reply
        return FakeResponse(reply)


@pytest.fixture()
def gemini():
    return FakeGemini()


@pytest.fixture()
def extractor(gemini):
    return DocumentExtractor(model_factory=gemini.model_factory)


@pytest.fixture()
def app(tmp_path: Path, extractor):
    db_path = tmp_path / "test.sqlite"
    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test",
            "DATABASE": str(db_path),
            "DATABASE_URL": "",
            "EXTRACTOR": extractor,
            "USER_DISPLAY_NAME": "Sam",
        }
    )

    with app.app_context():
        app.init_db()

    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def db(app):
    with app.app_context():
        yield app.get_db()
