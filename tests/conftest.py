import io
import os
import sys
import tempfile

# Configure before the app module builds its module-level instance.
os.environ["FLASK_CONFIG"] = "testing"
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="wastewise-logs-"))
os.environ.setdefault("UPLOAD_FOLDER", tempfile.mkdtemp(prefix="wastewise-uploads-"))
os.environ["GEMINI_API_KEY"] = ""
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest
from PIL import Image

from app import create_app
from extensions import db
from models import User
from utils.ai_vision import WasteAnalysis, WasteVerification


class FakeVerifier:
    """Stands in for the Gemini client; records calls and replays a canned answer."""

    def __init__(self):
        self.verification = WasteVerification(type_match=True, quantity_match=True, confidence=0.9)
        self.analysis = WasteAnalysis(waste_type="Plastic bottles", quantity="2 kg", confidence=0.8)
        self.error = None
        self.calls = []

    def verify(self, image_bytes, mime_type, expected_type, expected_amount):
        self.calls.append(("verify", expected_type, expected_amount))
        if self.error:
            raise self.error
        return self.verification

    def analyze(self, image_bytes, mime_type):
        self.calls.append(("analyze", mime_type))
        if self.error:
            raise self.error
        return self.analysis

    def close(self):
        pass


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def web_app(verifier):
    """App with no context held open, so each test-client request gets its own ``g`` and session."""
    app = create_app("testing", vision_client=verifier)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def app(web_app):
    """App with a pushed context for calling services directly."""
    ctx = web_app.app_context()
    ctx.push()
    yield web_app
    ctx.pop()


@pytest.fixture
def client(web_app):
    return web_app.test_client()


@pytest.fixture
def reporter(app):
    return User.get_or_create("reporter@wastewise.org", "Rita Reporter")


@pytest.fixture
def collector(app):
    return User.get_or_create("collector@wastewise.org", "Cole Collector")


@pytest.fixture
def other_collector(app):
    return User.get_or_create("second@wastewise.org", "Sam Second")


@pytest.fixture
def png_bytes():
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), color=(20, 120, 40)).save(buffer, format="PNG")
    return buffer.getvalue()
