import pathlib
import sys

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, str(pathlib.Path(__file__).resolve().parents[1]))

import faleproxy


SAMPLE_HTML_WITH_YALE = """<!DOCTYPE html>
<html>
<head>
  <title>Yale University Test Page</title>
  <meta charset="utf-8">
</head>
<body>
  <header>
    <h1>Welcome to Yale University</h1>
    <nav>
      <ul>
        <li><a href="https://www.yale.edu/about">About Yale</a></li>
        <li><a href="https://www.yale.edu/admissions">Yale Admissions</a></li>
      </ul>
    </nav>
  </header>
  <main>
    <p>Yale University is a private Ivy League research university in New Haven, Connecticut.</p>
    <p>Yale was founded in 1701 as the Collegiate School.</p>
    <img src="https://www.yale.edu/images/logo.png" alt="Yale Logo">
    <p>Contact us at <a href="mailto:info@yale.edu" title="Email Yale">info@yale.edu</a></p>
  </main>
</body>
</html>
"""


class FakeResponse:
    def __init__(
        self,
        text: str,
        status_code: int = 200,
        content_type: str = "text/html; charset=utf-8",
        apparent_encoding: str = "utf-8",
    ) -> None:
        self.content = text.encode("utf-8")
        self.status_code = status_code
        self.headers = {"Content-Type": content_type}
        self.apparent_encoding = apparent_encoding
        self.encoding = "utf-8" if "charset" in content_type else "ISO-8859-1"

    @property
    def text(self) -> str:
        return self.content.decode(self.encoding)

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise faleproxy.requests.HTTPError(f"{self.status_code} Client Error for url")


@pytest.fixture
def sample_html() -> str:
    return SAMPLE_HTML_WITH_YALE


@pytest.fixture
def fake_get(monkeypatch):
    """Replace requests.get; records calls and serves the sample page."""
    calls = []

    def _get(url, headers=None, timeout=None):
        calls.append({"url": url, "headers": headers, "timeout": timeout})
        return FakeResponse(SAMPLE_HTML_WITH_YALE)

    monkeypatch.setattr(faleproxy.requests, "get", _get)
    return calls


@pytest.fixture
def client() -> TestClient:
    return TestClient(faleproxy.create_app(faleproxy.ProxyConfig()))
