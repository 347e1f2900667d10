from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping
from urllib.parse import urlsplit

import requests
from bs4 import BeautifulSoup, NavigableString, Tag
from bs4.element import CData, Comment, Declaration, Doctype, ProcessingInstruction
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.templating import Jinja2Templates

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("faleproxy")

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

DEFAULT_TARGET_WORD = "yale"
DEFAULT_REPLACEMENT_WORD = "fale"
DEFAULT_PORT = 3001
DEFAULT_FETCH_TIMEOUT = 15.0
MIN_FETCH_TIMEOUT = 1.0
MAX_FETCH_TIMEOUT = 120.0

# Elements whose whole text content is re-derived and rewritten after the text pass
HEADING_TAGS = ["title", "h1", "h2", "h3", "h4", "h5", "h6"]

# Markup-level strings; every other NavigableString (incl. script, style, rt, rp) is text
NON_TEXT_STRING_TYPES = (Comment, CData, Declaration, Doctype, ProcessingInstruction)


# ------------------------------------------------------------------------------
# Errors
# ------------------------------------------------------------------------------

class FaleproxyError(Exception):
    status_code = 500
    message = "Unexpected error"

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class MissingInputError(FaleproxyError):
    status_code = 400
    message = "URL is required"


class InvalidUrlError(FaleproxyError):
    # 500 rather than 400 to stay compatible with existing API clients
    status_code = 500
    message = "Invalid URL format"


class FetchError(FaleproxyError):
    status_code = 500

    def __init__(self, cause: str) -> None:
        self.cause = cause
        super().__init__(f"Failed to fetch content: {cause}")


# ------------------------------------------------------------------------------
# Config helpers
# ------------------------------------------------------------------------------

def as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


@dataclass
class ProxyConfig:
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    target_word: str = DEFAULT_TARGET_WORD
    replacement_word: str = DEFAULT_REPLACEMENT_WORD
    fetch_timeout: float | None = DEFAULT_FETCH_TIMEOUT
    user_agent: str = ""
    log_level: str = "INFO"


def build_proxy_config(config_map: Mapping[str, str]) -> ProxyConfig:
    timeout_raw = config_map.get("FALEPROXY_FETCH_TIMEOUT")
    fetch_timeout: float | None
    if timeout_raw is not None and timeout_raw.strip() in {"", "0"}:
        fetch_timeout = None
    else:
        requested_timeout = as_float(timeout_raw, default=DEFAULT_FETCH_TIMEOUT)
        fetch_timeout = max(MIN_FETCH_TIMEOUT, min(MAX_FETCH_TIMEOUT, requested_timeout))
        if fetch_timeout != requested_timeout:
            logger.warning(
                "Clamping fetch timeout from %s to %s seconds",
                requested_timeout,
                fetch_timeout,
            )

    target_word = (config_map.get("FALEPROXY_TARGET_WORD") or DEFAULT_TARGET_WORD).strip()
    replacement_word = (config_map.get("FALEPROXY_REPLACEMENT_WORD") or DEFAULT_REPLACEMENT_WORD).strip()

    return ProxyConfig(
        host=config_map.get("FALEPROXY_HOST", "0.0.0.0"),
        port=as_int(config_map.get("FALEPROXY_PORT"), default=DEFAULT_PORT),
        target_word=target_word,
        replacement_word=replacement_word,
        fetch_timeout=fetch_timeout,
        user_agent=config_map.get("FALEPROXY_USER_AGENT", "").strip(),
        log_level=config_map.get("FALEPROXY_LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


# ------------------------------------------------------------------------------
# Fetching
# ------------------------------------------------------------------------------

def validate_url(url: str) -> str:
    try:
        parts = urlsplit(url)
    except ValueError as exc:
        raise InvalidUrlError() from exc
    if not parts.scheme or not parts.netloc:
        raise InvalidUrlError()
    return url


def fetch_document(url: str, timeout: float | None = None, user_agent: str = "") -> str:
    """Fetch ``url`` once and return the response body.

    The URL is validated before any network I/O. Failures of any kind are
    raised as :class:`FetchError`; nothing is retried and nothing is cached.
    """
    validate_url(url)

    headers: Dict[str, str] = {}
    if user_agent:
        headers["User-Agent"] = user_agent

    logger.info("Fetching %s", url)
    try:
        response = requests.get(url, headers=headers, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise FetchError(str(exc)) from exc

    # requests assumes ISO-8859-1 for text/* without a declared charset
    if "charset" not in response.headers.get("Content-Type", "").lower():
        response.encoding = response.apparent_encoding
    return response.text


# ------------------------------------------------------------------------------
# Rewriting
# ------------------------------------------------------------------------------

def case_variants(word: str) -> List[str]:
    return [word.upper(), word[:1].upper() + word[1:].lower(), word.lower()]


def substitute(text: str, target: str, replacement: str) -> str:
    if not target or target.lower() not in text.lower():
        return text

    for find, replace in zip(case_variants(target), case_variants(replacement)):
        text = text.replace(find, replace)
    return text


@dataclass(frozen=True)
class SubstitutionRule:
    target: str = DEFAULT_TARGET_WORD
    replacement: str = DEFAULT_REPLACEMENT_WORD

    def apply(self, text: str) -> str:
        return substitute(text, self.target, self.replacement)


@dataclass
class RewriteResult:
    content: str
    title: str


def is_text_node(node: Any) -> bool:
    return isinstance(node, NavigableString) and not isinstance(node, NON_TEXT_STRING_TYPES)


def rewrite_text_nodes(soup: BeautifulSoup, rule: SubstitutionRule) -> int:
    changed = 0
    # Collect first; replace_with detaches nodes from the iteration
    for node in [n for n in soup.descendants if is_text_node(n)]:
        text = str(node)
        new_text = rule.apply(text)
        if new_text != text:
            node.replace_with(type(node)(new_text))
            changed += 1
    return changed


def rewrite_element_text(element: Tag, rule: SubstitutionRule) -> bool:
    """Rewrite an element's full text content.

    Catches target words split across nested inline nodes. When the text
    changes the element's children collapse into a single text node;
    descendants that get_text() skips (script, template, comments) are
    dropped along with the markup.
    """
    text = element.get_text()
    new_text = rule.apply(text)
    if new_text == text:
        return False
    element.string = new_text
    return True


def rewrite_anchor(anchor: Tag, rule: SubstitutionRule) -> bool:
    href = anchor.get("href")
    changed = rewrite_element_text(anchor, rule)
    if href is not None:
        anchor["href"] = href
    return changed


def rewrite_document(soup: BeautifulSoup, rule: SubstitutionRule) -> int:
    """Apply the substitution rule to ``soup`` in place.

    Only text payloads are rewritten. Tag names and attribute values are
    never handed to the rule. Returns the number of nodes changed.
    """
    changed = rewrite_text_nodes(soup, rule)

    for element in soup.find_all(HEADING_TAGS):
        if rewrite_element_text(element, rule):
            changed += 1

    for anchor in soup.find_all("a"):
        if rewrite_anchor(anchor, rule):
            changed += 1

    return changed


def extract_title(soup: BeautifulSoup) -> str:
    # First <title> only; inline SVG can carry its own <title> elements
    title = soup.find("title")
    if title is None:
        return ""
    return title.get_text()


def rewrite_html(raw_html: str, rule: SubstitutionRule) -> RewriteResult:
    soup = BeautifulSoup(raw_html, "html.parser")
    changed = rewrite_document(soup, rule)
    logger.info("Rewrote %d nodes (%s -> %s)", changed, rule.target, rule.replacement)
    return RewriteResult(content=str(soup), title=extract_title(soup))


def proxy_page(url: str, config: ProxyConfig) -> RewriteResult:
    raw_html = fetch_document(url, timeout=config.fetch_timeout, user_agent=config.user_agent)
    rule = SubstitutionRule(config.target_word, config.replacement_word)
    return rewrite_html(raw_html, rule)


# ------------------------------------------------------------------------------
# HTTP app
# ------------------------------------------------------------------------------

async def read_url_field(request: Request) -> Any:
    content_type = request.headers.get("content-type", "").lower()
    try:
        if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
            payload: Any = dict(await request.form())
        else:
            payload = await request.json()
    except ValueError:
        logger.warning("Unparsable request body (content-type %r)", content_type)
        return None

    if not isinstance(payload, dict):
        return None
    return payload.get("url")


def create_app(config: ProxyConfig | None = None) -> FastAPI:
    if config is None:
        config = build_proxy_config(os.environ)

    app = FastAPI(title="Faleproxy")
    app.state.config = config
    templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

    @app.get("/", response_class=HTMLResponse)
    async def index(request: Request) -> HTMLResponse:
        context = {
            "target_word": config.target_word,
            "replacement_word": config.replacement_word,
        }
        return templates.TemplateResponse(request, "index.html", context)

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/fetch")
    async def fetch_and_rewrite(request: Request) -> JSONResponse:
        try:
            url = await read_url_field(request)
            if not url:
                raise MissingInputError()
            url = str(url)
            result = await asyncio.to_thread(proxy_page, url, config)
            return JSONResponse(
                {
                    "success": True,
                    "content": result.content,
                    "title": result.title,
                    "originalUrl": url,
                }
            )
        except FaleproxyError as exc:
            logger.warning("Request to /fetch failed: %s", exc.message)
            return JSONResponse({"error": exc.message}, status_code=exc.status_code)
        except Exception as exc:
            logger.exception("Error fetching URL: %s", exc)
            return JSONResponse({"error": f"Failed to fetch content: {exc}"}, status_code=500)

    return app


def main() -> None:
    import uvicorn

    config = build_proxy_config(os.environ)
    logging.getLogger().setLevel(config.log_level)
    logger.info("Faleproxy server running at http://localhost:%d", config.port)
    uvicorn.run(create_app(config), host=config.host, port=config.port)


if __name__ == "__main__":
    main()
