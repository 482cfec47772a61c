"""Tests for the static and browser engines."""

import httpx
import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from grants_engine.config.settings import EngineConfig
from grants_engine.engines import BrowserEngine, StaticEngine, create_engines
from grants_engine.engines.base import API_KEY_HEADER
from grants_engine.errors import FetchError, ParseError

from conftest import LISTING_HTML, make_selectors, make_source


def static_engine(handler, config=None) -> StaticEngine:
    return StaticEngine(config or EngineConfig(), transport=httpx.MockTransport(handler))


class TestStaticEngine:
    """Tests for StaticEngine."""

    async def test_fetch_records(self):
        """Test a listing page is fetched and parsed."""
        engine = static_engine(lambda request: httpx.Response(200, text=LISTING_HTML))

        async with engine:
            result = await engine.fetch(make_source())

        assert result.ok
        assert len(result.records) == 2
        assert result.records[0].title == "Community Health Innovation Fund"

    async def test_http_error(self):
        """Test non-2xx responses become FetchError."""
        engine = static_engine(lambda request: httpx.Response(404, text="missing"))

        async with engine:
            result = await engine.fetch(make_source())

        assert not result.ok
        assert isinstance(result.error, FetchError)
        assert result.error.status_code == 404
        assert result.error.kind == "http"
        assert result.records == []

    async def test_timeout(self):
        """Test transport timeouts become FetchError."""
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        engine = static_engine(handler)
        async with engine:
            result = await engine.fetch(make_source())

        assert isinstance(result.error, FetchError)
        assert result.error.kind == "timeout"

    async def test_connection_error(self):
        """Test network errors become FetchError."""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        engine = static_engine(handler)
        async with engine:
            result = await engine.fetch(make_source())

        assert isinstance(result.error, FetchError)
        assert result.error.kind == "network"

    async def test_selectors_match_nothing(self):
        """Test a non-empty page without grants is a ParseError."""
        html = "<html><body><h1>Site redesigned</h1></body></html>"
        engine = static_engine(lambda request: httpx.Response(200, text=html))

        async with engine:
            result = await engine.fetch(make_source())

        assert isinstance(result.error, ParseError)
        assert result.error.retryable

    async def test_empty_marker(self):
        """Test the empty marker turns no matches into zero records."""
        html = '<html><body><p class="none">No open opportunities.</p></body></html>'
        engine = static_engine(lambda request: httpx.Response(200, text=html))
        source = make_source(selectors=make_selectors(empty_marker="p.none"))

        async with engine:
            result = await engine.fetch(source)

        assert result.ok
        assert result.records == []

    async def test_empty_body(self):
        """Test an empty response body yields zero records."""
        engine = static_engine(lambda request: httpx.Response(200, text=""))

        async with engine:
            result = await engine.fetch(make_source())

        assert result.ok
        assert result.records == []

    async def test_invalid_selector(self):
        """Test a malformed selector is a ParseError."""
        engine = static_engine(lambda request: httpx.Response(200, text=LISTING_HTML))
        source = make_source(selectors=make_selectors(grant_container="div[class="))

        async with engine:
            result = await engine.fetch(source)

        assert isinstance(result.error, ParseError)

    async def test_headers(self):
        """Test source headers, API key and user agent are sent."""
        seen = {}

        def handler(request):
            seen.update(request.headers)
            return httpx.Response(200, text=LISTING_HTML)

        config = EngineConfig(api_keys={"nih": "secret-key"})
        engine = static_engine(handler, config)
        source = make_source(api_key_ref="nih", headers={"Accept-Language": "en-GB"})

        async with engine:
            await engine.fetch(source)

        assert seen[API_KEY_HEADER.lower()] == "secret-key"
        assert seen["accept-language"] == "en-GB"
        assert "Chrome" in seen["user-agent"]

    async def test_missing_api_key(self):
        """Test an unresolved key reference does not send the header."""
        seen = {}

        def handler(request):
            seen.update(request.headers)
            return httpx.Response(200, text=LISTING_HTML)

        engine = static_engine(handler)
        async with engine:
            result = await engine.fetch(make_source(api_key_ref="nsf"))

        assert result.ok
        assert API_KEY_HEADER.lower() not in seen

    async def test_final_url_used_for_links(self):
        """Test relative links resolve against the redirected URL."""
        def handler(request):
            if request.url.path == "/grants":
                return httpx.Response(301, headers={"Location": "https://new.example.org/funding/"})
            return httpx.Response(200, text=LISTING_HTML)

        engine = static_engine(handler)
        async with engine:
            result = await engine.fetch(make_source())

        assert result.records[0].application_url == "https://new.example.org/grants/health-innovation"
        assert result.records[0].source_url == "https://new.example.org/funding/"


class FakeResponse:
    def __init__(self, status=200):
        self.status = status
        self.ok = 200 <= status < 300


class FakePage:
    def __init__(self, browser):
        self.browser = browser
        self.url = None

    async def goto(self, url, wait_until=None, timeout=None):
        self.browser.goto_calls.append((url, wait_until, timeout))
        if self.browser.goto_error is not None:
            raise self.browser.goto_error
        self.url = url
        return FakeResponse(self.browser.status)

    async def wait_for_selector(self, selector, timeout=None):
        self.browser.waited_for.append(selector)
        if self.browser.wait_timeout:
            raise PlaywrightTimeoutError("Timeout waiting for selector")

    async def content(self):
        if self.browser.content_error is not None:
            raise self.browser.content_error
        return self.browser.html


class FakeContext:
    def __init__(self, browser, options):
        self.browser = browser
        self.options = options
        self.closed = False

    async def new_page(self):
        return FakePage(self.browser)

    async def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(
        self,
        html=LISTING_HTML,
        status=200,
        goto_error=None,
        wait_timeout=False,
        content_error=None,
        context_error=None,
    ):
        self.html = html
        self.status = status
        self.goto_error = goto_error
        self.wait_timeout = wait_timeout
        self.content_error = content_error
        self.context_error = context_error
        self.connected = True
        self.contexts = []
        self.goto_calls = []
        self.waited_for = []
        self.closed = False

    def is_connected(self):
        return self.connected

    async def new_context(self, **options):
        if self.context_error is not None:
            raise self.context_error
        context = FakeContext(self, options)
        self.contexts.append(context)
        return context

    async def close(self):
        self.closed = True


def browser_engine(browser: FakeBrowser, config=None) -> BrowserEngine:
    async def factory():
        return browser

    return BrowserEngine(config or EngineConfig(), browser_factory=factory)


class TestBrowserEngine:
    """Tests for BrowserEngine with a fake browser."""

    async def test_fetch_records(self):
        """Test rendered DOM is parsed with the source selectors."""
        browser = FakeBrowser()
        engine = browser_engine(browser)

        async with engine:
            result = await engine.fetch(make_source(engine="browser"))

        assert result.ok
        assert len(result.records) == 2
        assert browser.goto_calls[0][1] == "domcontentloaded"
        assert browser.contexts[0].closed
        assert browser.closed

    async def test_context_headers(self):
        """Test each context gets the source headers and user agent."""
        browser = FakeBrowser()
        engine = browser_engine(browser, EngineConfig(api_keys={"nih": "k"}))

        async with engine:
            await engine.fetch(make_source(api_key_ref="nih"))

        options = browser.contexts[0].options
        assert options["extra_http_headers"][API_KEY_HEADER] == "k"
        assert "Chrome" in options["user_agent"]

    async def test_http_error(self):
        """Test non-2xx navigation responses."""
        browser = FakeBrowser(status=503)
        engine = browser_engine(browser)

        async with engine:
            result = await engine.fetch(make_source())

        assert isinstance(result.error, FetchError)
        assert result.error.status_code == 503
        assert browser.contexts[0].closed

    async def test_navigation_timeout(self):
        """Test navigation timeouts become FetchError."""
        browser = FakeBrowser(goto_error=PlaywrightTimeoutError("Timeout 30000ms exceeded"))
        engine = browser_engine(browser)

        async with engine:
            result = await engine.fetch(make_source())

        assert isinstance(result.error, FetchError)
        assert result.error.kind == "timeout"

    async def test_wait_for_timeout_still_parses(self):
        """Test a wait_for timeout falls through to parsing."""
        browser = FakeBrowser(wait_timeout=True)
        engine = browser_engine(browser)
        source = make_source(selectors=make_selectors(wait_for=".grant"))

        async with engine:
            result = await engine.fetch(source)

        assert browser.waited_for == [".grant"]
        assert len(result.records) == 2

    async def test_browser_shared(self):
        """Test one browser serves many fetches."""
        launches = []
        browser = FakeBrowser()

        async def factory():
            launches.append(1)
            return browser

        engine = BrowserEngine(EngineConfig(), browser_factory=factory)
        async with engine:
            await engine.fetch(make_source("a"))
            await engine.fetch(make_source("b"))

        assert len(launches) == 1
        assert len(browser.contexts) == 2

    async def test_content_error(self):
        """Test a failure reading the DOM becomes a retryable FetchError."""
        browser = FakeBrowser(content_error=PlaywrightError("Target page, context or browser has been closed"))
        engine = browser_engine(browser)

        async with engine:
            result = await engine.fetch(make_source())

        assert isinstance(result.error, FetchError)
        assert result.error.kind == "browser"
        assert result.error.retryable
        assert browser.contexts[0].closed

    async def test_new_context_error(self):
        """Test a failure opening a context becomes a FetchError."""
        browser = FakeBrowser(context_error=PlaywrightError("Browser has been closed"))
        engine = browser_engine(browser)

        async with engine:
            result = await engine.fetch(make_source())

        assert isinstance(result.error, FetchError)
        assert "Browser has been closed" in result.error.message

    async def test_disconnected_browser_relaunched(self):
        """Test the next fetch launches a new browser after a crash."""
        crashed = FakeBrowser()
        fresh = FakeBrowser()
        browsers = [crashed, fresh]
        launches = []

        async def factory():
            launches.append(1)
            return browsers[len(launches) - 1]

        engine = BrowserEngine(EngineConfig(), browser_factory=factory)
        async with engine:
            await engine.fetch(make_source("a"))
            crashed.connected = False
            result = await engine.fetch(make_source("b"))

        assert result.ok
        assert len(launches) == 2
        assert len(crashed.contexts) == 1
        assert len(fresh.contexts) == 1
        assert fresh.closed


class TestCreateEngines:
    """Tests for create_engines function."""

    def test_all_kinds(self):
        """Test both engine kinds are built."""
        engines = create_engines(EngineConfig())

        assert isinstance(engines["static"], StaticEngine)
        assert isinstance(engines["browser"], BrowserEngine)


@pytest.mark.parametrize("status", [500, 502, 429])
async def test_server_errors_are_retryable(status):
    """Test server-side failures are marked retryable."""
    engine = static_engine(lambda request: httpx.Response(status))
    async with engine:
        result = await engine.fetch(make_source())

    assert result.error.retryable
