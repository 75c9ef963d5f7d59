import pytest

from racecard import INDEX_URL, NavigationError


class FakeSession:
    """Stands in for BrowserSession: serves fixture HTML keyed by URL."""

    def __init__(self, pages, fail_navigation=(), fail_content=(), log=None):
        self.pages = pages
        self.fail_navigation = set(fail_navigation)
        self.fail_content = set(fail_content)
        self.log = log if log is not None else []
        self.current_url = None
        self.closed = False

    async def __aenter__(self):
        self.log.append(("open", None))
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.closed = True
        self.log.append(("close", None))

    async def navigate(self, url, timeout_ms=None):
        self.current_url = url
        self.log.append(("navigate", url))
        if url in self.fail_navigation:
            raise NavigationError(url, "timed out after 30000ms")

    async def content(self):
        if self.current_url in self.fail_content:
            raise NavigationError(self.current_url, "page crashed")
        return self.pages.get(self.current_url, "")


class FakeSessionFactory:
    def __init__(self, pages, fail_navigation=(), fail_content=()):
        self.pages = pages
        self.fail_navigation = fail_navigation
        self.fail_content = fail_content
        self.log = []
        self.sessions = []

    def __call__(self):
        session = FakeSession(self.pages, self.fail_navigation, self.fail_content, self.log)
        self.sessions.append(session)
        return session

    @property
    def navigated(self):
        return [url for event, url in self.log if event == "navigate"]


@pytest.fixture
def make_factory():
    return FakeSessionFactory


@pytest.fixture
def index_url():
    return INDEX_URL
