from collections.abc import AsyncGenerator, Callable

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from llm_gateway.core.config import settings

# Override settings for tests: no server-side credentials, no .env leakage
settings.app_env = "development"
settings.openai_api_key = ""
settings.claude_api_key = ""
settings.gemini_api_key = ""
settings.custom_api_key = ""
settings.custom_base_url = ""
settings.tavily_api_key = ""
settings.exa_api_key = ""
settings.web_search_api_key = ""
settings.web_search_default_provider = "model"
settings.llm_max_attempts = 1

from llm_gateway.core.dependencies import get_http_transport  # noqa: E402
from llm_gateway.main import app  # noqa: E402


class Recorder:
    """httpx.MockTransport handler that replays canned responses and records requests."""

    def __init__(self, *responses: httpx.Response | Callable[[httpx.Request], httpx.Response] | Exception):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            raise AssertionError(f"Unexpected request: {request.method} {request.url}")
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(request)
        # Fresh copy so a replayed response is never consumed twice
        return httpx.Response(item.status_code, headers=item.headers, content=item.content)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    @property
    def calls(self) -> int:
        return len(self.requests)


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.pop(get_http_transport, None)


@pytest.fixture
def upstream(client) -> Callable[..., Recorder]:
    """Route the app's outbound vendor calls to a Recorder."""

    def install(*responses) -> Recorder:
        recorder = Recorder(*responses)
        app.dependency_overrides[get_http_transport] = lambda: recorder.transport
        return recorder

    return install
