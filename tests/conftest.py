import contextlib
import threading

import httpx
import pytest

import foreman


def url_key(url: httpx.URL) -> str:
    return f"{url.scheme}://{url.host}{url.path}"


class Router:
    """Canned HTTP responses keyed by URL."""

    def __init__(self):
        self.routes = {}
        self.calls  = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        url   = url_key(request.url)
        reply = self.routes.get(url)
        if reply is None:
            return httpx.Response(404, json={"error": "not found"})
        if callable(reply):
            return reply(request)
        if isinstance(reply, httpx.Response):
            return reply
        return httpx.Response(200, json=reply)

    def add(self, url, reply):
        self.routes[url] = reply

    def urls(self):
        return [url_key(r.url) for r in self.calls]


@pytest.fixture
def router():
    return Router()


@pytest.fixture
def fm(router):
    client = httpx.Client(transport=httpx.MockTransport(router))
    fm = foreman.foreman_new({}, client=client, cancel=threading.Event())
    yield fm._replace(backoff=0)
    client.close()


@pytest.fixture
def use_fm(monkeypatch, fm):
    """Route CLI commands through the mocked context."""

    @contextlib.contextmanager
    def fake_open(cfg=None):
        yield fm

    monkeypatch.setattr(foreman, "foreman_open", fake_open)
    return fm


@pytest.fixture
def inst(tmp_path):
    return foreman.installation_new(
        "test",
        foreman.Product.Minecraft,
        tmp_path / "srv",
        unit_root=tmp_path / "units",
        run_root=tmp_path / "run")


@pytest.fixture
def no_chown(monkeypatch):
    calls = []
    monkeypatch.setattr(foreman.shutil, "chown", lambda p, u, g: calls.append(p))
    return calls
