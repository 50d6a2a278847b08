"""Shared fixtures: an in-memory npm registry served through a dummy session."""

import asyncio
import io
import json
import os
import tarfile

import pytest

from distwatch.common.fs import clean_name
from distwatch.registry import RegistryClient

REGISTRY = "https://registry.example.test"
CDN = "https://cdn.example.test"


class _DummyContent:
    def __init__(self, body):
        self._body = body

    async def iter_chunked(self, size):
        for start in range(0, len(self._body), size):
            yield self._body[start:start + size]


class _DummyResponse:
    def __init__(self, status, body=b""):
        self.status = status
        self._body = body
        self.content = _DummyContent(body)
        self.released = False

    async def read(self):
        return self._body

    def release(self):
        self.released = True


class _DummySession:
    """Routes GET requests by URL (query string ignored) to canned responses.

    A route is ``(status, body)``, a callable returning one, or an exception
    instance to raise.
    """

    def __init__(self, routes=None):
        self.routes = routes if routes is not None else {}
        self.urls = []
        self.closed = False

    async def request(self, method, url, headers=None):
        self.urls.append(url)
        await asyncio.sleep(0)
        route = self.routes.get(url.split("?", 1)[0])
        if route is None:
            return _DummyResponse(404, b"not found")
        if isinstance(route, BaseException):
            raise route
        if callable(route):
            route = route()
        status, body = route
        return _DummyResponse(status, body)

    def count(self, prefix):
        return sum(1 for url in self.urls if url.startswith(prefix))

    async def close(self):
        self.closed = True


def build_tarball(name, version, dependencies=None, files=None, root="package"):
    """Return gzip tarball bytes laid out like ``npm pack`` output."""
    manifest = {"name": name, "version": version, "dependencies": dependencies or {}}
    entries = {"package.json": json.dumps(manifest).encode()}
    if files is None:
        files = {"index.js": f"module.exports = '{version}';\n"}
    for rel_path, data in files.items():
        entries[rel_path] = data.encode() if isinstance(data, str) else data

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for rel_path, data in entries.items():
            info = tarfile.TarInfo(f"{root}/{rel_path}")
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


class FakeNpm:
    """Minimal npm registry: publish versions, move dist-tags."""

    def __init__(self, registry=REGISTRY):
        self.registry = registry
        self.session = _DummySession()
        self.documents = {}

    def tarball_url(self, name, version):
        return f"{self.registry}/{name}/-/{clean_name(name)}-{version}.tgz"

    def publish(self, name, version, dependencies=None, files=None, tag=None, tarball=None):
        url = self.tarball_url(name, version)
        self.session.routes[url] = (
            200,
            tarball if tarball is not None else build_tarball(name, version, dependencies, files),
        )
        document = self.documents.setdefault(name, {"name": name, "versions": {}, "dist-tags": {}})
        document["versions"][version] = {
            "name": name,
            "version": version,
            "dependencies": dict(dependencies or {}),
            "dist": {"tarball": url},
        }
        if tag:
            document["dist-tags"][tag] = version
        self._route(name)
        return url

    def tag(self, name, tag, version):
        self.documents[name]["dist-tags"][tag] = version
        self._route(name)

    def document_bytes(self, name):
        return json.dumps(self.documents[name]).encode()

    def _route(self, name):
        self.session.routes[f"{self.registry}/{name}"] = lambda: (200, self.document_bytes(name))

    def client(self, **kwargs):
        kwargs.setdefault("info_lifetime", 0)
        return RegistryClient(self.registry, session=self.session, **kwargs)


@pytest.fixture
def fake_npm():
    return FakeNpm()


@pytest.fixture
def install_root(tmp_path):
    path = tmp_path / "live"
    path.mkdir()
    return str(path)


def write_module(node_modules, name, version, dependencies=None):
    """Create ``node_modules/<name>/package.json`` on disk."""
    module_dir = os.path.join(node_modules, name)
    os.makedirs(module_dir, exist_ok=True)
    with open(os.path.join(module_dir, "package.json"), "w", encoding="utf-8") as f:
        json.dump({"name": name, "version": version, "dependencies": dependencies or {}}, f)
    return module_dir


@pytest.fixture
def module_writer():
    return write_module


@pytest.fixture
def tarball_builder():
    return build_tarball
