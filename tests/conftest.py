import struct
import zlib
from pathlib import Path

import httpx
import pytest
from fakeredis import FakeStrictRedis
from fastapi.testclient import TestClient

from owconf.adb import AdbReader, AdbSchema, AdbValType
from owconf.config import settings

upstream_path = Path(__file__).parent / "upstream"


class AdbBuilder:
    """Assemble ADB index payloads the way apk-tools lays them out"""

    PKGINFO_FIELDS = {name: idx for idx, name in AdbReader.PKGINFO_NAMES.items()}

    def __init__(self):
        # room for the ADB header, patched in by `payload`
        self.data = bytearray(8)

    def _align(self):
        while len(self.data) % 4:
            self.data.append(0)

    def blob(self, value) -> int:
        if isinstance(value, str):
            value = value.encode("utf-8")
        self._align()
        offset = len(self.data)
        if len(value) < 256:
            self.data += bytes([len(value)]) + value
            return AdbValType.BLOB8 | offset
        self.data += struct.pack("<H", len(value)) + value
        return AdbValType.BLOB16 | offset

    def integer(self, value: int) -> int:
        if value < 0x10000000:
            return AdbValType.INT | value
        self._align()
        offset = len(self.data)
        self.data += struct.pack("<I", value)
        return AdbValType.INT32 | offset

    def obj(self, values: list[int], kind: int = AdbValType.OBJECT) -> int:
        self._align()
        offset = len(self.data)
        self.data += struct.pack("<I", len(values) + 1)
        for value in values:
            self.data += struct.pack("<I", value)
        return kind | offset

    def array(self, values: list[int]) -> int:
        return self.obj(values, AdbValType.ARRAY)

    def dep(self, name: str, version: str = None, match: int = None) -> int:
        values = [self.blob(name), self.blob(version) if version else 0]
        if match is not None:
            values.append(self.integer(match))
        return self.obj(values)

    def pkginfo(self, **fields) -> int:
        slots = [0] * max(self.PKGINFO_FIELDS.values())
        for key, value in fields.items():
            idx = self.PKGINFO_FIELDS[key.replace("_", "-")]
            if key == "depends":
                tag = self.array(
                    [self.dep(*d) if isinstance(d, tuple) else self.dep(d) for d in value]
                )
            elif isinstance(value, int):
                tag = self.integer(value)
            else:
                tag = self.blob(value)
            slots[idx - 1] = tag
        return self.obj(slots)

    def index(self, packages: list[int], description: str = "test index") -> int:
        return self.obj([self.blob(description), self.array(packages)])

    def payload(self, root: int) -> bytes:
        struct.pack_into("<BBHI", self.data, 0, 0, 1, 0, root)
        return bytes(self.data)


def adb_block(block_type: int, payload: bytes) -> bytes:
    raw_size = 4 + len(payload)
    block = struct.pack("<I", (block_type << 30) | raw_size) + payload
    return block + bytes(-len(block) % 8)


def adb_file(
    payload: bytes,
    compress: bool = False,
    signature: bool = False,
    schema: int = AdbSchema.INDEX,
) -> bytes:
    stream = b"ADB." + struct.pack("<I", schema) + adb_block(0, payload)
    if signature:
        stream += adb_block(1, bytes([1, 1]) + bytes(62))
    if compress:
        deflate = zlib.compressobj(wbits=-15)
        return b"ADBd" + deflate.compress(stream) + deflate.flush()
    return stream


@pytest.fixture
def adb_builder():
    return AdbBuilder()


@pytest.fixture
def make_adb_file():
    return adb_file


@pytest.fixture
def make_response():
    return feed_response


@pytest.fixture
def packages_text():
    return (upstream_path / "Packages").read_text()


def feed_response(url: str, content=b"", status_code: int = 200) -> httpx.Response:
    if isinstance(content, str):
        content = content.encode("utf-8")
    return httpx.Response(
        status_code, content=content, request=httpx.Request("GET", url)
    )


@pytest.fixture
def upstream(monkeypatch):
    """Serve feed content from a dict of URL to body, 404 for anything else"""
    feeds = {}

    def mocked_client_get(url):
        if url in feeds:
            return feed_response(url, feeds[url])
        return feed_response(url, status_code=404)

    monkeypatch.setattr("owconf.catalog.client_get", mocked_client_get)
    return feeds


@pytest.fixture
def redis_server():
    r = FakeStrictRedis()
    yield r
    r.flushall()


def pytest_addoption(parser):
    parser.addoption(
        "--runslow", action="store_true", default=False, help="run slow tests"
    )


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: mark test as slow to run")


def pytest_collection_modifyitems(config, items):
    if config.getoption("--runslow"):
        # --runslow given in cli: do not skip slow tests
        return
    skip_slow = pytest.mark.skip(reason="need --runslow option to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


@pytest.fixture
def app(redis_server, monkeypatch):
    def mocked_redis_client(*args, **kwargs):
        return redis_server

    monkeypatch.setattr(settings, "upstream_url", "http://localhost:8123")
    monkeypatch.setattr("owconf.util.get_redis_client", mocked_redis_client)
    monkeypatch.setattr("owconf.store.get_redis_client", mocked_redis_client)

    from owconf.main import app as real_app

    yield real_app


@pytest.fixture
def client(app):
    yield TestClient(app)
