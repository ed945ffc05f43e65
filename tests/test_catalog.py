import asyncio

import httpx
import pytest

from owconf.adb import AdbFormatError
from owconf.catalog import FeedMergeQueue, PackageCatalog, parse_feed_response
from owconf.package import Feed, FeedFormat, Package, PackageSearchFilter
from owconf.util import FeedFetchError

BASE_URL = "http://localhost:8123/snapshots/packages/x86_64"


def package_block(name, version="1.0", depends="", section="utils", source=""):
    block = f"Package: {name}\nVersion: {version}\n"
    if depends:
        block += f"Depends: {depends}\n"
    block += (
        f"Section: {section}\nArchitecture: x86_64\n"
        f"Filename: {name}_{version}_x86_64.ipk\n"
        f"Description: {name} package {source}\n"
    )
    return block


def packages_feed(*blocks):
    return "\n".join(blocks)


def make_package(name, depends=(), section="", source="base", description=""):
    return Package(
        name=name,
        version="1.0",
        architecture="x86_64",
        depends=list(depends),
        section=section,
        source=source,
        description=description,
        filename=f"{name}.ipk",
    )


@pytest.fixture
def catalog():
    catalog = PackageCatalog()
    catalog.merge(
        [
            make_package("luci", ["luci-base", "uhttpd"], "luci", "luci", "LuCI"),
            make_package("luci-base", ["lua", "rpcd"], "luci", "luci"),
            make_package("uhttpd", ["libubox"], "net", "base", "Web server"),
            make_package("rpcd", ["libubox", "libuci"], "utils", "base"),
            make_package("libubox", [], "libs", "base"),
            make_package("lua", [], "lang", "packages", "Lightweight language"),
            make_package("tcpdump", ["libpcap1"], "net", "packages"),
        ]
    )
    return catalog


def test_load_feed(upstream, packages_text):
    upstream[f"{BASE_URL}/base/Packages"] = packages_text

    catalog = PackageCatalog()
    packages = catalog.load_feed(f"{BASE_URL}/base/Packages", "base")

    assert len(packages) == 3
    assert len(catalog) == 3
    assert "tcpdump" in catalog
    assert catalog.get("tcpdump").source == "base"
    assert catalog.get("missing") is None


def test_load_adb_feed(upstream, adb_builder, make_adb_file):
    payload = adb_builder.payload(
        adb_builder.index(
            [adb_builder.pkginfo(name="foo", version="1.0", arch="x86_64")]
        )
    )
    upstream[f"{BASE_URL}/base/packages.adb"] = make_adb_file(payload)

    catalog = PackageCatalog()
    catalog.load_feed(f"{BASE_URL}/base/packages.adb", "base")

    assert catalog.get("foo").filename == "foo_1.0_x86_64.apk"


def test_load_feed_not_found(upstream):
    catalog = PackageCatalog()
    with pytest.raises(FeedFetchError) as excinfo:
        catalog.load_feed(f"{BASE_URL}/base/Packages", "base")

    assert excinfo.value.status_code == 404
    assert excinfo.value.url == f"{BASE_URL}/base/Packages"
    assert len(catalog) == 0


def test_load_corrupt_adb_feed(upstream):
    upstream[f"{BASE_URL}/base/packages.adb"] = b"garbage"

    catalog = PackageCatalog()
    with pytest.raises(AdbFormatError):
        catalog.load_feed(f"{BASE_URL}/base/packages.adb", "base")


def test_later_feed_wins(upstream):
    upstream[f"{BASE_URL}/a/Packages"] = packages_feed(
        package_block("foo", "1.0", source="a"), package_block("only-a")
    )
    upstream[f"{BASE_URL}/b/Packages"] = packages_feed(
        package_block("foo", "2.0", source="b")
    )

    catalog = PackageCatalog()
    catalog.load_feed(f"{BASE_URL}/a/Packages", "a")
    catalog.load_feed(f"{BASE_URL}/b/Packages", "b")

    assert catalog.get("foo").version == "2.0"
    assert catalog.get("foo").source == "b"
    assert catalog.get("only-a").source == "a"


def test_load_feeds_collects_errors(upstream):
    upstream[f"{BASE_URL}/base/Packages"] = packages_feed(package_block("foo"))
    upstream[f"{BASE_URL}/packages/Packages"] = packages_feed(package_block("bar"))

    feeds = [
        Feed.from_url(f"{BASE_URL}/base/Packages", "base"),
        Feed.from_url(f"{BASE_URL}/luci/Packages", "luci"),
        Feed.from_url(f"{BASE_URL}/packages/Packages", "packages"),
    ]

    catalog = PackageCatalog()
    errors = catalog.load_feeds(feeds)

    assert list(errors) == [f"{BASE_URL}/luci/Packages"]
    assert isinstance(errors[f"{BASE_URL}/luci/Packages"], FeedFetchError)
    assert sorted(p.name for p in catalog) == ["bar", "foo"]


def test_parse_feed_response(make_response, packages_text):
    feed = Feed(url=f"{BASE_URL}/base/Packages", source="base")
    packages = parse_feed_response(feed, make_response(feed.url, packages_text))
    assert [p.name for p in packages] == ["luci", "luci-light", "tcpdump"]

    with pytest.raises(FeedFetchError, match="500"):
        parse_feed_response(feed, make_response(feed.url, status_code=500))


def test_feed_format_from_url():
    assert Feed.from_url("http://x/packages.adb", "base").format == FeedFormat.ADB
    assert Feed.from_url("http://x/PACKAGES.ADB", "base").format == FeedFormat.ADB
    assert Feed.from_url("http://x/Packages", "base").format == FeedFormat.PACKAGES


def test_merge_queue_in_request_order():
    catalog = PackageCatalog()
    queue = FeedMergeQueue(catalog)

    first = queue.enqueue()
    second = queue.enqueue()

    queue.resolve(second, [make_package("foo", source="second")])
    assert len(catalog) == 0
    assert not queue.done

    queue.resolve(first, [make_package("foo", source="first")])
    assert catalog.get("foo").source == "second"
    assert queue.done


def test_merge_queue_failed_feed():
    catalog = PackageCatalog()
    queue = FeedMergeQueue(catalog)

    first = queue.enqueue()
    second = queue.enqueue()

    queue.resolve(second, [make_package("foo")])
    queue.resolve(first, None)

    assert "foo" in catalog
    assert queue.done


def test_merge_queue_drops_stale_results():
    catalog = PackageCatalog()
    queue = FeedMergeQueue(catalog)
    ticket = queue.enqueue()

    catalog.clear()
    queue.resolve(ticket, [make_package("foo")])

    assert len(catalog) == 0


def test_load_feeds_async_merges_in_request_order():
    bodies = {
        f"{BASE_URL}/a/Packages": packages_feed(package_block("foo", "1.0")),
        f"{BASE_URL}/b/Packages": packages_feed(package_block("foo", "2.0")),
    }

    async def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url.endswith("/a/Packages"):
            # first feed finishes last
            await asyncio.sleep(0.05)
        if url in bodies:
            return httpx.Response(200, text=bodies[url])
        return httpx.Response(404)

    feeds = [
        Feed.from_url(f"{BASE_URL}/a/Packages", "a"),
        Feed.from_url(f"{BASE_URL}/b/Packages", "b"),
        Feed.from_url(f"{BASE_URL}/c/Packages", "c"),
    ]
    catalog = PackageCatalog()

    async def load():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await catalog.load_feeds_async(feeds, client)

    errors = asyncio.run(load())

    assert list(errors) == [f"{BASE_URL}/c/Packages"]
    assert catalog.get("foo").version == "2.0"
    assert catalog.get("foo").source == "b"


def test_search(catalog):
    assert [p.name for p in catalog.search(PackageSearchFilter(query="LUCI"))] == [
        "luci",
        "luci-base",
    ]
    assert [
        p.name for p in catalog.search(PackageSearchFilter(query="web server"))
    ] == ["uhttpd"]
    assert [p.name for p in catalog.search(PackageSearchFilter(section="net"))] == [
        "uhttpd",
        "tcpdump",
    ]
    assert [
        p.name
        for p in catalog.search(PackageSearchFilter(section="net", source="base"))
    ] == ["uhttpd"]
    assert catalog.search(PackageSearchFilter(architecture="mips_24kc")) == []
    assert len(catalog.search(PackageSearchFilter())) == len(catalog)


def test_sections_and_sources(catalog):
    assert catalog.sections() == ["lang", "libs", "luci", "net", "utils"]
    assert catalog.sources() == ["base", "luci", "packages"]


def test_dependency_closure(catalog):
    assert catalog.dependency_closure("luci") == [
        "luci-base",
        "lua",
        "rpcd",
        "libubox",
        "libuci",
        "uhttpd",
    ]
    assert catalog.dependency_closure("libubox") == []
    assert catalog.dependency_closure("missing") == []


def test_dependency_closure_cycle():
    catalog = PackageCatalog()
    catalog.merge(
        [
            make_package("a", ["b"]),
            make_package("b", ["c"]),
            make_package("c", ["a", "b"]),
        ]
    )

    assert catalog.dependency_closure("a") == ["b", "c"]
    assert catalog.dependency_closure("c") == ["a", "b"]


def test_dependents(catalog):
    assert catalog.dependents("libubox") == ["uhttpd", "rpcd"]
    assert catalog.dependents("luci") == []

    catalog.merge([make_package("netifd", ["libubox", "libubox"])])
    assert catalog.dependents("libubox") == ["uhttpd", "rpcd", "netifd"]


def test_clear(catalog):
    generation = catalog.generation
    catalog.clear()

    assert len(catalog) == 0
    assert catalog.generation == generation + 1
    assert catalog.dependents("libubox") == []


def mistyped_adb_feed(adb_builder, make_adb_file):
    payload = adb_builder.payload(
        adb_builder.index([adb_builder.pkginfo(name=5, version="1.0", arch="x86_64")])
    )
    return make_adb_file(payload)


def test_load_feeds_mistyped_adb_does_not_stop_siblings(
    upstream, adb_builder, make_adb_file
):
    upstream[f"{BASE_URL}/a/packages.adb"] = mistyped_adb_feed(
        adb_builder, make_adb_file
    )
    upstream[f"{BASE_URL}/b/Packages"] = packages_feed(package_block("foo"))

    catalog = PackageCatalog()
    errors = catalog.load_feeds(
        [
            Feed.from_url(f"{BASE_URL}/a/packages.adb", "a"),
            Feed.from_url(f"{BASE_URL}/b/Packages", "b"),
        ]
    )

    assert list(errors) == [f"{BASE_URL}/a/packages.adb"]
    assert isinstance(errors[f"{BASE_URL}/a/packages.adb"], AdbFormatError)
    assert "foo" in catalog


def test_load_feeds_async_mistyped_adb_does_not_stop_siblings(
    adb_builder, make_adb_file
):
    bodies = {
        f"{BASE_URL}/a/packages.adb": mistyped_adb_feed(adb_builder, make_adb_file),
        f"{BASE_URL}/b/Packages": packages_feed(package_block("foo")).encode(),
    }

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=bodies[str(request.url)])

    catalog = PackageCatalog()

    async def load():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await catalog.load_feeds_async(
                [
                    Feed.from_url(f"{BASE_URL}/a/packages.adb", "a"),
                    Feed.from_url(f"{BASE_URL}/b/Packages", "b"),
                ],
                client,
            )

    errors = asyncio.run(load())

    assert isinstance(errors[f"{BASE_URL}/a/packages.adb"], AdbFormatError)
    assert catalog.get("foo").source == "b"


def test_dependency_closure_long_chain():
    catalog = PackageCatalog()
    catalog.merge(
        make_package(f"p{i}", [f"p{i + 1}"] if i < 5000 else []) for i in range(5001)
    )

    closure = catalog.dependency_closure("p0")

    assert len(closure) == 5000
    assert closure[:3] == ["p1", "p2", "p3"]
    assert closure[-1] == "p5000"


def test_load_feed_through_cache(redis_server, monkeypatch, httpserver, packages_text):
    monkeypatch.setattr("owconf.util.get_redis_client", lambda *args: redis_server)
    httpserver.expect_request("/packages/x86_64/base/Packages").respond_with_data(
        packages_text
    )
    url = httpserver.url_for("/packages/x86_64/base/Packages")

    catalog = PackageCatalog()
    assert len(catalog.load_feed(url, "base")) == 3
    assert len(PackageCatalog().load_feed(url, "base")) == 3

    # second load is answered from the redis cache
    assert len(httpserver.log) == 1
    assert catalog.get("tcpdump").source == "base"


def test_load_feed_through_cache_not_found(redis_server, monkeypatch, httpserver):
    monkeypatch.setattr("owconf.util.get_redis_client", lambda *args: redis_server)
    httpserver.expect_request("/base/Packages").respond_with_data(
        "Not Found", status=404
    )

    with pytest.raises(FeedFetchError) as excinfo:
        PackageCatalog().load_feed(httpserver.url_for("/base/Packages"), "base")

    assert excinfo.value.status_code == 404
