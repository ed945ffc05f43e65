"""
Collection of the packages available to a device.

Packages of all feeds are merged by name. A feed loaded later replaces
packages of the same name loaded before it, so feeds are always merged in
the order they were requested, no matter in which order downloads finish.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Iterable, Iterator, Optional

import httpx
from httpx import Response

from owconf.adb import AdbFormatError, map_adb_packages, parse_packages_adb
from owconf.package import Feed, FeedFormat, Package, PackageSearchFilter
from owconf.packages_file import parse_packages_file
from owconf.util import FeedFetchError, client_get

log = logging.getLogger(__name__)

FEED_ERRORS = (httpx.HTTPError, FeedFetchError, AdbFormatError)


def parse_feed_response(feed: Feed, response: Response) -> list[Package]:
    """Decode a downloaded feed according to its format

    Args:
        feed (Feed): the feed that was requested
        response (Response): the HTTP response

    Returns:
        list: packages of the feed
    """
    if response.status_code != 200:
        raise FeedFetchError(feed.url, response.status_code, response.reason_phrase)

    if feed.format == FeedFormat.ADB:
        index = parse_packages_adb(response.content)
        return map_adb_packages(index["packages"], feed.source)

    return parse_packages_file(response.text, feed.source)


class FeedMergeQueue:
    """Merge feed results into a catalog strictly in request order

    Every feed takes a ticket when it is requested. Results handed in out of
    order wait until all earlier tickets are resolved. Results that arrive
    after the catalog was cleared are dropped.
    """

    def __init__(self, catalog: "PackageCatalog"):
        self.catalog = catalog
        self.generation = catalog.generation
        self._next_ticket = 0
        self._next_merge = 0
        self._pending: dict[int, Optional[list[Package]]] = {}

    def enqueue(self) -> int:
        ticket = self._next_ticket
        self._next_ticket += 1
        return ticket

    def resolve(self, ticket: int, packages: Optional[list[Package]]) -> None:
        """Hand in the result of a ticket, None marks a failed feed"""
        if self.generation != self.catalog.generation:
            log.debug(f"Dropping stale feed result for ticket {ticket}")
            return

        self._pending[ticket] = packages
        while self._next_merge in self._pending:
            result = self._pending.pop(self._next_merge)
            if result:
                self.catalog.merge(result)
            self._next_merge += 1

    @property
    def done(self) -> bool:
        return self._next_merge == self._next_ticket


class PackageCatalog:
    def __init__(self):
        self.packages: dict[str, Package] = {}
        self.generation = 0
        self._dependents: Optional[dict[str, list[str]]] = None

    def __len__(self) -> int:
        return len(self.packages)

    def __contains__(self, name: str) -> bool:
        return name in self.packages

    def __iter__(self) -> Iterator[Package]:
        return iter(self.packages.values())

    def get(self, name: str) -> Optional[Package]:
        return self.packages.get(name)

    def clear(self) -> None:
        """Forget all packages, e.g. when the device or version changes"""
        self.packages = {}
        self._dependents = None
        self.generation += 1

    def merge(self, packages: Iterable[Package]) -> None:
        for package in packages:
            self.packages[package.name] = package
        self._dependents = None

    def load_feed(self, url: str, source: str) -> list[Package]:
        """Download, parse and merge a single feed

        Args:
            url (str): URL of the `Packages` or `packages.adb` index
            source (str): label attached to the packages of this feed

        Returns:
            list: packages of the feed

        Raises:
            FeedFetchError: the feed could not be downloaded
            AdbFormatError: the binary index is corrupt
        """
        feed = Feed.from_url(url, source)
        log.debug(f"Loading {feed.format.value} feed {feed.url}")
        packages = parse_feed_response(feed, client_get(feed.url))
        self.merge(packages)
        return packages

    def load_feeds(self, feeds: list[Feed]) -> dict[str, Exception]:
        """Load feeds one after another

        A failing feed does not stop the remaining ones.

        Returns:
            dict: errors by feed URL
        """
        errors: dict[str, Exception] = {}
        queue = FeedMergeQueue(self)

        for feed in feeds:
            ticket = queue.enqueue()
            packages = None
            try:
                packages = parse_feed_response(feed, client_get(feed.url))
            except FEED_ERRORS as e:
                log.warning(f"Error fetching packages from {feed.url}: {e}")
                errors[feed.url] = e
            finally:
                queue.resolve(ticket, packages)

        return errors

    async def load_feeds_async(
        self, feeds: list[Feed], client: Optional[httpx.AsyncClient] = None
    ) -> dict[str, Exception]:
        """Download feeds concurrently, merging them in request order

        Returns:
            dict: errors by feed URL
        """
        errors: dict[str, Exception] = {}
        queue = FeedMergeQueue(self)

        async def fetch(client: httpx.AsyncClient, feed: Feed, ticket: int):
            packages = None
            try:
                response = await client.get(feed.url)
                packages = parse_feed_response(feed, response)
            except FEED_ERRORS as e:
                log.warning(f"Error fetching packages from {feed.url}: {e}")
                errors[feed.url] = e
            finally:
                # later feeds wait on this ticket
                queue.resolve(ticket, packages)

        async def fetch_all(client: httpx.AsyncClient):
            await asyncio.gather(
                *(fetch(client, feed, queue.enqueue()) for feed in feeds)
            )

        if client is None:
            async with httpx.AsyncClient(follow_redirects=True, timeout=30.0) as client:
                await fetch_all(client)
        else:
            await fetch_all(client)

        return errors

    def search(self, criteria: PackageSearchFilter) -> list[Package]:
        """Return the packages matching all given criteria

        The query matches name or description case-insensitively, the other
        criteria must match exactly.
        """
        results = list(self.packages.values())

        if criteria.query:
            query = criteria.query.lower()
            results = [
                p
                for p in results
                if query in p.name.lower() or query in p.description.lower()
            ]

        if criteria.section:
            results = [p for p in results if p.section == criteria.section]

        if criteria.architecture:
            results = [p for p in results if p.architecture == criteria.architecture]

        if criteria.source:
            results = [p for p in results if p.source == criteria.source]

        return results

    def sections(self) -> list[str]:
        return sorted({p.section for p in self.packages.values() if p.section})

    def sources(self) -> list[str]:
        return sorted({p.source for p in self.packages.values() if p.source})

    def dependency_closure(self, name: str) -> list[str]:
        """Return all direct and indirect dependencies of a package

        Dependencies are listed depth first in the order they are declared,
        each at most once. The package itself is not part of the result.
        """
        visited: set[str] = {name}
        dependencies: list[str] = []

        package = self.packages.get(name)
        if not package:
            return dependencies

        # one iterator per package on the current path
        stack = [iter(package.depends)]
        while stack:
            dep = next(stack[-1], None)
            if dep is None:
                stack.pop()
                continue
            if dep in visited:
                continue

            visited.add(dep)
            dependencies.append(dep)
            if package := self.packages.get(dep):
                stack.append(iter(package.depends))

        return dependencies

    def dependents(self, name: str) -> list[str]:
        """Return the names of all packages depending on `name`"""
        if self._dependents is None:
            self._dependents = defaultdict(list)
            for package in self.packages.values():
                for dep in dict.fromkeys(package.depends):
                    self._dependents[dep].append(package.name)

        return list(self._dependents.get(name, []))
