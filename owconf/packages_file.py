"""
Parser for the opkg `Packages` text index.

A feed is a sequence of blank line separated blocks, each block a list of
`Key: value` lines describing one package. Parsing is tolerant: blocks that
cannot be turned into a complete package are dropped and parsing continues
with the next block.
"""

import logging
import re
from typing import Optional

from owconf.package import Package

log = logging.getLogger(__name__)

# Dependencies every OpenWrt system provides, never listed as a requirement
IMPLICIT_DEPENDENCIES = {"libc"}

BLOCK_SEPARATOR = re.compile(r"\n[ \t]*\n")
LEADING_INT = re.compile(r"\s*(\d+)")

FIELD_NAMES = {
    "Package": "name",
    "Version": "version",
    "License": "license",
    "Section": "section",
    "URL": "url",
    "CPE-ID": "cpe_id",
    "Architecture": "architecture",
    "Filename": "filename",
    "SHA256sum": "sha256sum",
    "Description": "description",
}
SIZE_FIELDS = {"Installed-Size": "installed_size", "Size": "size"}
REQUIRED_FIELDS = ("name", "version", "architecture", "filename")


def parse_size(value: str) -> int:
    """Parse a byte count, falling back to 0 for anything unparsable"""
    if m := LEADING_INT.match(value):
        return int(m.group(1))
    return 0


def parse_dependencies(depends: str) -> list[str]:
    """Return the bare package names of a `Depends` field

    Version constraints like `(>= 1.0.0)` are removed and implicit
    dependencies are filtered.

    Args:
        depends (str): the raw field value, e.g. "libfoo (>= 1.2.0), libc"

    Returns:
        list: package names in declaration order
    """
    if not depends:
        return []

    names = []
    for dep in depends.split(","):
        name = dep.split("(", maxsplit=1)[0].strip()
        if name and name not in IMPLICIT_DEPENDENCIES:
            names.append(name)
    return names


def parse_package_block(block: str, source: str) -> Optional[Package]:
    """Parse a single package block

    Args:
        block (str): the lines describing one package
        source (str): label of the feed the block comes from

    Returns:
        Package: the package or None if a required field is missing
    """
    fields: dict = {"source": source}

    for line in block.splitlines():
        key, sep, value = line.partition(":")
        if not sep:
            continue

        key = key.strip()
        value = value.strip()

        if key in FIELD_NAMES:
            fields[FIELD_NAMES[key]] = value
        elif key in SIZE_FIELDS:
            fields[SIZE_FIELDS[key]] = parse_size(value)
        elif key == "Depends":
            fields["depends"] = parse_dependencies(value)

    if not all(fields.get(field) for field in REQUIRED_FIELDS):
        return None

    return Package(**fields)


def parse_packages_file(content: str, source: str) -> list[Package]:
    """Parse the content of a `Packages` index

    Args:
        content (str): full text of the index
        source (str): label attached to every parsed package

    Returns:
        list: parsed packages in index order
    """
    packages: list[Package] = []
    content = content.replace("\r\n", "\n")

    for block in BLOCK_SEPARATOR.split(content):
        if not block.strip():
            continue
        try:
            package = parse_package_block(block, source)
        except ValueError as e:
            log.warning(f"Failed to parse package block: {e}")
            continue
        if package:
            packages.append(package)

    log.debug(f"Parsed {len(packages)} packages from {source}")
    return packages
