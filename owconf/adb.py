"""
Decoder for APK v3 `packages.adb` package indexes.

An ADB file starts with the magic `ADB` and a compression marker, followed by
a schema identifier and a sequence of 8 byte aligned blocks. The first block
holds the ADB payload: a tree of tagged 32 bit values whose root is the index
object. Signature blocks may follow it.

Every value is a 32 bit tag, the upper nibble is the type and the lower 28 bits
either hold an inline integer or an offset into the ADB payload.
"""

import logging
import re
import struct
import zlib
from enum import IntEnum
from typing import Optional

from owconf.package import Package
from owconf.packages_file import IMPLICIT_DEPENDENCIES

log = logging.getLogger(__name__)


class AdbFormatError(ValueError):
    pass


class AdbCompressionAlg(IntEnum):
    NONE = 0
    DEFLATE = 1
    ZSTD = 2


class AdbSchema(IntEnum):
    PACKAGE = 0x676B6370
    INDEX = 0x78646E69


class AdbBlockType(IntEnum):
    ADB = 0
    SIG = 1
    DATA = 2
    EXT = 3


class AdbValType(IntEnum):
    SPECIAL = 0x00000000
    INT = 0x10000000
    INT32 = 0x20000000
    INT64 = 0x30000000
    BLOB8 = 0x80000000
    BLOB16 = 0x90000000
    BLOB32 = 0xA0000000
    ARRAY = 0xD0000000
    OBJECT = 0xE0000000


class AdbIndexField(IntEnum):
    DESCRIPTION = 1
    PACKAGES = 2
    PKGNAME_SPEC = 3


class AdbPkgInfoField(IntEnum):
    HASHES = 3
    REPO_COMMIT = 10
    DEPENDS = 15
    PROVIDES = 16
    REPLACES = 17
    INSTALL_IF = 18
    RECOMMENDS = 19
    TAGS = 21


class AdbDepField(IntEnum):
    NAME = 1
    VERSION = 2
    MATCH = 3


class ApkVersionFlag(IntEnum):
    EQUAL = 1
    LESS = 2
    GREATER = 4
    FUZZY = 8
    CONFLICT = 16


ADB_HDR = struct.Struct("<BBHI")  # compat version, version, reserved, root
ADB_EXT_BLOCK = struct.Struct("<IIQ")  # type, reserved, size
U16 = struct.Struct("<H")
U32 = struct.Struct("<I")
U64 = struct.Struct("<Q")

DEP_OPERATORS = {
    ApkVersionFlag.LESS: "<",
    ApkVersionFlag.LESS | ApkVersionFlag.EQUAL: "<=",
    ApkVersionFlag.LESS | ApkVersionFlag.EQUAL | ApkVersionFlag.FUZZY: "<~",
    ApkVersionFlag.EQUAL | ApkVersionFlag.FUZZY: "~",
    ApkVersionFlag.FUZZY: "~",
    ApkVersionFlag.EQUAL: "=",
    ApkVersionFlag.GREATER | ApkVersionFlag.EQUAL: ">=",
    ApkVersionFlag.GREATER | ApkVersionFlag.EQUAL | ApkVersionFlag.FUZZY: ">~",
    ApkVersionFlag.GREATER: ">",
    ApkVersionFlag.LESS | ApkVersionFlag.GREATER: "><",
    ApkVersionFlag.EQUAL | ApkVersionFlag.LESS | ApkVersionFlag.GREATER: "",
}


class AdbReader:
    """Read tagged values out of a single ADB payload"""

    VAL_TYPE_MASK = 0xF0000000
    VAL_DATA_MASK = 0x0FFFFFFF
    PKGINFO_NAMES = {
        1: "name",
        2: "version",
        3: "hashes",
        4: "description",
        5: "arch",
        6: "license",
        7: "origin",
        8: "maintainer",
        9: "url",
        10: "repo-commit",
        11: "build-time",
        12: "installed-size",
        13: "file-size",
        14: "provider-priority",
        15: "depends",
        16: "provides",
        17: "replaces",
        18: "install-if",
        19: "recommends",
        20: "layer",
        21: "tags",
    }
    PKGINFO_DEP_FIELDS = {
        AdbPkgInfoField.DEPENDS,
        AdbPkgInfoField.PROVIDES,
        AdbPkgInfoField.REPLACES,
        AdbPkgInfoField.INSTALL_IF,
        AdbPkgInfoField.RECOMMENDS,
    }
    PKGINFO_HEX_FIELDS = {AdbPkgInfoField.HASHES, AdbPkgInfoField.REPO_COMMIT}

    def __init__(self, adb: bytes):
        self.adb = adb

    def _unpack(self, fmt: struct.Struct, off: int) -> int:
        if off + fmt.size > len(self.adb):
            raise AdbFormatError(f"Truncated value at offset {off}")
        return fmt.unpack_from(self.adb, off)[0]

    def read_int(self, v: int) -> Optional[int]:
        t = v & self.VAL_TYPE_MASK
        off = v & self.VAL_DATA_MASK
        if t == AdbValType.INT:
            return off
        if t == AdbValType.INT32:
            return self._unpack(U32, off)
        if t == AdbValType.INT64:
            return self._unpack(U64, off)
        return None

    def read_blob(self, v: int) -> Optional[bytes]:
        t = v & self.VAL_TYPE_MASK
        off = v & self.VAL_DATA_MASK
        if t == AdbValType.BLOB8:
            if off >= len(self.adb):
                raise AdbFormatError(f"Truncated blob8 length at offset {off}")
            length = self.adb[off]
            start = off + 1
        elif t == AdbValType.BLOB16:
            length = self._unpack(U16, off)
            start = off + 2
        elif t == AdbValType.BLOB32:
            length = self._unpack(U32, off)
            start = off + 4
        else:
            return None

        end = start + length
        if end > len(self.adb):
            raise AdbFormatError(f"Blob at offset {off} exceeds ADB payload")
        return bytes(self.adb[start:end])

    def read_text(self, v: int) -> Optional[str]:
        blob = self.read_blob(v)
        if blob is None:
            return None
        try:
            return blob.decode("utf-8")
        except UnicodeDecodeError:
            return blob.hex()

    def read_obj(self, v: int) -> list[int]:
        """Return the slots of an object or array, slot 0 holds the count"""
        t = v & self.VAL_TYPE_MASK
        if t not in (AdbValType.ARRAY, AdbValType.OBJECT):
            raise AdbFormatError(f"Expected object/array value, got type {t:#x}")
        off = v & self.VAL_DATA_MASK
        num = self._unpack(U32, off)
        if num == 0:
            raise AdbFormatError(f"Invalid zero-sized object/array at offset {off}")
        if off + num * U32.size > len(self.adb):
            raise AdbFormatError(f"Object/array at offset {off} exceeds ADB payload")
        return [U32.unpack_from(self.adb, off + i * U32.size)[0] for i in range(num)]

    @staticmethod
    def obj_get(obj: list[int], index: int) -> int:
        if index < len(obj):
            return obj[index]
        return 0

    def parse_dep(self, tag: int) -> Optional[str]:
        dep = self.read_obj(tag)
        name = self.read_text(self.obj_get(dep, AdbDepField.NAME))
        if name is None:
            return None
        version = self.read_text(self.obj_get(dep, AdbDepField.VERSION))
        op = self.read_int(self.obj_get(dep, AdbDepField.MATCH))
        if op is None:
            op = ApkVersionFlag.EQUAL

        conflict = "!" if op & ApkVersionFlag.CONFLICT else ""
        if version is None:
            return f"{conflict}{name}"
        operator = DEP_OPERATORS.get(op & ~ApkVersionFlag.CONFLICT, "?")
        return f"{conflict}{name}{operator}{version}"

    def parse_array(self, tag: int, parse_item) -> list:
        items = []
        for item_tag in self.read_obj(tag)[1:]:
            if item_tag == 0:
                continue
            item = parse_item(item_tag)
            if item is not None:
                items.append(item)
        return items

    def parse_pkginfo(self, tag: int) -> dict:
        meta = {}
        obj = self.read_obj(tag)
        for idx in range(1, len(obj)):
            value = obj[idx]
            if value == 0:
                continue
            name = self.PKGINFO_NAMES.get(idx, f"field-{idx}")
            if idx in self.PKGINFO_DEP_FIELDS:
                meta[name] = self.parse_array(value, self.parse_dep)
                continue
            if idx == AdbPkgInfoField.TAGS:
                meta[name] = self.parse_array(value, self.read_text)
                continue
            ival = self.read_int(value)
            if ival is not None:
                meta[name] = ival
                continue
            blob = self.read_blob(value)
            if blob is None:
                continue
            if idx in self.PKGINFO_HEX_FIELDS:
                meta[name] = blob.hex()
            else:
                meta[name] = self.read_text(value)
        return meta

    def parse_index(self) -> dict:
        if len(self.adb) < ADB_HDR.size:
            raise AdbFormatError("ADB payload too small for header")
        _compat, _version, _reserved, root = ADB_HDR.unpack_from(self.adb, 0)
        index = self.read_obj(root)

        packages = []
        packages_tag = self.obj_get(index, AdbIndexField.PACKAGES)
        if packages_tag != 0:
            packages = self.parse_array(packages_tag, self.parse_pkginfo)

        return {
            "description": self.read_text(
                self.obj_get(index, AdbIndexField.DESCRIPTION)
            ),
            "packages": packages,
        }


def _align_up(value: int, alignment: int) -> int:
    return (value + alignment - 1) // alignment * alignment


def _parse_block(buf: bytes, offset: int) -> tuple[int, int, int, int]:
    """Return type, payload offset, payload size and next offset of a block"""
    if offset + U32.size > len(buf):
        raise AdbFormatError(f"Truncated block type/size at offset {offset}")

    type_size = U32.unpack_from(buf, offset)[0]
    block_type = type_size >> 30
    if block_type == AdbBlockType.EXT:
        if offset + ADB_EXT_BLOCK.size > len(buf):
            raise AdbFormatError(f"Truncated extended block at offset {offset}")
        _type_size, _reserved, raw_size = ADB_EXT_BLOCK.unpack_from(buf, offset)
        block_type = type_size & 0x3FFFFFFF
        hdr_size = ADB_EXT_BLOCK.size
    else:
        raw_size = type_size & 0x3FFFFFFF
        hdr_size = U32.size

    if raw_size < hdr_size:
        raise AdbFormatError(f"Invalid block raw size {raw_size} at offset {offset}")
    if offset + raw_size > len(buf):
        raise AdbFormatError(f"Block at offset {offset} exceeds stream boundary")

    next_offset = min(offset + _align_up(raw_size, 8), len(buf))
    return block_type, offset + hdr_size, raw_size - hdr_size, next_offset


def decompress_adb(data: bytes) -> tuple[bytes, int]:
    """Strip the file level compression

    Args:
        data (bytes): raw file content

    Returns:
        (bytes, int): uncompressed stream and offset of its schema identifier
    """
    if len(data) < 4 or data[0:3] != b"ADB":
        raise AdbFormatError("Not an ADB file")

    marker = data[3]
    if marker == ord("."):
        return data, 4

    if marker == ord("d"):
        alg, payload = AdbCompressionAlg.DEFLATE, data[4:]
    elif marker == ord("c"):
        if len(data) < 6:
            raise AdbFormatError("Truncated compression spec")
        alg, payload = data[4], data[6:]
        if alg == AdbCompressionAlg.NONE:
            return data, 6
    else:
        raise AdbFormatError(f"Invalid compression magic {marker:#x}")

    if alg != AdbCompressionAlg.DEFLATE:
        raise AdbFormatError(f"Unsupported compression algorithm {alg}")

    try:
        body = zlib.decompress(payload, wbits=-15)
    except zlib.error as e:
        raise AdbFormatError(f"Corrupt deflate stream: {e}") from e

    if body[0:3] != b"ADB":
        raise AdbFormatError("Inner deflate stream is not an ADB file")
    return body, 4


def parse_packages_adb(data: bytes) -> dict:
    """Decode a `packages.adb` index

    Args:
        data (bytes): raw file content

    Returns:
        dict: index description and list of raw package entries
    """
    body, offset = decompress_adb(data)

    if offset + U32.size > len(body):
        raise AdbFormatError(f"Truncated schema at offset {offset}")
    schema = U32.unpack_from(body, offset)[0]
    if schema != AdbSchema.INDEX:
        raise AdbFormatError(f"Unexpected schema {schema:#x}, expected index")
    offset += U32.size

    index = None
    while offset < len(body):
        block_type, payload_off, payload_size, offset = _parse_block(body, offset)
        payload = body[payload_off : payload_off + payload_size]

        if block_type == AdbBlockType.ADB:
            if index is not None:
                raise AdbFormatError("Invalid block order: second ADB block")
            index = AdbReader(payload).parse_index()
        elif block_type == AdbBlockType.SIG:
            if index is None:
                raise AdbFormatError("Invalid block order: SIG before ADB")
            log.debug(f"Skipping signature block of {payload_size} bytes")
        elif block_type == AdbBlockType.DATA:
            raise AdbFormatError("Unexpected DATA block in package index")
        else:
            raise AdbFormatError(f"Unknown block type {block_type}")

    if index is None:
        raise AdbFormatError("ADB stream did not contain an ADB block")

    log.debug(f"Decoded {len(index['packages'])} entries from ADB index")
    return index


DEP_NAME = re.compile(r"^([^<>=~\s]+)")


def clean_adb_dependency(dep: str) -> str:
    """Strip conflict marker and version match from a dependency

    Args:
        dep (str): dependency like `foo>=1.2` or `!bar`

    Returns:
        str: the bare package name
    """
    dep = dep.removeprefix("!")
    if m := DEP_NAME.match(dep):
        return m.group(1).strip()
    return dep.strip()


def map_adb_packages(entries: list[dict], source: str) -> list[Package]:
    """Turn raw ADB index entries into packages

    The index carries neither section nor filename, so the section stays
    empty and the filename is synthesized from name, version and arch.

    Args:
        entries (list): entries as returned by `parse_packages_adb`
        source (str): label attached to every package

    Returns:
        list: packages in index order

    Raises:
        AdbFormatError: an entry holds values of the wrong type
    """
    packages = []
    for index, entry in enumerate(entries):
        if not entry:
            continue
        name = entry.get("name")
        version = entry.get("version")
        arch = entry.get("arch")
        if not name or not version or not arch:
            continue

        try:
            packages.append(map_adb_package(entry, source))
        except (ValueError, TypeError) as e:
            raise AdbFormatError(
                f"Invalid package entry {index} ({name!r}): {e}"
            ) from e
    return packages


def map_adb_package(entry: dict, source: str) -> Package:
    name, version, arch = entry["name"], entry["version"], entry["arch"]

    depends = []
    for dep in entry.get("depends") or []:
        dep = clean_adb_dependency(str(dep))
        if dep and dep not in IMPLICIT_DEPENDENCIES:
            depends.append(dep)

    return Package(
        name=name,
        version=version,
        architecture=arch,
        depends=depends,
        license=entry.get("license"),
        section="",
        url=entry.get("url"),
        size=int(entry.get("file-size") or 0),
        installed_size=int(entry.get("installed-size") or 0),
        filename=f"{name}_{version}_{arch}.apk",
        sha256sum=entry.get("hashes") or "",
        description=entry.get("description") or "",
        source=source,
    )
