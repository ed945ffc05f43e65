from enum import Enum
from typing import Annotated, Optional

from pydantic import BaseModel, Field


class FeedFormat(str, Enum):
    PACKAGES = "packages"
    ADB = "adb"


class Package(BaseModel):
    name: str
    version: str
    architecture: str
    depends: list[str] = []
    license: Optional[str] = None
    section: str = ""
    url: Optional[str] = None
    cpe_id: Optional[str] = None
    size: Annotated[int, Field(ge=0)] = 0
    installed_size: Annotated[int, Field(ge=0)] = 0
    filename: str = ""
    sha256sum: Annotated[
        str,
        Field(
            default="",
            description="Hex SHA256 of the package file for `Packages` feeds, "
            "the hex encoded hash blob for `packages.adb` feeds.",
        ),
    ] = ""
    description: str = ""
    source: str = ""


class Feed(BaseModel):
    url: str
    source: str
    format: FeedFormat = FeedFormat.PACKAGES

    @classmethod
    def from_url(cls, url: str, source: str) -> "Feed":
        """Describe a feed, deriving its format from the file name

        Args:
            url (str): full URL of the index file
            source (str): label attached to every package of this feed

        Returns:
            Feed: the feed descriptor
        """
        if url.lower().endswith("packages.adb"):
            return cls(url=url, source=source, format=FeedFormat.ADB)
        return cls(url=url, source=source, format=FeedFormat.PACKAGES)


class PackageSearchFilter(BaseModel):
    query: Optional[str] = None
    section: Optional[str] = None
    architecture: Optional[str] = None
    source: Optional[str] = None


class KernelInfo(BaseModel):
    version: str
    release: str
    vermagic: str

    def kmods_directory(self) -> str:
        return f"{self.version}-{self.release}-{self.vermagic}"
