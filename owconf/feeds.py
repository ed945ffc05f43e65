"""
Package feed locations and their display names.
"""

from typing import Optional

from owconf.config import ARCHITECTURE_FEEDS, settings
from owconf.i18n import Translator, default_translate, translate
from owconf.package import Feed, KernelInfo
from owconf.util import is_snapshot_build

FEED_NAMES = {
    "base": ("package-feed-base", "Base system"),
    "luci": ("package-feed-luci", "LuCI interface"),
    "packages": ("package-feed-packages", "Additional packages"),
    "telephony": ("package-feed-telephony", "Telephony"),
    "kmods": ("package-feed-kmods", "Kernel modules"),
    "target-packages": ("package-feed-target", "Target specific packages"),
}

SECTION_NAMES = {
    "admin": ("package-section-admin", "Administration"),
    "base": ("package-section-base", "Base system"),
    "boot": ("package-section-boot", "Boot loaders"),
    "devel": ("package-section-devel", "Development"),
    "firmware": ("package-section-firmware", "Firmware"),
    "kernel": ("package-section-kernel", "Kernel modules"),
    "lang": ("package-section-lang", "Languages"),
    "libs": ("package-section-libs", "Libraries"),
    "luci": ("package-section-luci", "LuCI"),
    "mail": ("package-section-mail", "Mail"),
    "multimedia": ("package-section-multimedia", "Multimedia"),
    "net": ("package-section-net", "Network"),
    "sound": ("package-section-sound", "Sound"),
    "system": ("package-section-system", "System utilities"),
    "telephony": ("package-section-telephony", "Telephony"),
    "text": ("package-section-text", "Text processing"),
    "utils": ("package-section-utils", "Utilities"),
    "web": ("package-section-web", "Web services"),
}


def is_apk_version(version: str) -> bool:
    return version in settings.apk_versions


def get_version_url(version: str) -> str:
    if is_snapshot_build(version):
        return f"{settings.upstream_url}/snapshots"
    return f"{settings.upstream_url}/releases/{version}"


def generate_feeds(
    version: str,
    architecture: str,
    target: Optional[str] = None,
    kernel: Optional[KernelInfo] = None,
) -> list[Feed]:
    """Return the feeds of a device in load order

    Architecture feeds come first, then the target's own packages and, if
    the kernel is known, the kernel module feed of that exact kernel.

    Args:
        version (str): firmware version, e.g. `23.05.5` or `SNAPSHOT`
        architecture (str): package architecture, e.g. `mips_24kc`
        target (str): target/subtarget, e.g. `ath79/generic`
        kernel (KernelInfo): kernel version triple of the target

    Returns:
        list: feed descriptors
    """
    base_url = get_version_url(version)
    file_name = "packages.adb" if is_apk_version(version) else "Packages"

    feeds = [
        Feed.from_url(f"{base_url}/packages/{architecture}/{feed}/{file_name}", feed)
        for feed in ARCHITECTURE_FEEDS
    ]

    if target:
        target_url = f"{base_url}/targets/{target}"
        feeds.append(
            Feed.from_url(f"{target_url}/packages/{file_name}", "target-packages")
        )
        if kernel:
            feeds.append(
                Feed.from_url(
                    f"{target_url}/kmods/{kernel.kmods_directory()}/{file_name}",
                    "kmods",
                )
            )

    return feeds


def generate_feed_urls(
    version: str,
    architecture: str,
    target: Optional[str] = None,
    kernel: Optional[KernelInfo] = None,
) -> list[str]:
    return [feed.url for feed in generate_feeds(version, architecture, target, kernel)]


def feed_display_name(feed: str, translator: Translator = default_translate) -> str:
    if entry := FEED_NAMES.get(feed):
        return translate(translator, *entry)
    return feed


def section_display_name(
    section: str, translator: Translator = default_translate
) -> str:
    if not section:
        return translate(translator, "package-section-none", "None")
    if entry := SECTION_NAMES.get(section):
        return translate(translator, *entry)
    return section
