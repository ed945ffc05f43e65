import logging
import random
import string
import time
from typing import Optional

import hishel
from httpx import Response

import redis
from owconf.config import settings
from owconf.package import KernelInfo

log: logging.Logger = logging.getLogger(__name__)


class FeedFetchError(RuntimeError):
    def __init__(self, url: str, status_code: int, reason: str = ""):
        self.url = url
        self.status_code = status_code
        super().__init__(
            f"Failed to fetch packages from {url}: {status_code} {reason}".rstrip()
        )


def get_redis_client(unicode: bool = True) -> redis.client.Redis:
    return redis.from_url(settings.redis_url, decode_responses=unicode)


def client_get(url: str) -> Response:
    return hishel.CacheClient(
        storage=hishel.RedisStorage(client=get_redis_client(False)),
        controller=hishel.Controller(force_cache=True),
    ).get(url)


def is_snapshot_build(version: str) -> bool:
    """Snapshot builds live below `/snapshots` instead of `/releases`"""
    return version.lower().endswith("snapshot")


def generate_id(prefix: str = "config") -> str:
    """Return a unique id like `config_1700000000000_k3j9x0a1b`

    Args:
        prefix (str): leading part of the id

    Returns:
        str: the id
    """
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def parse_kernel_info(profiles: dict) -> Optional[KernelInfo]:
    """Read the kernel version triple of a target's `profiles.json`

    Args:
        profiles (dict): decoded `profiles.json`

    Returns:
        KernelInfo: kernel version, release and vermagic or None
    """
    kernel_info: dict = profiles.get("linux_kernel")
    if not kernel_info:
        return None

    return KernelInfo(
        version=kernel_info["version"],
        release=kernel_info["release"],
        vermagic=kernel_info["vermagic"],
    )


def fetch_kernel_info(url: str) -> Optional[KernelInfo]:
    """Download a target's profiles.json and return its kernel info"""
    res: Response = client_get(url)
    if res.status_code != 200:
        log.debug(f"No profiles.json at {url}: {res.status_code}")
        return None
    return parse_kernel_info(res.json())


def format_size(size: int) -> str:
    """Return a human readable byte count

    Args:
        size (int): number of bytes

    Returns:
        str: size like `512 B`, `1.5 KiB` or `2.0 MiB`
    """
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KiB"
    if size < 1024 * 1024 * 1024:
        return f"{size / (1024 * 1024):.1f} MiB"
    return f"{size / (1024 * 1024 * 1024):.1f} GiB"
