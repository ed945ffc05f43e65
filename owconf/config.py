from pydantic_settings import BaseSettings, SettingsConfigDict

# Versions listed in `apk_versions` publish their package indexes as APK v3
# `packages.adb` containers. Every other version still ships the opkg
# `Packages` text index.
#
# The architecture feeds are always tried in this order, target specific
# feeds (target packages, kernel modules) follow after them.

ARCHITECTURE_FEEDS = ["base", "luci", "packages", "telephony"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    upstream_url: str = "https://downloads.openwrt.org"
    apk_versions: list[str] = ["SNAPSHOT"]
    redis_url: str = "redis://localhost:6379"
    config_storage_key: str = "openwrt-configs"
    last_config_key: str = "openwrt-last-config"
    config_version: str = "1.0.0"
    max_custom_rootfs_size_mb: int = 1024
    max_defaults_length: int = 20480
    enable_module_management: bool = True
    log_level: str = "INFO"


settings = Settings()
