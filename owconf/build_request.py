from typing import Annotated, Iterable, Optional

from pydantic import BaseModel, Field

from owconf.config import settings
from owconf.configuration import Configuration
from owconf.package_selection import PackageSelection


class BuildRequest(BaseModel):
    distro: str = "openwrt"
    version: str
    target: str
    profile: str
    packages: Annotated[
        list[str],
        Field(
            default=[],
            description="Packages of the image. A bare name installs a package, "
            "a name prefixed with `-` removes it from the defaults.",
        ),
    ] = []
    defaults: Optional[
        Annotated[
            str,
            Field(
                default=None,
                max_length=settings.max_defaults_length,
                description="Custom shell script embedded in firmware image to be run on first\n"
                "boot. Input file size is limited to "
                f"{settings.max_defaults_length} bytes and cannot be exceeded.",
            ),
        ]
    ] = None
    client: Optional[str] = None
    rootfs_size_mb: Optional[
        Annotated[
            int,
            Field(
                default=None,
                ge=1,
                le=settings.max_custom_rootfs_size_mb,
                description="Custom CONFIG_TARGET_ROOTFS_PARTSIZE of the resulting\n"
                "image in MB.",
            ),
        ]
    ] = None
    diff_packages: Optional[bool] = False
    repositories: Optional[dict[str, str]] = {}
    repository_keys: Optional[list[str]] = []

    @classmethod
    def from_configuration(
        cls,
        config: Configuration,
        default_packages: Iterable[str] = (),
        profile_packages: Iterable[str] = (),
        client: Optional[str] = None,
    ) -> "BuildRequest":
        """Create the build request of a configuration

        The device's default and profile packages come first, followed by the
        additions and exclusions of the configuration.

        Args:
            config (Configuration): the configuration to build
            default_packages: default packages of the target
            profile_packages: packages of the device profile
            client (str): name and version of the requesting client

        Returns:
            BuildRequest: the request
        """
        default_packages = list(default_packages)
        selection = PackageSelection(default_packages)
        selection.set_configuration(config.custom_build.package_configuration)

        packages = list(
            dict.fromkeys(
                [
                    *default_packages,
                    *profile_packages,
                    *selection.build_packages_list(),
                ]
            )
        )

        custom_build = config.custom_build.snapshot()
        return cls(
            version=config.device.version,
            target=config.device.target,
            profile=config.device.profile.replace(",", "_"),
            packages=packages,
            defaults=custom_build.uci_defaults,
            client=client,
            rootfs_size_mb=custom_build.rootfs_size_mb,
            repositories={repo.name: repo.url for repo in custom_build.repositories},
            repository_keys=custom_build.repository_keys,
        )
