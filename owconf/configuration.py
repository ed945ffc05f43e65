from datetime import datetime, timezone
from typing import Annotated, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from owconf.config import settings
from owconf.util import generate_id


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentModel(BaseModel):
    """Base of all configuration document parts, serialized in camelCase"""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class Device(DocumentModel):
    model: str
    target: str
    profile: Annotated[
        str,
        Field(
            default="",
            description="Derived from target and model when a configuration is "
            "applied, therefore optional in imported documents.",
        ),
    ] = ""
    version: str


class PackageConfiguration(DocumentModel):
    added_packages: list[str] = []
    removed_packages: list[str] = []


class Repository(DocumentModel):
    name: str
    url: str


class CustomBuild(DocumentModel):
    package_configuration: PackageConfiguration = PackageConfiguration()
    uci_defaults: Optional[
        Annotated[
            str,
            Field(
                default=None,
                max_length=settings.max_defaults_length,
                description="Shell script run on first boot of the image.",
            ),
        ]
    ] = None
    rootfs_size_mb: Optional[
        Annotated[
            int,
            Field(default=None, ge=1, le=settings.max_custom_rootfs_size_mb),
        ]
    ] = None
    repositories: list[Repository] = []
    repository_keys: list[str] = []

    def snapshot(self) -> "CustomBuild":
        """Return a copy without blank repositories, keys and script"""
        return CustomBuild(
            package_configuration=self.package_configuration.model_copy(deep=True),
            uci_defaults=self.uci_defaults
            if self.uci_defaults and self.uci_defaults.strip()
            else None,
            rootfs_size_mb=self.rootfs_size_mb,
            repositories=[
                Repository(name=repo.name.strip(), url=repo.url.strip())
                for repo in self.repositories
                if repo.name.strip() and repo.url.strip()
            ],
            repository_keys=[
                key.strip() for key in self.repository_keys if key.strip()
            ],
        )

    def has_custom_data(self) -> bool:
        snapshot = self.snapshot()
        return bool(
            snapshot.uci_defaults
            or snapshot.rootfs_size_mb is not None
            or snapshot.repositories
            or snapshot.repository_keys
            or snapshot.package_configuration.added_packages
            or snapshot.package_configuration.removed_packages
        )


class ModuleSource(DocumentModel):
    id: str
    name: str
    url: str
    ref: Optional[str] = None


class ModuleSelection(DocumentModel):
    source_id: str
    module_id: str
    parameters: dict[str, str] = {}
    user_downloads: dict[
        str,
        Annotated[
            str,
            Field(
                pattern=r"^https?://.+",
                description="HTTP or HTTPS URL of a file the module downloads.",
            ),
        ],
    ] = {}


class Modules(DocumentModel):
    sources: list[ModuleSource] = []
    selections: list[ModuleSelection] = []


class Configuration(DocumentModel):
    id: str
    name: str
    description: Optional[str] = None
    version: str = settings.config_version
    created_at: datetime
    updated_at: datetime
    device: Device
    custom_build: CustomBuild
    modules: Optional[Modules] = None

    @classmethod
    def create(
        cls,
        name: str,
        device: Device,
        custom_build: CustomBuild,
        modules: Optional[Modules] = None,
        description: Optional[str] = None,
        id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> "Configuration":
        """Assemble a configuration from the current build state

        Args:
            name (str): name chosen by the user
            device (Device): selected device
            custom_build (CustomBuild): packages and advanced options
            modules (Modules): module sources and selections, dropped when
                module management is disabled
            description (str): optional description
            id (str): id of the configuration being updated, None for new
            created_at (datetime): creation time of the configuration being
                updated

        Returns:
            Configuration: the document
        """
        now = utcnow()
        return cls(
            id=id or generate_id("config"),
            name=name,
            description=description,
            version=settings.config_version,
            created_at=created_at if id and created_at else now,
            updated_at=now,
            device=device,
            custom_build=custom_build.snapshot(),
            modules=modules if settings.enable_module_management else None,
        )

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ConfigurationSummary(DocumentModel):
    id: str
    name: str
    description: Optional[str] = None
    device_model: str
    version: str
    module_count: int
    package_count: int
    created_at: datetime
    updated_at: datetime


class ExportOptions(BaseModel):
    include_module_sources: bool = True
    include_packages: bool = True
    include_uci_defaults: bool = True
    format: Literal["json", "yaml"] = "json"


class ImportResult(BaseModel):
    success: bool
    message: str
    config: Optional[Configuration] = None
    warnings: Optional[list[str]] = None
    errors: list[str] = []
