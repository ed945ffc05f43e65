import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from owconf.config_manager import ConfigurationManager
from owconf.configuration import Configuration, ExportOptions, PackageConfiguration
from owconf.feeds import generate_feeds
from owconf.package import KernelInfo
from owconf.package_selection import PackageSelection
from owconf.store import ConfigurationStore

router = APIRouter()


class PackageSelectionRequest(BaseModel):
    default_packages: list[str] = []
    profile_packages: list[str] = []
    added_packages: list[str] = []
    removed_packages: list[str] = []


class ImportRequest(BaseModel):
    content: str
    format: Optional[str] = None


class ExportRequest(BaseModel):
    config: Configuration
    options: ExportOptions = ExportOptions()


def get_store() -> ConfigurationStore:
    return ConfigurationStore()


def get_manager() -> ConfigurationManager:
    return ConfigurationManager()


def validation_failure(detail: str) -> tuple[dict[str, Union[str, int]], int]:
    logging.info(f"Validation failure {detail = }")
    return {"detail": detail, "status": 400}, 400


@router.post("/packages")
def api_v1_packages(package_request: PackageSelectionRequest, response: Response):
    """Determine the package arguments of a build without building

    Returns the additions and exclusions relative to the device defaults,
    which are implied by the build server.
    """
    overlap = set(package_request.added_packages) & set(
        package_request.removed_packages
    )
    if overlap:
        content, response.status_code = validation_failure(
            f"Packages both added and removed: {', '.join(sorted(overlap))}"
        )
        return content

    selection = PackageSelection(
        package_request.default_packages + package_request.profile_packages
    )
    selection.set_configuration(
        PackageConfiguration(
            added_packages=package_request.added_packages,
            removed_packages=package_request.removed_packages,
        )
    )

    return {
        "status": 200,
        "detail": "Package selection completed",
        "packages": selection.build_packages_list(),
        "default_packages": sorted(package_request.default_packages),
        "profile_packages": sorted(package_request.profile_packages),
    }


@router.get("/feeds/{version}/{arch}")
def api_v1_feeds(
    version: str,
    arch: str,
    target: Optional[str] = None,
    kernel_version: Optional[str] = None,
    kernel_release: Optional[str] = None,
    kernel_vermagic: Optional[str] = None,
):
    kernel = None
    if kernel_version and kernel_release and kernel_vermagic:
        kernel = KernelInfo(
            version=kernel_version, release=kernel_release, vermagic=kernel_vermagic
        )

    return {
        "feeds": [
            feed.model_dump(mode="json")
            for feed in generate_feeds(version, arch, target, kernel)
        ]
    }


@router.post("/configurations/import")
def api_v1_configurations_import(
    import_request: ImportRequest,
    response: Response,
    manager: ConfigurationManager = Depends(get_manager),
    store: ConfigurationStore = Depends(get_store),
):
    result = manager.import_configuration(import_request.content, import_request.format)
    if not result.success:
        response.status_code = 400
        return {
            "detail": result.message,
            "errors": result.errors,
            "status": 400,
        }

    if not store.save_configuration(result.config):
        response.status_code = 500
        return {"detail": "Failed to save configuration", "status": 500}

    return {
        "status": 200,
        "detail": result.message,
        "warnings": result.warnings or [],
        "config": result.config.to_document(),
    }


@router.post("/configurations/export")
def api_v1_configurations_export(
    export_request: ExportRequest,
    manager: ConfigurationManager = Depends(get_manager),
):
    content = manager.export_configuration(
        export_request.config, export_request.options
    )
    media_type = (
        "application/x-yaml"
        if export_request.options.format == "yaml"
        else "application/json"
    )
    return Response(content=content, media_type=media_type)


@router.get("/configurations")
def api_v1_configurations(store: ConfigurationStore = Depends(get_store)):
    return {
        "configurations": [
            summary.model_dump(mode="json", by_alias=True)
            for summary in store.get_configuration_summaries()
        ],
        "last_used": store.get_last_used_config_id(),
    }


@router.get("/configurations/{id}")
def api_v1_configuration(
    id: str, response: Response, store: ConfigurationStore = Depends(get_store)
):
    config = store.load_configuration(id)
    if not config:
        response.status_code = 404
        return {"detail": "Configuration not found", "status": 404}
    return config.to_document()


@router.delete("/configurations/{id}")
def api_v1_configuration_delete(
    id: str, response: Response, store: ConfigurationStore = Depends(get_store)
):
    if not store.has_configuration(id):
        response.status_code = 404
        return {"detail": "Configuration not found", "status": 404}
    if not store.delete_configuration(id):
        response.status_code = 500
        return {"detail": "Failed to delete configuration", "status": 500}
    return {"detail": "Configuration deleted", "status": 200}
