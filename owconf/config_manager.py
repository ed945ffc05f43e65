"""
Import and export of configuration documents.

Documents are exchanged as JSON or YAML. Imports are validated as a whole so
that every problem of a document can be reported at once.
"""

import json
import logging
from typing import Optional

import yaml
from pydantic import ValidationError

from owconf.config import settings
from owconf.configuration import (
    Configuration,
    ExportOptions,
    ImportResult,
    utcnow,
)
from owconf.i18n import Translator, default_translate, translate
from owconf.util import generate_id

log = logging.getLogger(__name__)

REQUIRED_DEVICE_FIELDS = ("model", "target", "version")


def package_overlap(package_configuration: dict) -> list[str]:
    """Return the names listed as both added and removed, sorted"""
    added = {
        name
        for name in package_configuration["addedPackages"]
        if isinstance(name, str)
    }
    return sorted(
        {
            name
            for name in package_configuration["removedPackages"]
            if isinstance(name, str) and name in added
        }
    )


class ConfigurationManager:
    def __init__(self, translator: Translator = default_translate):
        self.translator = translator

    def _(self, key: str, fallback: str, **replacements: str) -> str:
        return translate(self.translator, key, fallback, **replacements)

    def export_configuration(
        self, config: Configuration, options: Optional[ExportOptions] = None
    ) -> str:
        """Serialize a configuration for download or sharing

        Args:
            config (Configuration): the configuration
            options (ExportOptions): parts to leave out and output format

        Returns:
            str: JSON or YAML document
        """
        options = options or ExportOptions()

        data = config.to_document()
        data["exportedAt"] = utcnow().isoformat()
        data["exportVersion"] = settings.config_version

        if not options.include_module_sources and "modules" in data:
            data["modules"]["sources"] = []

        if not options.include_packages:
            data["customBuild"]["packageConfiguration"] = {
                "addedPackages": [],
                "removedPackages": [],
            }

        if not options.include_uci_defaults:
            data["customBuild"].pop("uciDefaults", None)

        if options.format == "yaml":
            return yaml.safe_dump(
                data, explicit_start=True, sort_keys=False, indent=2
            )
        return json.dumps(data, indent=2)

    def import_configuration(
        self, content: str, format: Optional[str] = None
    ) -> ImportResult:
        """Parse and validate an exported configuration

        YAML is detected by `format` or a leading `---`, anything else is
        parsed as JSON. The imported configuration keeps its id, is stamped
        with the current schema version and gets a warning if it was written
        by another version.

        Args:
            content (str): the document
            format (str): `json` or `yaml`

        Returns:
            ImportResult: the configuration or the reasons it was rejected
        """
        try:
            if format == "yaml" or content.strip().startswith("---"):
                data = yaml.safe_load(content)
            else:
                data = json.loads(content)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            return ImportResult(
                success=False,
                message=self._(
                    "config-manager-parse-failed",
                    "Failed to parse configuration: {message}",
                    message=str(e),
                ),
            )

        errors = self.validate_configuration_data(data)
        if errors:
            log.info(f"Validation failure {errors = }")
            return ImportResult(
                success=False,
                message=self._(
                    "config-manager-parse-invalid",
                    "Configuration format error: {details}",
                    details=", ".join(errors),
                ),
                errors=errors,
            )

        try:
            config = Configuration.model_validate(
                {
                    **data,
                    "id": data.get("id") or generate_id("config"),
                    "createdAt": data.get("createdAt") or utcnow(),
                    "updatedAt": utcnow(),
                    "version": settings.config_version,
                }
            )
        except ValidationError as e:
            errors = [
                f"{'.'.join(str(loc) for loc in error['loc'])}: {error['msg']}"
                for error in e.errors()
            ]
            return ImportResult(
                success=False,
                message=self._(
                    "config-manager-parse-invalid",
                    "Configuration format error: {details}",
                    details=", ".join(errors),
                ),
                errors=errors,
            )

        warnings = []
        if data.get("version") and data["version"] != settings.config_version:
            warnings.append(
                self._(
                    "config-manager-version-warning",
                    "Configuration version {version} may not be fully "
                    "compatible with this system",
                    version=str(data["version"]),
                )
            )

        return ImportResult(
            success=True,
            message=self._(
                "config-manager-import-success", "Configuration imported successfully"
            ),
            config=config,
            warnings=warnings or None,
        )

    def validate_configuration_data(self, data) -> list[str]:
        """Return every rule an imported document violates

        Args:
            data: the decoded document

        Returns:
            list: error messages, empty for a valid document
        """
        errors = []

        if not isinstance(data, dict):
            errors.append(
                self._(
                    "config-manager-error-invalid-format",
                    "Invalid configuration file format",
                )
            )
            return errors

        if not data.get("name") or not isinstance(data["name"], str):
            errors.append(
                self._("config-manager-error-missing-name", "Missing configuration name")
            )

        device = data.get("device")
        if not isinstance(device, dict):
            errors.append(
                self._(
                    "config-manager-error-missing-device",
                    "Missing device configuration",
                )
            )
        else:
            for field in REQUIRED_DEVICE_FIELDS:
                if not device.get(field):
                    errors.append(
                        self._(
                            "config-manager-error-missing-device-field",
                            "Missing device configuration field: {field}",
                            field=field,
                        )
                    )

        custom_build = data.get("customBuild")
        if not isinstance(custom_build, dict):
            errors.append(
                self._(
                    "config-manager-error-missing-custom-build",
                    "Missing custom build configuration",
                )
            )
        else:
            package_configuration = custom_build.get("packageConfiguration")
            if (
                not isinstance(package_configuration, dict)
                or not isinstance(package_configuration.get("addedPackages"), list)
                or not isinstance(package_configuration.get("removedPackages"), list)
            ):
                errors.append(
                    self._(
                        "config-manager-error-packages-format",
                        "Invalid package configuration format",
                    )
                )
            elif overlap := package_overlap(package_configuration):
                errors.append(
                    self._(
                        "config-manager-error-packages-overlap",
                        "Packages both added and removed: {packages}",
                        packages=", ".join(overlap),
                    )
                )
            if not isinstance(custom_build.get("repositories"), list):
                errors.append(
                    self._(
                        "config-manager-error-repos-format",
                        "Invalid repository configuration format",
                    )
                )
            if not isinstance(custom_build.get("repositoryKeys"), list):
                errors.append(
                    self._(
                        "config-manager-error-keys-format",
                        "Invalid repository keys configuration format",
                    )
                )

        if "modules" in data:
            modules = data["modules"]
            if not isinstance(modules, dict):
                errors.append(
                    self._(
                        "config-manager-error-modules-format",
                        "Invalid module configuration format",
                    )
                )
            else:
                if not isinstance(modules.get("sources"), list):
                    errors.append(
                        self._(
                            "config-manager-error-module-sources-format",
                            "Invalid module source configuration format",
                        )
                    )
                if not isinstance(modules.get("selections"), list):
                    errors.append(
                        self._(
                            "config-manager-error-module-selection-format",
                            "Invalid module selection configuration format",
                        )
                    )

        return errors

    def build_share_document(self, config: Configuration) -> Configuration:
        """Return a copy of `config` under a fresh share id

        The shared copy must never overwrite the sender's saved configuration
        when the receiver saves it.
        """
        now = utcnow()
        return config.model_copy(
            update={
                "id": generate_id("share"),
                "created_at": now,
                "updated_at": now,
                "version": settings.config_version,
            },
            deep=True,
        )
