"""
Persistence of saved configurations.

All configurations live JSON encoded under a single key of the key-value
store, the id of the configuration used last under a second key.
"""

import json
import logging
from typing import Optional

from pydantic import ValidationError
from redis.exceptions import RedisError

import redis
from owconf.config import settings
from owconf.configuration import Configuration, ConfigurationSummary, utcnow
from owconf.util import get_redis_client

log = logging.getLogger(__name__)


def has_package_configuration(document: dict) -> bool:
    """Documents saved before the added/removed package format are legacy"""
    custom_build = document.get("customBuild")
    return isinstance(custom_build, dict) and isinstance(
        custom_build.get("packageConfiguration"), dict
    )


class ConfigurationStore:
    def __init__(self, client: Optional[redis.client.Redis] = None):
        self.client = client if client is not None else get_redis_client()

    def _get_documents(self) -> list[dict]:
        data = self.client.get(settings.config_storage_key)
        if not data:
            return []
        try:
            documents = json.loads(data)
        except json.JSONDecodeError as e:
            log.error(f"Failed to parse configurations: {e}")
            return []
        return [d for d in documents if isinstance(d, dict)]

    def _set_documents(self, documents: list[dict]) -> None:
        self.client.set(settings.config_storage_key, json.dumps(documents))

    def save_configuration(self, config: Configuration) -> bool:
        """Insert or replace a configuration and mark it as last used

        The update time and schema version of `config` are refreshed.

        Returns:
            bool: True if the configuration was stored
        """
        config.updated_at = utcnow()
        config.version = settings.config_version

        try:
            documents = self._get_documents()
            document = config.to_document()
            for index, existing in enumerate(documents):
                if existing.get("id") == config.id:
                    documents[index] = document
                    break
            else:
                documents.append(document)

            self._set_documents(documents)
            self.set_last_used_config_id(config.id)
        except RedisError as e:
            log.error(f"Failed to save configuration: {e}")
            return False
        return True

    def load_configuration(self, id: str) -> Optional[Configuration]:
        for document in self._get_documents():
            if document.get("id") != id:
                continue
            if not has_package_configuration(document):
                log.warning(f"Ignoring legacy configuration {id}")
                return None
            try:
                return Configuration.model_validate(document)
            except ValidationError as e:
                log.error(f"Failed to load configuration {id}: {e}")
                return None
        return None

    def get_configuration_summaries(self) -> list[ConfigurationSummary]:
        summaries = []
        for document in self._get_documents():
            if not has_package_configuration(document):
                continue
            try:
                config = Configuration.model_validate(document)
            except ValidationError as e:
                log.warning(f"Skipping invalid configuration: {e}")
                continue

            package_configuration = config.custom_build.package_configuration
            summaries.append(
                ConfigurationSummary(
                    id=config.id,
                    name=config.name,
                    description=config.description,
                    device_model=config.device.model,
                    version=config.device.version,
                    module_count=len(config.modules.selections)
                    if config.modules
                    else 0,
                    package_count=len(package_configuration.added_packages)
                    + len(package_configuration.removed_packages),
                    created_at=config.created_at,
                    updated_at=config.updated_at,
                )
            )
        return summaries

    def has_configuration(self, id: str) -> bool:
        """Whether a document with `id` is stored, legacy documents included"""
        return any(d.get("id") == id for d in self._get_documents())

    def delete_configuration(self, id: str) -> bool:
        try:
            documents = self._get_documents()
            self._set_documents([d for d in documents if d.get("id") != id])
            if self.get_last_used_config_id() == id:
                self.clear_last_used_config_id()
        except RedisError as e:
            log.error(f"Failed to delete configuration: {e}")
            return False
        return True

    def get_last_used_config_id(self) -> Optional[str]:
        value = self.client.get(settings.last_config_key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def set_last_used_config_id(self, id: str) -> None:
        self.client.set(settings.last_config_key, id)

    def clear_last_used_config_id(self) -> None:
        self.client.delete(settings.last_config_key)
