"""
Bridge configuration storage.

Approved discovery results become bridge configurations, persisted as JSON.

:copyright: (c) 2025 by Jack Powell.
:license: Mozilla Public License Version 2.0, see LICENSE for more details.
"""

import dataclasses
import json
import logging
import os
from typing import Any, Callable, Generic, Iterator, TypeVar, get_args, get_origin

_LOG = logging.getLogger(__name__)

_CFG_FILENAME = "bridges.json"

ConfigT = TypeVar("ConfigT")


def get_config_path(default_path: str) -> str:
    """
    Resolve the configuration directory.

    - OPENBUS_CONFIG_HOME set: use it (container deployments)
    - driver.json in the working directory: use ./config (local development)
    - otherwise: the host supplied default

    :param default_path: Default configuration path of the host
    :return: Configuration directory path
    """
    if config_home := os.getenv("OPENBUS_CONFIG_HOME"):
        _LOG.debug("Using OPENBUS_CONFIG_HOME: %s", config_home)
        return config_home

    if os.path.exists("driver.json"):
        local_path = os.path.abspath("config")
        _LOG.debug("Local development detected, using config path: %s", local_path)
        return local_path

    _LOG.debug("Using default config path: %s", default_path)
    return default_path


@dataclasses.dataclass
class BridgeConfig:
    """Configuration of an approved bridge device."""

    identifier: str
    """Thing UID of the bridge (e.g. openwebnet:dongle:42)"""

    name: str
    serial_port: str
    firmware_version: str | None = None
    device_id: int = 0


class _DataclassEncoder(json.JSONEncoder):
    """JSON encoder serializing dataclasses as dictionaries."""

    def default(self, o: Any) -> Any:
        if dataclasses.is_dataclass(o):
            return dataclasses.asdict(o)
        return super().default(o)


class BaseConfigManager(Generic[ConfigT]):
    """
    JSON backed store of configuration dataclasses.

    Entries are keyed by their ``identifier`` attribute. Optional callbacks are
    invoked when an entry is added or removed (``None`` when all are cleared).
    """

    def __init__(
        self,
        data_path: str,
        add_handler: Callable[[ConfigT], None] | None = None,
        remove_handler: Callable[[ConfigT | None], None] | None = None,
        config_class: type[ConfigT] | None = None,
    ):
        """
        Create a configuration store and load existing entries.

        :param data_path: Directory holding the configuration file
        :param add_handler: Optional callback when an entry is added
        :param remove_handler: Optional callback when an entry is removed
        :param config_class: Configuration dataclass, inferred from the generic parameter if None
        """
        self._data_path = data_path
        self._cfg_file_path = os.path.join(data_path, _CFG_FILENAME)
        self._config: list[ConfigT] = []
        self._add_handler = add_handler
        self._remove_handler = remove_handler
        self._config_class = config_class or self._infer_config_class()
        self.load()

    @property
    def data_path(self) -> str:
        """Return the configuration directory."""
        return self._data_path

    def all(self) -> Iterator[ConfigT]:
        """Iterate over all entries."""
        return iter(self._config)

    def contains(self, identifier: str) -> bool:
        """Return True if an entry with the identifier exists."""
        return any(self.get_id(item) == identifier for item in self._config)

    def get(self, identifier: str) -> ConfigT | None:
        """
        Return a copy of the entry with the identifier.

        :param identifier: Entry identifier
        :return: Entry copy or None
        """
        for item in self._config:
            if self.get_id(item) == identifier:
                return dataclasses.replace(item)
        return None

    def add_or_update(self, entry: ConfigT) -> None:
        """Add the entry, or update it in place when it already exists."""
        if self._replace(entry):
            self.store()
            return
        self._config.append(entry)
        self.store()
        if self._add_handler is not None:
            self._add_handler(entry)

    def update(self, entry: ConfigT) -> bool:
        """
        Update an existing entry and persist.

        :return: True if the entry existed and was stored
        """
        if not self._replace(entry):
            return False
        return self.store()

    def _replace(self, entry: ConfigT) -> bool:
        """Copy the entry's fields onto the stored entry with the same identifier."""
        identifier = self.get_id(entry)
        for item in self._config:
            if self.get_id(item) == identifier:
                for field in dataclasses.fields(item):
                    setattr(item, field.name, getattr(entry, field.name))
                return True
        return False

    def remove(self, identifier: str) -> bool:
        """
        Remove the entry with the identifier.

        :return: True if an entry was removed
        """
        for item in self._config:
            if self.get_id(item) == identifier:
                self._config.remove(item)
                self.store()
                if self._remove_handler is not None:
                    self._remove_handler(item)
                return True
        return False

    def clear(self) -> None:
        """Remove all entries and the configuration file."""
        self._config = []
        if os.path.exists(self._cfg_file_path):
            os.remove(self._cfg_file_path)
        if self._remove_handler is not None:
            self._remove_handler(None)

    def store(self) -> bool:
        """
        Write the configuration file.

        :return: True if the file could be written
        """
        try:
            os.makedirs(self._data_path, exist_ok=True)
            with open(self._cfg_file_path, "w+", encoding="utf-8") as f:
                json.dump(self._config, f, ensure_ascii=False, cls=_DataclassEncoder)
            return True
        except OSError as err:
            _LOG.error("Cannot write the config file: %s", err)
            return False

    def load(self) -> bool:
        """
        Read the configuration file.

        :return: True if the file could be read
        """
        if not os.path.exists(self._cfg_file_path):
            _LOG.info("No configuration file yet: %s", self._cfg_file_path)
            return False

        try:
            with open(self._cfg_file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            entries = [entry for entry in map(self.deserialize, data) if entry]
        except OSError as err:
            _LOG.error("Cannot read the config file %s: %s", self._cfg_file_path, err)
            return False
        except json.JSONDecodeError as err:
            _LOG.error("Invalid JSON in config file %s: %s", self._cfg_file_path, err)
            return False
        except (AttributeError, TypeError) as err:
            _LOG.error("Invalid config file format in %s: %s", self._cfg_file_path, err)
            return False

        self._config = entries
        _LOG.info("Loaded %d bridge(s) from configuration", len(self._config))
        return True

    def get_backup_json(self) -> str:
        """Return all entries as a JSON string."""
        return json.dumps(self._config, ensure_ascii=False, indent=2, cls=_DataclassEncoder)

    def restore_from_backup_json(self, backup_json: str) -> bool:
        """
        Replace all entries with the ones in a JSON backup.

        :return: True if at least one entry was restored and stored
        """
        try:
            data = json.loads(backup_json)
        except json.JSONDecodeError as err:
            _LOG.error("Invalid JSON in backup: %s", err)
            return False

        if not isinstance(data, list):
            _LOG.error("Invalid backup format: expected list, got %s", type(data).__name__)
            return False

        entries = [
            entry
            for entry in (self.deserialize(item) for item in data if isinstance(item, dict))
            if entry
        ]
        if not entries:
            _LOG.error("No valid bridges found in backup")
            return False

        self._config = entries
        if not self.store():
            return False
        _LOG.info("Restored %d bridge(s) from backup", len(self._config))
        if self._add_handler is not None:
            for entry in self._config:
                self._add_handler(entry)
        return True

    def get_id(self, entry: ConfigT) -> str:
        """Return the identifier of an entry."""
        return str(getattr(entry, "identifier"))

    def deserialize(self, data: dict) -> ConfigT | None:
        """
        Build an entry from a dictionary, ignoring unknown keys.

        :return: Entry or None if the data is invalid
        """
        if self._config_class is None:
            raise TypeError(
                f"{type(self).__name__} needs a config_class or a generic parameter"
            )
        names = {field.name for field in dataclasses.fields(self._config_class)}
        try:
            return self._config_class(
                **{key: value for key, value in data.items() if key in names}
            )
        except (TypeError, ValueError) as err:
            _LOG.error("Failed to deserialize bridge: %s", err)
            return None

    def _infer_config_class(self) -> type[ConfigT] | None:
        for base in getattr(type(self), "__orig_bases__", []):
            if get_origin(base) is BaseConfigManager:
                args = get_args(base)
                if args and dataclasses.is_dataclass(args[0]):
                    return args[0]
        return None


class BridgeConfigManager(BaseConfigManager[BridgeConfig]):
    """Store of approved bridge configurations."""
