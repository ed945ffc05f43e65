"""
Package selection logic for OpenWrt firmware builds.

The selection is tracked as a diff against the device's default packages:
packages the user added on top of the defaults and default packages the user
excluded. Both lists are kept disjoint at all times.
"""

import logging
import re
from enum import Enum
from typing import Callable, Iterable, Optional, Union

from owconf.catalog import PackageCatalog
from owconf.configuration import PackageConfiguration

log = logging.getLogger(__name__)

Listener = Callable[[str], None]

NAME_SEPARATOR = re.compile(r"[\s,]+")


class PackageStatus(str, Enum):
    SELECTED = "selected"
    REMOVED = "removed"
    DEFAULT = "default"
    AVAILABLE = "available"


class PackageSelection:
    def __init__(
        self,
        default_packages: Iterable[str] = (),
        catalog: Optional[PackageCatalog] = None,
    ):
        self.default_packages: set[str] = set(default_packages)
        self.catalog = catalog
        self.added_packages: list[str] = []
        self.removed_packages: list[str] = []
        self.pending_packages: list[str] = []
        self._added_listeners: list[Listener] = []
        self._removed_listeners: list[Listener] = []

    def on_added(self, listener: Listener) -> None:
        """Call `listener` with the name of every package that gets selected"""
        self._added_listeners.append(listener)

    def on_removed(self, listener: Listener) -> None:
        """Call `listener` with the name of every package that gets deselected"""
        self._removed_listeners.append(listener)

    def _notify(self, listeners: list[Listener], name: str) -> None:
        for listener in listeners:
            listener(name)

    def is_default(self, name: str) -> bool:
        return name in self.default_packages

    def status(self, name: str) -> PackageStatus:
        if name in self.added_packages:
            return PackageStatus.SELECTED
        if name in self.removed_packages:
            return PackageStatus.REMOVED
        if self.is_default(name):
            return PackageStatus.DEFAULT
        return PackageStatus.AVAILABLE

    def is_selected(self, name: str) -> bool:
        return self.status(name) in (PackageStatus.SELECTED, PackageStatus.DEFAULT)

    def add(self, name: str) -> None:
        """Select a package

        Adding a default package only lifts its exclusion, it is never listed
        as an addition.
        """
        if name in self.removed_packages:
            self.restore(name)
            if self.is_default(name):
                return

        if self.is_default(name) or name in self.added_packages:
            return

        self.added_packages.append(name)
        log.debug(f"Added {name} to packages")
        self._notify(self._added_listeners, name)

    def remove(self, name: str) -> None:
        """Deselect a package

        Default packages are excluded explicitly, deselecting anything else
        simply drops the earlier addition.
        """
        if name in self.added_packages:
            self.added_packages.remove(name)
            log.debug(f"Dropped {name} from added packages")
            if not self.is_default(name):
                self._notify(self._removed_listeners, name)
                return

        if self.is_default(name) and name not in self.removed_packages:
            self.removed_packages.append(name)
            log.debug(f"Excluded default package {name}")
            self._notify(self._removed_listeners, name)

    def restore(self, name: str) -> None:
        """Lift the exclusion of a default package"""
        if name not in self.removed_packages:
            return
        self.removed_packages.remove(name)
        log.debug(f"Restored {name}")
        self._notify(self._added_listeners, name)

    def toggle(self, name: str) -> PackageStatus:
        """Flip the selection of a package and return its new status"""
        if self.is_selected(name):
            self.remove(name)
        else:
            self.add(name)
        return self.status(name)

    def bulk_add(self, names: Union[str, Iterable[str]]) -> list[str]:
        """Add many packages, e.g. pasted as free text

        Names unknown to a loaded catalog are rejected. While the catalog is
        still empty, unknown names are kept pending until `resolve_pending`
        runs after the feeds are loaded.

        Args:
            names: package names or a whitespace/comma separated string

        Returns:
            list: names that were rejected
        """
        if isinstance(names, str):
            names = NAME_SEPARATOR.split(names)

        rejected = []
        for name in filter(None, (n.strip() for n in names)):
            if self.catalog is None or self.is_default(name) or name in self.catalog:
                self.add(name)
            elif len(self.catalog) == 0:
                if name not in self.pending_packages:
                    self.pending_packages.append(name)
            else:
                rejected.append(name)

        if rejected:
            log.info(f"Rejected unknown packages {rejected}")
        return rejected

    def resolve_pending(self) -> list[str]:
        """Add pending names found in the catalog, return the others"""
        pending, self.pending_packages = self.pending_packages, []
        return self.bulk_add(pending)

    def reset(self, default_packages: Iterable[str] = ()) -> None:
        """Start over for a new device or firmware version"""
        self.default_packages = set(default_packages)
        self.clear()

    def clear(self) -> None:
        self._replace([], [])
        self.pending_packages = []

    def _replace(self, added: list[str], removed: list[str]) -> None:
        """Swap both lists and announce every package whose selection changed

        Dropped additions and new exclusions are reported as removed, new
        additions and lifted exclusions as added.
        """
        old_added, old_removed = self.added_packages, self.removed_packages
        self.added_packages, self.removed_packages = added, removed

        deselected = [n for n in old_added if n not in added]
        deselected += [n for n in removed if n not in old_removed]
        for name in dict.fromkeys(deselected):
            self._notify(self._removed_listeners, name)

        selected = [n for n in old_removed if n not in removed]
        selected += [n for n in added if n not in old_added]
        for name in dict.fromkeys(selected):
            self._notify(self._added_listeners, name)

    def build_packages_list(self) -> list[str]:
        """Return the package arguments of a build request

        The device defaults are implied by the build server, additions are
        listed by name and exclusions are prefixed with `-`.
        """
        return self.added_packages + [f"-{name}" for name in self.removed_packages]

    def get_configuration(self) -> PackageConfiguration:
        return PackageConfiguration(
            added_packages=list(self.added_packages),
            removed_packages=list(self.removed_packages),
        )

    def set_configuration(self, configuration: PackageConfiguration) -> None:
        """Replace the selection with a saved one

        Exclusions are kept as saved even if the current defaults differ. A
        name present in both lists stays excluded.
        """
        removed = list(dict.fromkeys(configuration.removed_packages))
        added = [
            name
            for name in dict.fromkeys(configuration.added_packages)
            if name not in removed
        ]
        self._replace(added, removed)
        self.pending_packages = []
