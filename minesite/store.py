from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .errors import ConfigError, InvalidPositionError
from .models import SiteConfig

LOG = logging.getLogger(__name__)

CONFIG_VERSION = "1.1"


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc).replace(microsecond=0)


class JsonSiteStore:
    """Site records kept in one JSON document on disk.

    The raw records are cached as read so that a record this version cannot
    parse survives a save of its neighbours untouched.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.RLock()
        self._document: dict = {}
        self._create_if_missing()
        self.force_reload()

    def _create_if_missing(self) -> None:
        if self.path.exists():
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._write({"version": CONFIG_VERSION, "sites": []})
        except OSError as exc:
            raise ConfigError(f"Failed to create config file {self.path}: {exc}") from exc
        LOG.info("Created empty site config at %s", self.path)

    def force_reload(self) -> None:
        try:
            document = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ConfigError(f"Config file {self.path} is missing") from exc
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Failed to parse config file {self.path}: {exc}") from exc

        if not isinstance(document, dict) or not isinstance(document.get("sites", []), list):
            raise ConfigError(f"Config file {self.path} must hold an object with a 'sites' array")
        document.setdefault("sites", [])
        with self._lock:
            self._document = document
        self._check(document["sites"])
        LOG.info("Loaded site config from %s", self.path)

    def _check(self, records: list) -> None:
        for index, record in enumerate(records):
            try:
                site = SiteConfig.model_validate(record)
            except ValidationError as exc:
                name = record.get("name") if isinstance(record, dict) else None
                LOG.error("Skipping invalid site record #%d (%s): %s", index, name or "unnamed", exc)
                continue
            if site.safety_point:
                try:
                    site.safety_pos()
                except InvalidPositionError as exc:
                    LOG.error("Site %s has an invalid safetyPoint: %s", site.name, exc)
            elif site.active:
                LOG.warning("Site %s has no safetyPoint configured", site.name)

    def get_all(self) -> list[SiteConfig]:
        with self._lock:
            records = list(self._document["sites"])
        sites: list[SiteConfig] = []
        for record in records:
            try:
                sites.append(SiteConfig.model_validate(record))
            except ValidationError:
                continue
        return sites

    def get(self, name: str) -> Optional[SiteConfig]:
        return next((site for site in self.get_all() if site.name == name), None)

    def save(self, config: SiteConfig) -> None:
        record = config.to_record()
        with self._lock:
            sites = list(self._document["sites"])
            index = self._index_of(sites, config.name)
            if index is None:
                sites.append(record)
            else:
                sites[index] = record
            self._commit(sites)

    def update(self, name: str, **changes: object) -> Optional[SiteConfig]:
        """Apply ``changes`` to the stored record of ``name`` and return the result.

        The record is read and written under the store lock, so fields this call
        does not name keep whatever the last writer stored.
        """
        with self._lock:
            sites = list(self._document["sites"])
            index = self._index_of(sites, name)
            if index is None:
                return None
            try:
                current = SiteConfig.model_validate(sites[index])
            except ValidationError as exc:
                raise ConfigError(f"Mine site '{name}' has an invalid record: {exc}") from exc
            updated = current.model_copy(update=changes)
            sites[index] = updated.to_record()
            self._commit(sites)
        return updated

    def add(self, config: SiteConfig) -> None:
        with self._lock:
            sites = list(self._document["sites"])
            if self._index_of(sites, config.name) is not None:
                raise ConfigError(f"Mine site '{config.name}' already exists")
            sites.append(config.to_record())
            self._commit(sites)

    def delete(self, name: str) -> bool:
        with self._lock:
            sites = self._document["sites"]
            kept = [site for site in sites if not (isinstance(site, dict) and site.get("name") == name)]
            if len(kept) == len(sites):
                LOG.warning("Tried to delete unknown mine site: %s", name)
                return False
            self._commit(kept)
        LOG.info("Deleted mine site: %s", name)
        return True

    @staticmethod
    def _index_of(sites: list, name: str) -> Optional[int]:
        for index, record in enumerate(sites):
            if isinstance(record, dict) and record.get("name") == name:
                return index
        return None

    def _commit(self, sites: list) -> None:
        # Memory only follows a successful write.
        document = {**self._document, "sites": sites}
        try:
            self._write(document)
        except OSError as exc:
            raise ConfigError(f"Failed to write config file {self.path}: {exc}") from exc
        self._document = document

    def _write(self, document: dict) -> None:
        payload = json.dumps(document, indent=2, ensure_ascii=False)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.write("\n")
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
