"""
Host configuration mutation.

Pauses and resumes providers in the host agent runtime's JSON config file.
Pausing saves a backup of the providers section inside the file so that
resuming restores it exactly.
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Protocol, Sequence

logger = logging.getLogger(__name__)

BACKUP_KEY = "_cost_governor_backup"


class HostConfigError(Exception):
    """Raised when the host configuration cannot be read or written."""


class ProviderSwitch(Protocol):
    """Side effect invoked by the breaker on trip and reset."""

    def pause(self, providers: Sequence[str]) -> None:
        ...

    def resume(self) -> None:
        ...


class NullHostConfig:
    """Used when no host configuration file is configured."""

    def pause(self, providers: Sequence[str]) -> None:
        logger.info("No host config configured, not pausing %s", list(providers))

    def resume(self) -> None:
        logger.info("No host config configured, nothing to resume")


class JsonHostConfig:
    """Provider switch backed by a JSON host configuration file.

    Expected layout: ``{"providers": {"<name>": {"enabled": true, ...}}}``.
    Other top-level keys are left untouched.
    """

    def __init__(self, path: str):
        self.path = Path(path).expanduser()

    def pause(self, providers: Sequence[str]) -> None:
        if not self.path.exists():
            logger.warning("Host config %s not found, cannot pause providers", self.path)
            return

        config = self._load()
        if BACKUP_KEY not in config:
            config[BACKUP_KEY] = {
                "had_providers": "providers" in config,
                "providers": copy.deepcopy(config.get("providers", {})),
            }

        section = config.setdefault("providers", {})
        for provider in providers:
            entry = section.get(provider)
            if not isinstance(entry, dict):
                entry = {}
                section[provider] = entry
            entry["enabled"] = False
            entry["paused_by"] = "cost_governor"
            logger.info("Pausing provider %s in %s", provider, self.path)

        self._save(config)

    def resume(self) -> None:
        if not self.path.exists():
            logger.warning("Host config %s not found", self.path)
            return

        config = self._load()
        backup = config.pop(BACKUP_KEY, None)
        if backup is None:
            return

        if backup.get("had_providers", True):
            config["providers"] = backup.get("providers", {})
        else:
            config.pop("providers", None)
        self._save(config)

    def is_paused(self) -> bool:
        return self.path.exists() and BACKUP_KEY in self._load()

    def _load(self) -> dict:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise HostConfigError(f"Cannot read host config {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise HostConfigError(f"Host config {self.path} must be a JSON object")
        return data

    def _save(self, config: dict) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(config, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise HostConfigError(f"Cannot write host config {self.path}: {e}") from e
