"""
Config Swap Transaction.

A modem may bring its own ini file. While it runs, that file is installed in place
of the modem's default ini and the original is restored when the session ends.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from .errors import ConfigSwapError
from .vara_ini import copy_file, file_exists

logger = logging.getLogger("varanny.swap")

BACKUP_SUFFIX = ".bak"


@dataclass(frozen=True)
class ConfigBackup:
    original_path: str
    backup_path: str


class ConfigSwap:
    """Installs an override file over ``target`` and puts the original back later.

    ``backup`` is set only once the original has been copied aside, and restore()
    acts only when it is set.
    """

    def __init__(self, target: str):
        self.target = target
        self.backup: Optional[ConfigBackup] = None

    def install(self, override: str) -> None:
        """Backs up the target file and copies ``override`` onto it.

        Raises:
            ConfigSwapError: the override is missing, the backup copy failed (nothing
                was changed), or the install copy failed (the backup is kept so that
                restore() undoes it).
        """
        if os.path.abspath(override) == os.path.abspath(self.target):
            logger.info(f"Modem config {override} is already the default config")
            return

        if not file_exists(override):
            raise ConfigSwapError(f"modem config file {override} does not exist")

        if file_exists(self.target):
            backup_path = self.target + BACKUP_SUFFIX
            logger.info(f"Backing up current config file {self.target}")
            try:
                copy_file(self.target, backup_path)
            except OSError as e:
                logger.error(f"Backup of {self.target} failed: {e}")
                raise ConfigSwapError(f"cannot back up {self.target}: {e}") from e
            self.backup = ConfigBackup(self.target, backup_path)
        else:
            logger.warning(f"Default config {self.target} does not exist, nothing to back up")

        logger.info(f"Installing modem config file {override}")
        try:
            copy_file(override, self.target)
        except OSError as e:
            logger.error(f"Installing {override} failed: {e}")
            raise ConfigSwapError(f"cannot install {override}: {e}") from e

    def restore(self) -> None:
        """Moves the backup back over the target. Never raises."""
        backup = self.backup
        if backup is None:
            return
        self.backup = None
        logger.info(f"Restoring original config file {backup.original_path}")
        try:
            os.replace(backup.backup_path, backup.original_path)
        except OSError as e:
            logger.error(f"Restoring {backup.original_path} failed: {e}")
