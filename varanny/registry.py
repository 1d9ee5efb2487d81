"""
Modem Registry.

The static table of modems the launcher can run, built once at startup. Each entry
carries a non-blocking run lock: a session either gets the modem right away or is
told it is busy. The locks are the only state shared between client sessions.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

from .config import ServiceConfig
from .errors import ModemBusy, ModemNotFound
from .vara_ini import default_ini_path, read_port

logger = logging.getLogger("varanny.registry")


@dataclass(frozen=True)
class CatCtrl:
    cmd: str = ""
    args: str = ""
    port: int = 0
    dialect: str = ""


@dataclass
class ModemDescriptor:
    name: str
    type: str  # "hf" or "fm"
    cmd: str
    args: str = ""
    config: str = ""  # override ini installed while the modem runs
    audio_input_name: str = ""
    cat_ctrl: CatCtrl = field(default_factory=CatCtrl)
    port: Optional[int] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def try_lock(self) -> bool:
        return self._lock.acquire(blocking=False)

    def unlock(self) -> None:
        try:
            self._lock.release()
        except RuntimeError:
            logger.debug(f"Lock of modem '{self.name}' was not held")

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    def argv(self) -> List[str]:
        """The modem's arguments. Args is a single argument, usually the VARA
        executable run through wine, so a path with spaces stays whole."""
        return [self.args] if self.args else []

    def default_ini_path(self) -> Optional[str]:
        return default_ini_path(self.cmd, self.args)

    def ini_path(self) -> Optional[str]:
        """The ini file describing this modem: the override if set, else the default."""
        if self.config:
            return self.config
        return self.default_ini_path()


class ModemRegistry:
    def __init__(self, modems: List[ModemDescriptor]):
        self._modems: Dict[str, ModemDescriptor] = {}
        for modem in modems:
            self._modems[modem.name] = modem

    @classmethod
    def from_config(cls, config: ServiceConfig) -> "ModemRegistry":
        modems = []
        for m in config.modems:
            descriptor = ModemDescriptor(
                name=m.name,
                type=m.type,
                cmd=m.cmd,
                args=m.args,
                config=m.config,
                audio_input_name=m.audio_input_name,
                cat_ctrl=CatCtrl(
                    cmd=m.cat_ctrl.cmd,
                    args=m.cat_ctrl.args,
                    port=m.cat_ctrl.port,
                    dialect=m.cat_ctrl.dialect,
                ),
            )
            ini_path = descriptor.ini_path()
            if ini_path:
                descriptor.port = read_port(ini_path)
            if descriptor.port is None:
                logger.warning(f"No TCP port known for modem '{m.name}'")
            modems.append(descriptor)
        return cls(modems)

    def __iter__(self) -> Iterator[ModemDescriptor]:
        return iter(self._modems.values())

    def __len__(self) -> int:
        return len(self._modems)

    def names(self) -> List[str]:
        return list(self._modems)

    def get(self, name: str) -> ModemDescriptor:
        modem = self._modems.get(name)
        if modem is None:
            raise ModemNotFound(name)
        return modem

    def acquire(self, name: str) -> ModemDescriptor:
        """Looks up a modem and takes its lock in a single attempt.

        Raises:
            ModemNotFound: no such modem.
            ModemBusy: the lock is held by another session.
        """
        modem = self.get(name)
        if not modem.try_lock():
            raise ModemBusy(name)
        return modem
