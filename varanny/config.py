"""
Startup Configuration.

This module loads the launcher's JSON configuration file and validates it before the
service starts. The file looks like::

    {
      "Port": 8273,
      "Delay": 5,
      "Modems": [
        {"Name": "VaraHF", "Type": "hf", "Cmd": "C:\\VARA\\VARA.exe",
         "CatCtrl": {"Port": 4532, "Dialect": "hamlib", "Cmd": "rigctld", "Args": "-m 3073"}}
      ]
    }

Any problem with the file is reported as a ConfigError, which is fatal to startup.
"""

import json
import logging
import os
import shutil
import sys
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError

logger = logging.getLogger("varanny.config")

DEFAULT_DELAY = 10
DEFAULT_MATCH_THRESHOLD = 0.7


class CatCtrlConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    port: int = Field(0, alias="Port")
    dialect: str = Field("", alias="Dialect")
    cmd: str = Field("", alias="Cmd")
    args: str = Field("", alias="Args")


class ModemConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(alias="Name")
    type: str = Field(alias="Type")
    cmd: str = Field("", alias="Cmd")
    args: str = Field("", alias="Args")
    config: str = Field("", alias="Config")
    audio_input_name: str = Field("", alias="AudioInputName")
    cat_ctrl: CatCtrlConfig = Field(default_factory=CatCtrlConfig, alias="CatCtrl")

    @field_validator("type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        if value not in ("hf", "fm"):
            raise ValueError(f"unknown modem type '{value}', expected 'hf' or 'fm'")
        return value


class ServiceConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    port: int = Field(alias="Port")
    delay: int = Field(DEFAULT_DELAY, alias="Delay", ge=0)
    match_threshold: float = Field(DEFAULT_MATCH_THRESHOLD, alias="MatchThreshold", ge=0.0, le=1.0)
    modems: List[ModemConfig] = Field(default_factory=list, alias="Modems")
    path: Optional[str] = Field(None, exclude=True)


def default_config_path() -> str:
    """Returns the launcher's own path with its extension replaced by ``.json``."""
    executable = os.path.abspath(sys.argv[0])
    base, _ = os.path.splitext(executable)
    return base + ".json"


def load_config(path: str) -> ServiceConfig:
    """Loads and parses the configuration file at ``path``.

    Raises:
        ConfigError: if the file cannot be read or does not match the expected schema.
    """
    logger.info(f"Loading configuration from {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Failed to read config file {path!r}: {e}") from e

    try:
        config = ServiceConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config file {path!r}: {e}") from e

    config.path = os.path.abspath(path)
    return config


def validate_config(config: ServiceConfig) -> None:
    """Checks that everything the configuration refers to actually exists.

    Raises:
        ConfigError: on the first problem found.
    """
    if not config.modems:
        raise ConfigError("No modems defined")

    seen = set()
    for modem in config.modems:
        if modem.name in seen:
            raise ConfigError(f"Modem name '{modem.name}' defined more than once")
        seen.add(modem.name)

        if not modem.cmd:
            raise ConfigError(f"Modem executable for '{modem.name}' not defined")
        _assert_executable(modem.cmd)

        if modem.config and not os.path.isfile(modem.config):
            raise ConfigError(f"Failed to find config file {modem.config!r}")

        if modem.cat_ctrl.cmd:
            _assert_executable(modem.cat_ctrl.cmd)


def _assert_executable(path: str) -> None:
    if shutil.which(path) is None:
        raise ConfigError(f"Failed to find executable {path!r}")
