"""
VARA ini file access.

VARA keeps its settings next to the executable in ``VARA.ini`` (HF) or ``VARAFM.ini``
(FM). The launcher only reads two values from it::

    [Setup]
    TCP Command Port=8300

    [Soundcard]
    Input Device Name=Microphone (USB Audio CODEC )
    Output Device Name=Speakers (USB Audio CODEC )
"""

import configparser
import logging
import os
import shutil
from typing import Optional

logger = logging.getLogger("varanny.vara_ini")

INI_NAMES = {
    "vara.exe": "VARA.ini",
    "varafm.exe": "VARAFM.ini",
}


def default_ini_for(path: str) -> str:
    """Maps a VARA executable path to the ini file beside it, or "" if unknown."""
    directory, execname = os.path.split(path)
    ini_name = INI_NAMES.get(execname.lower())
    if ini_name is None:
        return ""
    return os.path.join(directory, ini_name)


def default_ini_path(cmd: str, args: str = "") -> Optional[str]:
    """Finds the default ini file of a modem.

    The executable itself is tried first. Linux installs run VARA through wine, so
    the VARA executable is then the whole argument string instead.
    """
    for candidate in (cmd, args.strip()):
        if not candidate:
            continue
        ini_path = default_ini_for(candidate)
        if ini_path and file_exists(ini_path):
            return ini_path
    return None


def _load(path: str) -> configparser.ConfigParser:
    parser = configparser.ConfigParser(strict=False, interpolation=None)
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        parser.read_file(f)
    return parser


def read_input_device_name(path: str) -> str:
    """Returns ``[Soundcard] Input Device Name`` from the ini file, "" when absent.

    Raises:
        OSError: the file cannot be read.
        configparser.Error: the file is not ini formatted.
    """
    parser = _load(path)
    return parser.get("Soundcard", "Input Device Name", fallback="").strip()


def read_port(path: str) -> Optional[int]:
    """Returns the modem's TCP command port from the ini file, if it is set."""
    try:
        parser = _load(path)
    except (OSError, configparser.Error) as e:
        logger.warning(f"Cannot read {path}: {e}")
        return None

    value = parser.get("Setup", "TCP Command Port", fallback="").strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Invalid TCP Command Port {value!r} in {path}")
        return None


def file_exists(path: str) -> bool:
    return os.path.isfile(path)


def copy_file(source: str, destination: str) -> None:
    shutil.copyfile(source, destination)
