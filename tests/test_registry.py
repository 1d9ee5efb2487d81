import json
import sys

import pytest

from varanny.config import load_config
from varanny.errors import ModemBusy, ModemNotFound
from varanny.registry import ModemDescriptor, ModemRegistry
from varanny.vara_ini import default_ini_path, read_input_device_name, read_port

def test_lock_is_exclusive_and_non_blocking():
    modem = ModemDescriptor(name="Alpha", type="hf", cmd="VARA.exe")
    assert modem.try_lock()
    assert modem.locked
    assert not modem.try_lock()
    modem.unlock()
    assert not modem.locked
    assert modem.try_lock()

def test_unlock_of_free_lock_is_harmless():
    modem = ModemDescriptor(name="Alpha", type="hf", cmd="VARA.exe")
    modem.unlock()
    assert not modem.locked

def test_registry_acquire():
    registry = ModemRegistry([
        ModemDescriptor(name="Alpha", type="hf", cmd="VARA.exe"),
        ModemDescriptor(name="Beta", type="fm", cmd="VARAFM.exe"),
    ])
    assert registry.names() == ["Alpha", "Beta"]

    alpha = registry.acquire("Alpha")
    with pytest.raises(ModemBusy, match="modem Alpha is already running"):
        registry.acquire("Alpha")
    with pytest.raises(ModemNotFound, match="modem name 'Gamma' not found"):
        registry.acquire("Gamma")

    beta = registry.acquire("Beta")
    alpha.unlock()
    beta.unlock()
    assert registry.acquire("Alpha") is alpha

def test_default_ini_path_from_cmd(vara_dir):
    assert default_ini_path(str(vara_dir / "VARA.exe")) == str(vara_dir / "VARA.ini")

def test_default_ini_path_from_wine_args(vara_dir):
    assert default_ini_path("wine", str(vara_dir / "VARA.exe")) == str(vara_dir / "VARA.ini")

def test_default_ini_path_with_spaces_in_install_dir(varafm_dir):
    executable = str(varafm_dir / "VARAFM.exe")
    assert default_ini_path("/usr/bin/wine", executable) == str(varafm_dir / "VARAFM.ini")
    assert default_ini_path(executable) == str(varafm_dir / "VARAFM.ini")

def test_modem_args_are_one_argument(varafm_dir):
    executable = str(varafm_dir / "VARAFM.exe")
    modem = ModemDescriptor(name="VaraFM", type="fm", cmd="wine", args=executable)
    assert modem.argv() == [executable]
    assert ModemDescriptor(name="VaraHF", type="hf", cmd="VARA.exe").argv() == []

def test_default_ini_path_missing(vara_dir):
    assert default_ini_path("wine", str(vara_dir / "VARAFM.exe")) is None
    assert default_ini_path("rigctld", "-m 1") is None

def test_read_ini_values(tmp_path):
    ini = tmp_path / "VARAFM.ini"
    ini.write_text(
        "[Setup]\nTCP Command Port=8300\n\n"
        "[Soundcard]\nInput Device Name=Microphone (USB Audio CODEC )\n"
    )
    assert read_input_device_name(str(ini)) == "Microphone (USB Audio CODEC )"
    assert read_port(str(ini)) == 8300

def test_read_ini_missing_values(tmp_path):
    ini = tmp_path / "VARA.ini"
    ini.write_text("[Setup]\nTCP Command Port=abc\n")
    assert read_input_device_name(str(ini)) == ""
    assert read_port(str(ini)) is None
    assert read_port(str(tmp_path / "missing.ini")) is None

def test_registry_from_config_resolves_ports(tmp_path, vara_dir):
    (vara_dir / "VARA.ini").write_text("[Setup]\nTCP Command Port=8300\n")
    override = tmp_path / "VARA.digi.ini"
    override.write_text("[Setup]\nTCP Command Port=8400\n")
    path = tmp_path / "varanny.json"
    path.write_text(json.dumps({
        "Port": 8273,
        "Modems": [
            {"Name": "Default", "Type": "hf", "Cmd": sys.executable, "Args": str(vara_dir / "VARA.exe")},
            {"Name": "Override", "Type": "hf", "Cmd": sys.executable, "Args": str(vara_dir / "VARA.exe"),
             "Config": str(override), "CatCtrl": {"Port": 4532, "Dialect": "hamlib"}},
            {"Name": "Unknown", "Type": "fm", "Cmd": sys.executable},
        ],
    }))
    registry = ModemRegistry.from_config(load_config(str(path)))

    assert registry.get("Default").port == 8300
    assert registry.get("Override").port == 8400
    assert registry.get("Override").cat_ctrl.dialect == "hamlib"
    assert registry.get("Override").default_ini_path() == str(vara_dir / "VARA.ini")
    assert registry.get("Unknown").port is None
    assert len(registry) == 3
