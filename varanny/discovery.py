"""DNS-SD announcement of the configured modems.

Every modem with an executable is published as ``_varahf-modem._tcp`` or
``_varafm-modem._tcp`` with the modem's own TCP port, so that clients find the modem
and, through the ``launchport`` property, the launcher that starts it.
"""

import logging
import socket
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from zeroconf import ServiceInfo, Zeroconf

from .errors import ConfigError
from .registry import ModemRegistry

logger = logging.getLogger("varanny.discovery")

SERVICE_TYPES = {
    "hf": "_varahf-modem._tcp.local.",
    "fm": "_varafm-modem._tcp.local.",
}


@dataclass
class ServiceRecord:
    service_type: str
    instance_name: str
    port: int
    properties: Dict[str, str] = field(default_factory=dict)


def build_service_records(registry: ModemRegistry, launch_port: int) -> List[ServiceRecord]:
    records = []
    for modem in registry:
        if not modem.cmd:
            continue
        service_type = SERVICE_TYPES.get(modem.type)
        if service_type is None:
            raise ConfigError(f"Unknown modem type: {modem.type}")
        if not modem.port:
            logger.error(f"Port number of modem '{modem.name}' not found, not advertising it")
            continue

        properties = {"launchport": str(launch_port)}
        if modem.cat_ctrl.port:
            properties["catport"] = str(modem.cat_ctrl.port)
            if modem.cat_ctrl.dialect:
                properties["catdialect"] = modem.cat_ctrl.dialect

        records.append(ServiceRecord(service_type, modem.name, modem.port, properties))
    return records


def _get_local_ip() -> str:
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.connect(("10.255.255.255", 1))
        return s.getsockname()[0]
    except OSError:
        return "127.0.0.1"
    finally:
        s.close()


class ServiceAdvertiser:
    """Publishes a set of ServiceRecords until stopped."""

    def __init__(self, records: List[ServiceRecord]):
        self.records = records
        self._zeroconf: Optional[Zeroconf] = None
        self._infos: List[ServiceInfo] = []

    def start(self) -> None:
        if not self.records:
            logger.warning("No modems to advertise")
            return

        local_ip = _get_local_ip()
        logger.info(f"Advertising DNS-SD services on {local_ip}")
        self._zeroconf = Zeroconf()
        for record in self.records:
            info = ServiceInfo(
                record.service_type,
                f"{record.instance_name}.{record.service_type}",
                addresses=[socket.inet_aton(local_ip)],
                port=record.port,
                properties=record.properties,
                server=f"{socket.gethostname()}.local.",
            )
            self._zeroconf.register_service(info)
            self._infos.append(info)
            logger.info(f"Advertising '{record.instance_name}' as {record.service_type} on port {record.port}")

    def stop(self) -> None:
        if self._zeroconf is None:
            return
        for info in self._infos:
            self._zeroconf.unregister_service(info)
        self._zeroconf.close()
        self._zeroconf = None
        self._infos = []
        logger.info("Stopped advertising DNS-SD services")
