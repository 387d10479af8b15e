import uuid

import requests

from logger import get_logger

SERVICE_NAME = "enroller"


class ConsulRegistrar:
    """Service registration against the local Consul agent HTTP API."""

    def __init__(self, protocol: str, host: str, port, ca_file=None, timeout: float = 5, logger=None):
        self.base_url = f"{protocol}://{host}:{port}"
        self.verify = ca_file or True
        self.timeout = timeout
        self.service_id = None
        self.logger = logger or get_logger("dms-enroller.discovery")

    def register(self, adv_protocol: str, adv_host: str, adv_port) -> str:
        service_id = f"{SERVICE_NAME}-{uuid.uuid4().hex[:8]}"
        payload = {
            "ID": service_id,
            "Name": SERVICE_NAME,
            "Address": adv_host,
            "Port": int(adv_port),
            "Tags": [SERVICE_NAME, adv_protocol],
            "Check": {
                "HTTP": f"{adv_protocol}://{adv_host}:{adv_port}/v1/health",
                "Interval": "10s",
                "Timeout": "1s",
                "Notes": "Basic health checks",
                "TLSSkipVerify": adv_protocol == "https",
            },
        }
        r = requests.put(
            f"{self.base_url}/v1/agent/service/register",
            json=payload, verify=self.verify, timeout=self.timeout,
        )
        r.raise_for_status()
        self.service_id = service_id
        self.logger.info("registered in consul", extra={"fields": {"service_id": service_id}})
        return service_id

    def deregister(self) -> None:
        if not self.service_id:
            return
        r = requests.put(
            f"{self.base_url}/v1/agent/service/deregister/{self.service_id}",
            verify=self.verify, timeout=self.timeout,
        )
        r.raise_for_status()
        self.logger.info("deregistered from consul", extra={"fields": {"service_id": self.service_id}})
        self.service_id = None
