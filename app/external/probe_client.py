import asyncio
import logging
from typing import Protocol

import requests

logger = logging.getLogger(__name__)


class ProbeClient(Protocol):
    async def probe(self, url: str, path: str, timeout: float) -> bool:
        ...


class HttpProbeClient:
    """Probe HTTP: succès si le statut est < 400 (équivalent de curl -f)"""

    async def probe(self, url: str, path: str, timeout: float) -> bool:
        target = url.rstrip("/") + "/" + path.lstrip("/")
        return await asyncio.to_thread(self._get, target, timeout)

    @staticmethod
    def _get(target: str, timeout: float) -> bool:
        try:
            response = requests.get(target, timeout=timeout)
            return response.status_code < 400
        except requests.RequestException as e:
            logger.debug(f"Probe {target} en échec: {e}")
            return False


class LocalProbeClient:
    """Probe contre InMemoryComputePlatform"""

    def __init__(self, platform):
        self.platform = platform

    async def probe(self, url: str, path: str, timeout: float) -> bool:
        return self.platform.answer_probe(url)
