import requests
import logging
from typing import Optional

logger = logging.getLogger(__name__)

MANIFEST_ACCEPT = (
    "application/vnd.oci.image.index.v1+json, "
    "application/vnd.oci.image.manifest.v1+json, "
    "application/vnd.docker.distribution.manifest.list.v2+json, "
    "application/vnd.docker.distribution.manifest.v2+json"
)


class RegistryClient:
    """Client minimal de l'API v2 d'un registry de conteneurs"""

    def __init__(self, base_url: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def get_manifest_digest(self, image_name: str, reference: str) -> Optional[str]:
        """
        Digest du manifeste `image_name:reference`, None si le tag n'existe pas.
        Les erreurs réseau et HTTP autres que 404 remontent en requests.RequestException.
        """
        response = requests.head(
            f"{self.base_url}/v2/{image_name}/manifests/{reference}",
            headers={"Accept": MANIFEST_ACCEPT},
            timeout=self.timeout,
        )
        if response.status_code == 404:
            logger.info(f"Manifest {image_name}:{reference} absent du registry")
            return None
        response.raise_for_status()

        digest = response.headers.get("Docker-Content-Digest")
        if not digest:
            # Certains registries ne renvoient le digest qu'en GET
            response = requests.get(
                f"{self.base_url}/v2/{image_name}/manifests/{reference}",
                headers={"Accept": MANIFEST_ACCEPT},
                timeout=self.timeout,
            )
            response.raise_for_status()
            digest = response.headers.get("Docker-Content-Digest")
        return digest
