import asyncio
import logging
from typing import Protocol, Tuple

import requests

from app.core.exceptions import BuildFailure
from app.external.registry_client import RegistryClient

logger = logging.getLogger(__name__)


class BuildCollaborator(Protocol):
    async def build(self, service_name: str, source_revision: str) -> Tuple[str, str]:
        """Retourne (revision_id, image_reference) ou lève BuildFailure"""
        ...


class RegistryBuildCollaborator:
    """
    Le build et le push sont faits par la CI, qui tague l'image avec l'identifiant du commit.
    Ce collaborateur vérifie seulement que `<repository>:<revision>` est bien présent dans le registry.
    """

    def __init__(self, registry_client: RegistryClient, registry_host: str, repository: str):
        self.registry_client = registry_client
        self.registry_host = registry_host
        self.repository = repository

    async def build(self, service_name: str, source_revision: str) -> Tuple[str, str]:
        try:
            digest = await asyncio.to_thread(
                self.registry_client.get_manifest_digest, self.repository, source_revision
            )
        except requests.RequestException as e:
            raise BuildFailure(f"Registry unreachable while resolving {self.repository}:{source_revision}: {e}") from e

        if digest is None:
            raise BuildFailure(f"Image {self.repository}:{source_revision} was not pushed to the registry")

        image_reference = f"{self.registry_host}/{self.repository}:{source_revision}"
        logger.info(f"Build {source_revision} résolu en {image_reference} ({digest})")
        return source_revision, image_reference


class StaticBuildCollaborator:
    """Build local: l'image est supposée disponible sous `<host>/<repository>:<revision>`"""

    def __init__(self, registry_host: str, repository: str):
        self.registry_host = registry_host
        self.repository = repository
        self.failing_revisions = set()

    async def build(self, service_name: str, source_revision: str) -> Tuple[str, str]:
        if source_revision in self.failing_revisions:
            raise BuildFailure(f"Build of {source_revision} failed")
        return source_revision, f"{self.registry_host}/{self.repository}:{source_revision}"
