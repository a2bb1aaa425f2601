from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
import logging

from app.models.artifact import Artifact
from app.repositories.artifact_repository import ArtifactRepository
from app.core.exceptions import DuplicateRevision, NotFound

logger = logging.getLogger(__name__)


class ArtifactRegistry:
    """Registre des artefacts de build, immuables une fois écrits"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def register(self, revision_id: str, image_reference: str) -> Artifact:
        """Enregistre un artefact; idempotent pour un couple identique"""
        if not revision_id or not image_reference:
            raise ValueError("revision_id and image_reference are required")

        with self.session_factory() as db:
            repo = ArtifactRepository(db)
            existing = repo.get_by_revision(revision_id)
            if existing is None:
                try:
                    artifact = repo.create({"revision_id": revision_id, "image_reference": image_reference})
                    logger.info(f"Artefact {revision_id} enregistré ({image_reference})")
                    return artifact
                except IntegrityError:
                    # Insertion concurrente du même revision_id
                    existing = repo.get_by_revision(revision_id)

            if existing.image_reference != image_reference:
                raise DuplicateRevision(
                    f"Revision '{revision_id}' already registered with image '{existing.image_reference}'"
                )
            return existing

    def get(self, revision_id: str) -> Artifact:
        with self.session_factory() as db:
            artifact = ArtifactRepository(db).get_by_revision(revision_id)
        if artifact is None:
            raise NotFound(f"Artifact '{revision_id}' not found")
        return artifact
