from typing import Optional
from sqlalchemy.orm import Session
from app.repositories.base_repository import BaseRepository
from app.models.artifact import Artifact


class ArtifactRepository(BaseRepository[Artifact]):
    def __init__(self, db: Session):
        super().__init__(Artifact, db)

    def get_by_revision(self, revision_id: str) -> Optional[Artifact]:
        """Récupère un artefact par son identifiant de révision"""
        return self.get_by_field("revision_id", revision_id)
