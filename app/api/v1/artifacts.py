from fastapi import APIRouter, Depends, status

from app.api.auth import get_current_active_user
from app.api.schemas.artifacts import ArtifactCreate, ArtifactResponse
from app.dependencies import get_artifact_registry
from app.models.user import User

router = APIRouter(prefix="/artifacts", tags=["artifacts"])


@router.post("", response_model=ArtifactResponse, status_code=status.HTTP_201_CREATED)
async def register_artifact(
        artifact_data: ArtifactCreate,
        current_user: User = Depends(get_current_active_user)
):
    """Callback du build: enregistre (revision_id, image_reference), idempotent"""
    artifact = get_artifact_registry().register(artifact_data.revision_id, artifact_data.image_reference)
    return ArtifactResponse.model_validate(artifact)


@router.get("/{revision_id}", response_model=ArtifactResponse)
async def get_artifact(
        revision_id: str,
        current_user: User = Depends(get_current_active_user)
):
    return ArtifactResponse.model_validate(get_artifact_registry().get(revision_id))
