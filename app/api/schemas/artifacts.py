from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime


class ArtifactCreate(BaseModel):
    revision_id: str = Field(..., min_length=1, max_length=128)
    image_reference: str = Field(..., min_length=1, max_length=512)


class ArtifactResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    revision_id: str
    image_reference: str
    created_at: datetime
