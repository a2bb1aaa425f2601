from sqlalchemy import Column, String
from .base import BaseModel


class Artifact(BaseModel):
    __tablename__ = "artifacts"

    # Immuable une fois écrit
    revision_id = Column(String(128), unique=True, nullable=False, index=True)
    image_reference = Column(String(512), nullable=False)

    def __repr__(self):
        return f"<Artifact(revision_id='{self.revision_id}', image='{self.image_reference}')>"
