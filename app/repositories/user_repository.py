from typing import Optional
from sqlalchemy.orm import Session
from app.repositories.base_repository import BaseRepository
from app.models.user import User, UserRole


class UserRepository(BaseRepository[User]):
    """Opérateurs, approbateurs et admins"""

    def __init__(self, db: Session):
        super().__init__(User, db)

    def get_by_username(self, username: str) -> Optional[User]:
        return self.get_by_field("username", username)

    def has_role(self, role: UserRole) -> bool:
        return self.db.query(User.id).filter(User.role == role).first() is not None
