from sqlalchemy import Column, String, Boolean, Enum
import enum
from app.models.base import BaseModel


class UserRole(str, enum.Enum):
    OPERATOR = "operator"
    APPROVER = "approver"
    ADMIN = "admin"


class User(BaseModel):
    __tablename__ = "users"

    username = Column(String(50), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True)
    role = Column(Enum(UserRole), default=UserRole.OPERATOR, nullable=False)

    def can_approve(self) -> bool:
        return self.role in (UserRole.APPROVER, UserRole.ADMIN)

    def __repr__(self):
        return f"<User(username='{self.username}', role='{self.role}')>"
