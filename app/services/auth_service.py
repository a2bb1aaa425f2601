from datetime import datetime, timedelta
from typing import Optional
from fastapi import HTTPException, status
from passlib.context import CryptContext
from jose import JWTError, jwt
from app.repositories.user_repository import UserRepository
from app.models.user import User, UserRole
from app.api.schemas.auth import UserCreate, TokenData


class AuthService:
    """Service d'authentification des opérateurs et approbateurs"""

    def __init__(self, user_repository: UserRepository, secret_key: str, algorithm: str = "HS256",
                 access_token_expire_minutes: int = 30):
        self.user_repository = user_repository
        self.pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.access_token_expire_minutes = access_token_expire_minutes

    def verify_password(self, plain_password: str, hashed_password: str) -> bool:
        return self.pwd_context.verify(plain_password, hashed_password)

    def get_password_hash(self, password: str) -> str:
        return self.pwd_context.hash(password)

    def authenticate_user(self, username: str, password: str) -> Optional[User]:
        """Authentifie un utilisateur"""
        user = self.user_repository.get_by_username(username)
        if not user or not user.is_active:
            return None
        if not self.verify_password(password, user.hashed_password):
            return None
        return user

    def create_access_token(self, user: User, expires_delta: Optional[timedelta] = None) -> str:
        """Crée un token d'accès JWT portant le rôle"""
        expire = datetime.utcnow() + (expires_delta or timedelta(minutes=self.access_token_expire_minutes))
        to_encode = {"sub": user.username, "role": user.role.value, "exp": expire}
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> TokenData:
        credentials_exception = HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError:
            raise credentials_exception

        username = payload.get("sub")
        if username is None:
            raise credentials_exception
        role = payload.get("role")
        return TokenData(username=username, role=UserRole(role) if role else None)

    def register_user(self, user_data: UserCreate) -> User:
        """Enregistre un nouvel utilisateur"""
        if self.user_repository.get_by_username(user_data.username):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Username already registered"
            )

        return self.user_repository.create({
            "username": user_data.username,
            "hashed_password": self.get_password_hash(user_data.password),
            "role": user_data.role,
            "is_active": True
        })

    def get_current_user(self, token: str) -> User:
        token_data = self.verify_token(token)
        user = self.user_repository.get_by_username(token_data.username)

        if user is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="User not found"
            )
        if not user.is_active:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Inactive user"
            )
        return user
