from fastapi import APIRouter, Depends, HTTPException, status
from app.api.schemas.auth import UserCreate, UserLogin, UserResponse, Token
from app.services.auth_service import AuthService
from app.api.auth import get_auth_service, get_current_active_user, require_admin
from app.models.user import User, UserRole

router = APIRouter(prefix="/auth", tags=["authentication"])


@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register(
        user_data: UserCreate,
        auth_service: AuthService = Depends(get_auth_service)
):
    """Enregistrer un nouvel opérateur"""
    if user_data.role != UserRole.OPERATOR:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only an admin can grant the approver or admin role"
        )
    user = auth_service.register_user(user_data)
    return UserResponse.model_validate(user)


@router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
        user_data: UserCreate,
        auth_service: AuthService = Depends(get_auth_service),
        _: User = Depends(require_admin)
):
    """Créer un utilisateur avec n'importe quel rôle (admin)"""
    user = auth_service.register_user(user_data)
    return UserResponse.model_validate(user)


@router.post("/login", response_model=Token)
async def login(
        user_credentials: UserLogin,
        auth_service: AuthService = Depends(get_auth_service)
):
    """Connexion d'un utilisateur"""
    user = auth_service.authenticate_user(user_credentials.username, user_credentials.password)

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return Token(access_token=auth_service.create_access_token(user), token_type="bearer")


@router.get("/me", response_model=UserResponse)
async def read_users_me(current_user: User = Depends(get_current_active_user)):
    return UserResponse.model_validate(current_user)
