from fastapi import FastAPI
import uvicorn
import asyncio
import logging
from contextlib import asynccontextmanager

from app.api.middleware import setup_middlewares
from app.api.router import router
from app.config import settings
from app.core.database import get_db_manager
from app.core.logging import setup_logging
from app.dependencies import get_pipeline_worker
from app.services.auth_service import AuthService
from app.repositories.user_repository import UserRepository
from app.models.user import UserRole


setup_logging()
logger = logging.getLogger(__name__)


def ensure_bootstrap_admin() -> None:
    """Crée l'admin initial décrit par BOOTSTRAP_ADMIN_* tant qu'aucun admin n'existe"""
    if not settings.BOOTSTRAP_ADMIN_USERNAME or not settings.BOOTSTRAP_ADMIN_PASSWORD:
        return
    with get_db_manager().get_session() as db:
        repo = UserRepository(db)
        if repo.has_role(UserRole.ADMIN) or repo.get_by_username(settings.BOOTSTRAP_ADMIN_USERNAME):
            return
        auth_service = AuthService(repo, settings.SECRET_KEY, settings.ALGORITHM)
        repo.create({
            "username": settings.BOOTSTRAP_ADMIN_USERNAME,
            "hashed_password": auth_service.get_password_hash(settings.BOOTSTRAP_ADMIN_PASSWORD),
            "role": UserRole.ADMIN,
            "is_active": True
        })
    logger.info(f"Admin initial {settings.BOOTSTRAP_ADMIN_USERNAME} créé")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Démarrage de l'application...")

    get_db_manager().create_tables()
    ensure_bootstrap_admin()

    worker = get_pipeline_worker()
    worker_task = asyncio.create_task(worker.start())
    worker._task = worker_task
    app.state.worker = worker
    app.state.worker_task = worker_task
    logger.info("Worker de pipeline démarré en arrière-plan")

    yield

    logger.info("Arrêt de l'application...")
    worker.stop()
    worker_task.cancel()
    try:
        await asyncio.wait_for(worker_task, timeout=10.0)
        logger.info("Worker arrêté proprement")
    except (asyncio.CancelledError, asyncio.TimeoutError):
        logger.warning("Worker forcé à s'arrêter (timeout ou annulation)")

    logger.info("Application arrêtée proprement")


app = FastAPI(
    title="Blue/Green Orchestrator API",
    description="Pipeline de déploiement blue/green avec approbation manuelle et rollback automatique",
    version="1.0.0",
    lifespan=lifespan
)

setup_middlewares(app)
app.include_router(router)


if __name__ == "__main__":
    logger.info("Documentation : http://localhost:8000/docs")
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
