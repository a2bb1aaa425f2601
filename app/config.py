from pydantic_settings import BaseSettings
from dotenv import load_dotenv
from typing import Optional
from pathlib import Path
import logging

logger = logging.getLogger(__name__)

root_dir = Path(__file__).parent.parent
env_path = root_dir / ".env"
load_dotenv(env_path)


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Blue/Green Orchestrator"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    # Base de données (état de routage + historique des pipelines)
    DATABASE_URL: str = "sqlite:///./bluegreen.db"

    # Security (JWT)
    SECRET_KEY: str = "your-secret-key-change-this-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 600
    BOOTSTRAP_ADMIN_USERNAME: Optional[str] = None
    BOOTSTRAP_ADMIN_PASSWORD: Optional[str] = None

    # Plateforme d'exécution: "kubernetes" ou "local"
    PLATFORM_BACKEND: str = "kubernetes"
    K8S_NAMESPACE: str = "default"

    # Registry
    REGISTRY_URL: str = "http://localhost:5000"
    IMAGE_REPOSITORY: str = "app-ecr-repository"

    # Replica sets et points d'entrée
    DEFAULT_SERVICE_NAME: str = "app-service"
    DEFAULT_INSTANCE_COUNT: int = 1
    CONTAINER_PORT: int = 8080
    LISTENER_PORT: int = 80
    TEST_LISTENER_PORT: int = 8080

    # Health checks
    HEALTH_CHECK_PATH: str = "/"
    HEALTH_CHECK_INTERVAL_SECONDS: float = 30.0
    HEALTH_CHECK_PROBE_TIMEOUT_SECONDS: float = 5.0
    HEALTH_CHECK_REQUIRED_PASSES: int = 3
    HEALTH_CHECK_START_PERIOD_SECONDS: float = 30.0
    HEALTH_CHECK_UNHEALTHY_THRESHOLD: Optional[int] = 3
    PRE_CHECK_TIMEOUT_SECONDS: float = 300.0
    POST_CHECK_TIMEOUT_SECONDS: float = 300.0

    # Approbation manuelle (7 jours)
    APPROVAL_TIMEOUT_SECONDS: float = 7 * 24 * 3600.0

    # Drain de l'ancien replica set après cutover
    TERMINATION_WAIT_SECONDS: float = 60.0

    # Provisioning
    PROVISIONING_ATTEMPTS: int = 3
    PROVISIONING_RETRY_DELAY_SECONDS: float = 5.0

    # Worker
    JANITOR_INTERVAL_SECONDS: float = 60.0

    @property
    def registry_host(self) -> str:
        return self.REGISTRY_URL.split("://", 1)[-1].rstrip("/")

    class Config:
        env_file = ".env"
        env_file_encoding = 'utf-8'
        extra = "ignore"
        case_sensitive = True


try:
    settings = Settings()
except Exception as e:
    logger.error(f"Impossible de charger la configuration: {e}")
    raise
