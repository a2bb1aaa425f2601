from fastapi import APIRouter
from app.api.v1 import auth, pipelines, artifacts
from app.dependencies import get_pipeline_worker

router = APIRouter()

router.include_router(auth.router, prefix="/api/v1")
router.include_router(pipelines.router, prefix="/api/v1")
router.include_router(artifacts.router, prefix="/api/v1")


@router.get("/")
async def root():
    return {
        "message": "Blue/Green Orchestrator API",
        "version": "1.0.0",
        "docs": "/docs",
        "auth": {
            "login": "/api/v1/auth/login",
            "register": "/api/v1/auth/register"
        }
    }


@router.get("/api/v1/health")
async def health():
    return {"status": "healthy"}


@router.get("/api/v1/worker/status")
async def worker_status():
    return get_pipeline_worker().status()
