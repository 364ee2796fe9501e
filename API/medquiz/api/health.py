from fastapi import APIRouter, Request

from medquiz.core.settings import settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request):
    manager = getattr(request.app.state, "session_manager", None)
    return {
        "status": "ok",
        "service": "medquiz-api",
        "env": settings.app_env,
        "active_sessions": len(manager) if manager is not None else 0,
        "session_registry_backend": settings.session_registry_backend,
    }
