from fastapi import HTTPException, Request

from medquiz.core.errors import error_response
from medquiz.core.jwt_auth import decode_token
from medquiz.core.settings import settings


EXEMPT_PATH_PREFIXES = (
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
)


def learner_id_from_request(request: Request) -> str | None:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    claims = decode_token(token.strip())
    if not claims:
        return None
    return claims.get("sub") or None


async def current_learner_id(request: Request) -> str:
    """FastAPI dependency resolving the authenticated learner, 401 when absent."""
    learner_id = learner_id_from_request(request)
    if not learner_id:
        raise HTTPException(status_code=401, detail="Unauthorized: missing or invalid bearer token")
    return learner_id


async def api_key_auth_middleware(request: Request, call_next):
    if settings.gateway_auth_enabled:
        path = request.url.path
        if not any(path.startswith(prefix) for prefix in EXEMPT_PATH_PREFIXES):
            provided = request.headers.get("x-api-key", "")
            if not settings.gateway_api_key or provided != settings.gateway_api_key:
                return error_response(
                    request,
                    code="unauthorized",
                    message="Unauthorized: invalid or missing x-api-key",
                    status_code=401,
                )
    return await call_next(request)
