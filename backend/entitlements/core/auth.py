"""Service-to-service authentication for the internal API.

The API sits behind the application backend, not end users. When
SERVICE_API_TOKEN is set, callers must send it as a bearer token; when it is
empty (local dev, tests) the check is disabled.
"""

import secrets

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from entitlements.core.config import get_settings

bearer_scheme = HTTPBearer(auto_error=False)


def service_token_valid(credentials: HTTPAuthorizationCredentials | None) -> bool:
    expected = get_settings().service_api_token
    if not expected:
        return True
    if credentials is None:
        return False
    return secrets.compare_digest(credentials.credentials.encode(), expected.encode())


async def require_service_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> None:
    """FastAPI dependency enforcing the service token.

    Usage:
        @router.get("/x", dependencies=[Depends(require_service_token)])
    """
    if not service_token_valid(credentials):
        raise HTTPException(status_code=401, detail="Invalid service token")
