"""Bearer token check for the HTTP API.

Tokens come from API_TOKEN (comma separated). This guards the service
endpoints only; library callers never go through it.
"""
import secrets
from typing import Optional
from fastapi import HTTPException, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from abtesting.config import settings

# auto_error off so a missing header is a 401 too, not FastAPI's 403
security = HTTPBearer(auto_error=False)


def _known_token(token: str) -> bool:
    return any(secrets.compare_digest(token.encode(), allowed.encode()) for allowed in settings.api_tokens)


def verify_token(credentials: Optional[HTTPAuthorizationCredentials] = Security(security)) -> str:
    """
    Verify Bearer token from request.
    Returns the token if valid, raises 401 otherwise.
    """
    if credentials is None or not _known_token(credentials.credentials):
        raise HTTPException(
            status_code=401,
            detail="Invalid or missing authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return credentials.credentials
