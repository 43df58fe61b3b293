from __future__ import annotations

import hashlib
import secrets
from typing import Optional

from fastapi import HTTPException, Request, status

TOKEN_HEADER = "X-MineSite-Token"


def verify_token(provided: Optional[str], configured: str) -> bool:
    if not provided or not configured:
        return False
    provided_digest = hashlib.sha256(provided.encode("utf-8")).hexdigest()
    configured_digest = hashlib.sha256(configured.encode("utf-8")).hexdigest()
    return secrets.compare_digest(provided_digest, configured_digest)


def require_api_token(request: Request) -> None:
    configured = request.app.state.settings.api_token
    if not verify_token(request.headers.get(TOKEN_HEADER), configured):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
