from __future__ import annotations

import logging
from typing import Annotated, Any

from app.core.firebase import verify_id_token
from fastapi import Depends, Query
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)

# Job endpoints accept anonymous sessions, so a missing bearer token is not an error here.
optional_security_scheme = HTTPBearer(auto_error=False)


def user_id_from_claims(claims: dict[str, Any]) -> str | None:
  """Pick the caller's user id out of verified token claims."""
  value = claims.get("user_id") or claims.get("uid")
  if value is None:
    return None
  text = str(value).strip()
  return text or None


async def get_optional_user_id(
  credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(optional_security_scheme)],
  token: Annotated[str | None, Query(description="ID token for EventSource clients that cannot send headers.")] = None,
) -> str | None:
  """Resolve a user id from the bearer header or ?token=; invalid tokens resolve to anonymous."""
  id_token = credentials.credentials if credentials is not None else (token or "").strip()
  if not id_token:
    return None

  decoded_claims = await run_in_threadpool(verify_id_token, id_token)
  if not decoded_claims:
    logger.info("Ignoring unverifiable token on job request")
    return None
  return user_id_from_claims(decoded_claims)
