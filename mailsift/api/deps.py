"""Request dependencies: resolve the mailbox owner from a Supabase access token,
or admit a scheduled job by its shared secret."""

import asyncio
import hmac
import logging
from typing import Annotated, Any

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from mailsift.core.config import get_settings
from mailsift.core.exceptions import AuthenticationError
from mailsift.db.supabase import SupabaseClient

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> Any:
    """Return the Supabase user owning the token. Every mailbox route scopes its work to ``user.id``.

    Raises:
        AuthenticationError: No token, or the token does not resolve to a user.
    """
    if credentials is None:
        raise AuthenticationError()

    try:
        client = SupabaseClient.get_client()
        response = await asyncio.to_thread(client.auth.get_user, credentials.credentials)
    except Exception as e:
        logger.warning("AUTH: token lookup failed: %s", type(e).__name__)
        raise AuthenticationError("Could not validate credentials") from e

    user = getattr(response, "user", None)
    if user is None:
        logger.info("AUTH: token did not resolve to a user")
        raise AuthenticationError("Invalid authentication token")
    return user


async def verify_job_secret(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> None:
    """Admit only callers presenting ``JOB_SECRET``. User tokens never pass.

    Raises:
        AuthenticationError: The secret is unset, missing or wrong.
    """
    secret = get_settings().JOB_SECRET.get_secret_value()
    if not secret:
        logger.error("AUTH: job route called but JOB_SECRET is not configured")
        raise AuthenticationError("Job routes are disabled")
    if credentials is None or not hmac.compare_digest(credentials.credentials.encode(), secret.encode()):
        logger.warning("AUTH: job route called without a valid secret")
        raise AuthenticationError("Invalid job credentials")


CurrentUser = Annotated[Any, Depends(get_current_user)]
