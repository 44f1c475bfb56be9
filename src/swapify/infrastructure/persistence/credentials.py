"""Database-backed credential provider."""

import logging

from swapify.domain.ports import ICredentialProvider
from swapify.infrastructure.persistence.database import Database
from swapify.infrastructure.persistence.models import utc_now
from swapify.infrastructure.persistence.repositories import UserRepository

logger = logging.getLogger(__name__)


# Hey future me - tokens are OPAQUE here. Whatever does the OAuth dance (outside this
# service) keeps users.access_token fresh and clears token_invalid_at on re-auth.
# We only read the token and flag it when Spotify says 401.
class DatabaseCredentialProvider(ICredentialProvider):
    """Reads access tokens from the users table."""

    def __init__(self, database: Database) -> None:
        self._database = database

    async def get_access_token(self, user_id: str) -> str | None:
        async with self._database.session_scope() as session:
            user = await UserRepository(session).get(user_id)
            if user is None or user.token_invalid_at is not None:
                return None
            return user.access_token

    async def mark_invalid(self, user_id: str) -> bool:
        async with self._database.session_scope() as session:
            flagged = await UserRepository(session).mark_token_invalid(user_id, utc_now())
        if flagged:
            logger.info("credentials.marked_invalid", extra={"user_id": user_id})
        return flagged
