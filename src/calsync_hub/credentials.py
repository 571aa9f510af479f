"""Credential provider contract used by the sync services."""

import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from .errors import AuthenticationError

logger = logging.getLogger(__name__)

RefreshCallable = Callable[[Optional[str]], Awaitable[str]]


class CredentialProvider(ABC):
    """Source of access tokens for one provider or the realtime server."""

    @abstractmethod
    async def get_access_token(self) -> str:
        """Return the current access token."""
        pass

    @abstractmethod
    async def refresh_access_token(self) -> str:
        """Obtain a new access token.

        Returns:
            The new token

        Raises:
            AuthenticationError: If the token cannot be refreshed
        """
        pass


class StaticCredentialProvider(CredentialProvider):
    """Holds a token and optionally delegates refreshes to a coroutine.

    The refresh callable receives the refresh token and returns the new
    access token. OAuth flows live outside this package; this class is the
    seam they plug into.
    """

    def __init__(
        self,
        access_token: str,
        refresh_token: Optional[str] = None,
        refresh_callable: Optional[RefreshCallable] = None,
        name: str = "static"
    ):
        self._access_token = access_token
        self._refresh_token = refresh_token
        self._refresh_callable = refresh_callable
        self.refresh_count = 0
        self.logger = logger.getChild(name)

    async def get_access_token(self) -> str:
        return self._access_token

    async def refresh_access_token(self) -> str:
        if self._refresh_callable is None:
            raise AuthenticationError("No refresh mechanism configured")

        self.logger.info("Refreshing access token")
        try:
            token = await self._refresh_callable(self._refresh_token)
        except AuthenticationError:
            raise
        except Exception as e:
            raise AuthenticationError(f"Token refresh failed: {e}") from e

        if not token:
            raise AuthenticationError("Token refresh returned an empty token")

        self._access_token = token
        self.refresh_count += 1
        return token
