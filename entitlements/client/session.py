"""Signed-in user and connectivity state for the client library."""

from typing import Callable

import structlog

from entitlements.client.cache import LocalCacheStore

logger = structlog.get_logger(__name__)


class ClientSession:
    """
    Who is signed in, their access token, and whether the network is up.

    Signing out clears every cached entitlement entry and notifies listeners
    (the reconciler uses this to abort an in-flight poll).
    """

    def __init__(self, cache: LocalCacheStore, *, online: bool = True) -> None:
        self.cache = cache
        self.online = online
        self.user_id: str | None = None
        self._access_token: str | None = None
        self._sign_out_listeners: list[Callable[[], None]] = []

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None and self._access_token is not None

    def sign_in(self, user_id: str, access_token: str) -> None:
        if self.user_id and self.user_id != user_id:
            # Switching accounts without a sign-out still must not leak entries
            self.sign_out()
        self.user_id = user_id
        self._access_token = access_token
        logger.info("client_signed_in", user_id=user_id)

    def update_token(self, access_token: str) -> None:
        self._access_token = access_token

    async def get_token(self) -> str | None:
        return self._access_token

    def set_online(self, online: bool) -> None:
        if online != self.online:
            logger.info("client_connectivity_changed", online=online)
        self.online = online

    def on_sign_out(self, callback: Callable[[], None]) -> None:
        self._sign_out_listeners.append(callback)

    def sign_out(self) -> None:
        user_id = self.user_id
        self.user_id = None
        self._access_token = None
        self.cache.clear()
        for callback in self._sign_out_listeners:
            callback()
        logger.info("client_signed_out", user_id=user_id)
