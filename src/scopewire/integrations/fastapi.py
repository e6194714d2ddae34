from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from scopewire.scope import BaseScope, Scope

try:
    from fastapi import Depends, FastAPI
    from starlette.requests import HTTPConnection, Request
    from starlette.websockets import WebSocket
except ModuleNotFoundError as exc:  # pragma: no cover - exercised in optional import scenarios
    message = "FastAPI integration requires fastapi. Install with 'scopewire[fastapi]'."
    raise ModuleNotFoundError(message) from exc

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Receive, Send
    from starlette.types import Scope as ASGIScope

    from scopewire.container import Container

logger = logging.getLogger(__name__)

CONTAINER_STATE_KEY = "scopewire_container"


class ScopeWireMiddleware:
    """Pure ASGI middleware entering a child container per connection.

    HTTP requests get a container at ``http_scope`` and websocket connections
    one at ``websocket_scope``. The Starlette ``Request``/``WebSocket`` (and
    ``HTTPConnection``) is seeded into the child's context, the child is
    stored in the ASGI scope state, and it is closed with ``aclose()`` once
    the application has finished sending the response.

    ``container`` should be the long-lived application container; scopes
    between it and the target scope are created implicitly per connection.
    """

    def __init__(
        self,
        app: ASGIApp,
        container: Container,
        *,
        http_scope: BaseScope = Scope.REQUEST,
        websocket_scope: BaseScope = Scope.SESSION,
    ) -> None:
        self.app = app
        self.container = container
        self.http_scope = http_scope
        self.websocket_scope = websocket_scope

    async def __call__(self, scope: ASGIScope, receive: Receive, send: Send) -> None:
        connection: HTTPConnection
        if scope["type"] == "http":
            connection = Request(scope, receive, send)
            target = self.http_scope
        elif scope["type"] == "websocket":
            connection = WebSocket(scope, receive, send)
            target = self.websocket_scope
        else:
            await self.app(scope, receive, send)
            return

        child = self.container.enter(
            target,
            context={type(connection): connection, HTTPConnection: connection},
        )
        scope.setdefault("state", {})[CONTAINER_STATE_KEY] = child
        try:
            await self.app(scope, receive, send)
        finally:
            await child.aclose()


def get_container(connection: HTTPConnection) -> Container:
    """Return the per-connection container stored by ``ScopeWireMiddleware``.

    Raises:
        RuntimeError: If the middleware is not installed.

    """
    container = connection.scope.get("state", {}).get(CONTAINER_STATE_KEY)
    if container is None:
        message = "No scopewire container on this connection; call setup_scopewire(app, container)."
        raise RuntimeError(message)
    return container


def FromContainer(dependency: Any) -> Any:  # noqa: N802
    """Build a FastAPI dependency resolving ``dependency`` with ``aget``.

    Examples:
        .. code-block:: python

            @app.get("/users/{user_id}")
            async def read_user(
                user_id: int,
                users: UserRepository = FromContainer(UserRepository),
            ) -> dict[str, str]:
                return await users.get(user_id)

    """

    async def resolve_from_container(connection: HTTPConnection) -> Any:
        return await get_container(connection).aget(dependency)

    return Depends(resolve_from_container)


def FromContainerTransient(dependency: Any) -> Any:  # noqa: N802
    """Build a FastAPI dependency resolving a fresh ``dependency`` with ``aget_transient``."""

    async def resolve_transient_from_container(connection: HTTPConnection) -> Any:
        return await get_container(connection).aget_transient(dependency)

    return Depends(resolve_transient_from_container)


def setup_scopewire(
    app: FastAPI,
    container: Container,
    *,
    http_scope: BaseScope = Scope.REQUEST,
    websocket_scope: BaseScope = Scope.SESSION,
) -> None:
    """Install ``ScopeWireMiddleware`` on ``app``.

    The container is also exposed as ``app.state.scopewire_container``.
    Closing it stays the application's responsibility, typically in its
    lifespan handler.
    """
    app.state.scopewire_container = container
    app.add_middleware(
        ScopeWireMiddleware,
        container=container,
        http_scope=http_scope,
        websocket_scope=websocket_scope,
    )
    logger.debug("ScopeWire middleware installed (http=%r, websocket=%r)", http_scope, websocket_scope)


__all__ = [
    "FromContainer",
    "FromContainerTransient",
    "ScopeWireMiddleware",
    "get_container",
    "setup_scopewire",
]
