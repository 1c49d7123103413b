"""
Authentication provider abstractions.

An 'AuthProvider' integrates with a FastAPI application to identify the current
user on every request. Sign-in itself is delegated to an external identity
service; the toolkit only needs the resulting user id.

'HeaderAuthProvider' trusts an identity header set by a fronting proxy or the
identity service's middleware.
"""

from abc import ABC, abstractmethod

from fastapi import FastAPI, HTTPException, Request


class AuthProvider(ABC):
    """
    Abstract base class for authentication backends.

    Implementors must supply a FastAPI dependency that resolves to the current
    user ID ('get_current_user_id') and a setup hook that registers any routes
    and middleware the provider needs ('bind_to_app').
    """

    @abstractmethod
    def get_current_user_id(self, request: Request) -> str:
        """FastAPI dependency that returns the authenticated user's ID.

        Raise 'HTTPException' with status 401 if the request is not authenticated.
        """
        pass

    @abstractmethod
    def bind_to_app(self, app: FastAPI) -> None:
        """Register routes and middleware required by this provider."""
        pass


class HeaderAuthProvider(AuthProvider):
    def __init__(self, header: str = "X-User-Id") -> None:
        self.header = header

    def get_current_user_id(self, request: Request) -> str:
        user_id = request.headers.get(self.header, "").strip()
        if not user_id:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return user_id

    def bind_to_app(self, app: FastAPI) -> None:
        @app.get("/auth/me")
        def me(request: Request) -> dict[str, str]:
            return {"user_id": self.get_current_user_id(request)}
