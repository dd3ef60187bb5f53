from __future__ import annotations

import hmac

from fastapi import Request, status
from fastapi.responses import JSONResponse

from copilot_override.errors import AuthConfigurationError


class PathTokenAuthenticator:
    """Checks the static token carried as the first path segment.

    With no token configured the gate is disabled and ``required`` is False.
    """

    def __init__(self, auth_token: str | None) -> None:
        token = (auth_token or "").strip()
        if auth_token and not token:
            raise AuthConfigurationError("auth_token must not be only whitespace.")
        if "/" in token:
            raise AuthConfigurationError("auth_token must not contain '/'.")
        self._token = token

    @property
    def required(self) -> bool:
        return bool(self._token)

    def verify(self, supplied: str | None) -> bool:
        if not self.required:
            return True
        if supplied is None:
            return False
        return hmac.compare_digest(supplied.encode("utf-8"), self._token.encode("utf-8"))

    def authenticate_request(self, request: Request) -> JSONResponse | None:
        if self.verify(request.path_params.get("token")):
            return None
        return _unauthorized()


def _unauthorized() -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"error": "Unauthorized"},
    )
