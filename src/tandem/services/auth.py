import logging
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

STATUS_PATH = "/api/auth/status"


class AuthError(Exception):
    pass


@dataclass(frozen=True)
class AuthStatus:
    endpoint: str = ""
    authenticated: bool = False
    username: str | None = None
    chat_model_max_tokens: int | None = None
    status_code: int | None = None


class AuthProvider:
    def __init__(
        self,
        timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout_s = timeout_s
        self._transport = transport
        self._status = AuthStatus()

    @property
    def status(self) -> AuthStatus:
        return self._status

    def get_auth_status(self) -> AuthStatus:
        return self._status

    async def auth(
        self,
        endpoint: str,
        token: str | None,
        custom_headers: dict[str, str] | None = None,
    ) -> AuthStatus:
        headers = dict(custom_headers or {})
        if token:
            headers["Authorization"] = f"token {token}"
        url = endpoint.rstrip("/") + STATUS_PATH
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_s, transport=self._transport
            ) as client:
                response = await client.get(url, headers=headers)
        except httpx.HTTPError as e:
            raise AuthError(f"Could not reach {endpoint}: {e}") from e

        if response.status_code in (401, 403):
            logger.info(f"Authentication rejected by {endpoint} ({response.status_code})")
            self._status = AuthStatus(endpoint=endpoint, status_code=response.status_code)
            return self._status
        if response.status_code >= 400:
            raise AuthError(f"Auth status request failed with {response.status_code}")

        data = response.json()
        max_tokens = data.get("chat_model_max_tokens")
        self._status = AuthStatus(
            endpoint=endpoint,
            authenticated=bool(data.get("authenticated", True)),
            username=data.get("username"),
            chat_model_max_tokens=int(max_tokens) if max_tokens else None,
            status_code=response.status_code,
        )
        logger.debug(f"Authenticated against {endpoint} as {self._status.username}")
        return self._status
