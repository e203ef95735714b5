from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from ..auth.assertion import AssertionMinter
from ..errors import BuildError, InputError, TransportError, UpstreamParseError

GITHUB_API_URL = "https://api.github.com"
GITHUB_MEDIA_TYPE = "application/vnd.github+json"


@dataclass(frozen=True)
class UpstreamResult:
    """Pretty-printed upstream JSON.

    ``status`` is always 200 once the body parsed; ``upstream_status`` is kept
    for logging only and is not propagated to callers.
    """

    status: int
    upstream_status: int
    body: str


def _reject_constant(name: str) -> Any:
    raise ValueError(f"{name} is not a json value")


def pretty_json(raw: str) -> str:
    try:
        parsed = json.loads(raw, parse_constant=_reject_constant)
    except ValueError as e:
        raise UpstreamParseError(f"upstream response is not json: {e}") from e
    return json.dumps(parsed, indent=2, ensure_ascii=False)


class GithubAppClient:
    """Calls the app-level GitHub endpoints with a freshly minted assertion.

    Nothing is cached: each call mints a new assertion and does one round trip.
    """

    def __init__(
        self,
        minter: AssertionMinter,
        app_id: str,
        app_name: str,
        *,
        api_url: str = GITHUB_API_URL,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._minter = minter
        self._app_id = app_id
        self._app_name = app_name
        self.api_url = api_url.rstrip("/")
        self._http = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def call(self, method: str, url: str) -> UpstreamResult:
        assertion = self._minter.mint(self._app_id)
        try:
            request = self._http.build_request(
                method,
                url,
                headers={
                    "Authorization": f"Bearer {assertion.token}",
                    "Accept": GITHUB_MEDIA_TYPE,
                    "User-Agent": self._app_name,
                },
            )
        except (httpx.InvalidURL, ValueError, TypeError) as e:
            raise BuildError(f"failed to build request: {e}") from e

        logging.debug("upstream %s %s", method, url)
        try:
            response = await self._http.send(request)
        except httpx.HTTPError as e:
            raise TransportError(f"failed to send request: {e}") from e

        if response.status_code >= 400:
            logging.warning("upstream %s %s answered %s", method, url, response.status_code)
        return UpstreamResult(
            status=200,
            upstream_status=response.status_code,
            body=pretty_json(response.text),
        )

    async def list_installations(self) -> UpstreamResult:
        return await self.call("GET", f"{self.api_url}/app/installations")

    async def exchange_installation_token(self, installation_ref: str | None) -> UpstreamResult:
        if not installation_ref:
            raise InputError("missing installation_id query parameter")
        ref = quote(installation_ref, safe="")
        return await self.call("POST", f"{self.api_url}/app/installations/{ref}/access_tokens")
