from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from .auth.session import guard
from .client.github import GithubAppClient, UpstreamResult
from .errors import RelayError


class CredentialBroker:
    """Route-facing side of the token exchange.

    Chooses the upstream endpoint from the presence of an installation id and
    hands back upstream's JSON verbatim.
    """

    def __init__(self, client: GithubAppClient):
        self.client = client

    async def fetch(self, installation_id: str | None = None, *, list_all: bool = False) -> UpstreamResult:
        if list_all:
            return await self.client.list_installations()
        return await self.client.exchange_installation_token(installation_id)


async def _respond(broker: CredentialBroker, installation_id: str | None = None, list_all: bool = False) -> Response:
    try:
        result = await broker.fetch(installation_id, list_all=list_all)
    except RelayError as e:
        raise HTTPException(e.status_code, str(e)) from e
    return Response(content=result.body, status_code=result.status, media_type="application/json")


def build_router(gate_installation_access_token: bool = False) -> APIRouter:
    router = APIRouter()

    @router.get(
        "/list-installations",
        dependencies=[Depends(guard("/login?to=list-installations"))],
    )
    async def list_installations(request: Request):
        return await _respond(request.app.state.broker, list_all=True)

    token_deps = []
    if gate_installation_access_token:
        token_deps.append(Depends(guard("/login?to=installation-access-token")))

    @router.get("/installation-access-token", dependencies=token_deps)
    async def installation_access_token(request: Request, installation_id: str | None = None):
        return await _respond(request.app.state.broker, installation_id)

    return router
