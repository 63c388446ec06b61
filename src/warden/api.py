"""HTTP surface over the configuration store.

Requests authenticate with the active token (``Authorization: Bearer``) or
with an HMAC of the request body under the derived signing key
(``X-Warden-Signature``). Both checks read the store on every request, so a
token rotation takes effect as soon as the new snapshot is published.
"""

from __future__ import annotations

import hmac
import logging

import fastapi
import pydantic

import warden.errors
import warden.loader
import warden.persist
import warden.store

logger = logging.getLogger("warden.api")

router = fastapi.APIRouter()


class SystemResponse(pydantic.BaseModel):
    username: str
    uid: int
    gid: int
    data: str
    debug: bool
    key_fingerprint: str


class PersistResponse(pydantic.BaseModel):
    path: str


def get_store(request: fastapi.Request) -> warden.store.ConfigStore:
    return request.app.state.store


async def require_auth(
    request: fastapi.Request,
    authorization: str | None = fastapi.Header(default=None),
    x_warden_signature: str | None = fastapi.Header(default=None),
) -> None:
    """Reject requests that carry neither a valid token nor a valid signature."""
    store: warden.store.ConfigStore = request.app.state.store
    try:
        config, key = store.snapshot()
    except warden.errors.NotInitializedError:
        raise fastapi.HTTPException(status_code=503, detail="not configured") from None

    if x_warden_signature:
        body = await request.body()
        if key.verify(body, x_warden_signature):
            return
        raise fastapi.HTTPException(status_code=403, detail="invalid signature")

    if not authorization:
        raise fastapi.HTTPException(
            status_code=401,
            detail="missing authorization",
            headers={"WWW-Authenticate": "Bearer"},
        )
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise fastapi.HTTPException(status_code=401, detail="malformed authorization")
    if not config.token or not hmac.compare_digest(
        token.encode("utf-8"), config.token.encode("utf-8")
    ):
        raise fastapi.HTTPException(status_code=403, detail="invalid token")


def _system_response(store: warden.store.ConfigStore) -> SystemResponse:
    config, key = store.snapshot()
    return SystemResponse(
        username=config.system.username,
        uid=config.system.user.uid,
        gid=config.system.user.gid,
        data=config.system.data,
        debug=config.debug,
        key_fingerprint=key.fingerprint(),
    )


@router.get("/health")
def health(
    store: warden.store.ConfigStore = fastapi.Depends(get_store),
) -> dict:
    return {"status": "ok", "initialized": store.initialized}


@router.get(
    "/api/system",
    response_model=SystemResponse,
    dependencies=[fastapi.Depends(require_auth)],
)
def system(
    store: warden.store.ConfigStore = fastapi.Depends(get_store),
) -> SystemResponse:
    return _system_response(store)


@router.post(
    "/api/reload",
    response_model=SystemResponse,
    dependencies=[fastapi.Depends(require_auth)],
)
def reload(
    store: warden.store.ConfigStore = fastapi.Depends(get_store),
) -> SystemResponse:
    """Re-read the document the active snapshot came from."""
    path = store.get().path
    if not path:
        raise fastapi.HTTPException(status_code=409, detail="no configuration path")
    try:
        config = warden.loader.read_configuration(path)
    except warden.errors.DocumentError as exc:
        logger.warning("Reload of %s failed: %s", path, exc)
        raise fastapi.HTTPException(status_code=422, detail=str(exc)) from exc
    store.set(config)
    logger.info("Reloaded configuration from %s", path)
    return _system_response(store)


@router.post(
    "/api/persist",
    response_model=PersistResponse,
    dependencies=[fastapi.Depends(require_auth)],
)
def persist(request: fastapi.Request) -> PersistResponse:
    writer: warden.persist.ConfigWriter | None = request.app.state.writer
    if writer is None:
        raise fastapi.HTTPException(status_code=503, detail="persistence disabled")
    try:
        path = writer.write_to_disk(request.app.state.store)
    except warden.errors.WardenError as exc:
        logger.warning("Persisting configuration failed: %s", exc)
        raise fastapi.HTTPException(status_code=500, detail=str(exc)) from exc
    return PersistResponse(path=str(path))


def create_app(
    store: warden.store.ConfigStore,
    writer: warden.persist.ConfigWriter | None = None,
) -> fastapi.FastAPI:
    """Create the FastAPI application bound to *store*."""
    app = fastapi.FastAPI(title="Warden", version="1.0.0")
    app.include_router(router)
    app.state.store = store
    app.state.writer = writer
    return app
