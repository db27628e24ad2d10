import hmac
import os
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel, Field

from runtime_state import runtime_state
from search.engine import SearchIndexEngine
from search.errors import SearchIndexError
from search.options import OptimizeOptions

from .errors import to_http_exception
from .search import get_engine

_INDEX_API_KEY_ENV = "INDEX_API_KEY"
_INDEX_API_KEY_HEADER = "X-Index-API-Key"
_INDEX_API_KEY_ALLOW_INSECURE_LOCAL_ENV = "INDEX_API_KEY_ALLOW_INSECURE_LOCAL"
_TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}
_LOOPBACK_CLIENT_HOSTS = {"127.0.0.1", "::1", "localhost"}


def _get_configured_api_key() -> str:
    return str(os.getenv(_INDEX_API_KEY_ENV) or "").strip()


def _allow_insecure_local_without_api_key() -> bool:
    value = str(os.getenv(_INDEX_API_KEY_ALLOW_INSECURE_LOCAL_ENV) or "").strip().lower()
    return value in _TRUTHY_ENV_VALUES


def _is_loopback_request(request: Request) -> bool:
    client = getattr(request, "client", None)
    host = str(getattr(client, "host", "") or "").strip().lower()
    return host in _LOOPBACK_CLIENT_HOSTS


def _extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def _auth_failed(reason: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "maintenance_auth_failed", "reason": reason},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_maintenance_api_key(
    request: Request,
    x_index_api_key: Optional[str] = Header(default=None, alias=_INDEX_API_KEY_HEADER),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> None:
    configured = _get_configured_api_key()
    if not configured:
        if _allow_insecure_local_without_api_key():
            if _is_loopback_request(request):
                return
            raise _auth_failed("insecure_local_override_requires_loopback")
        raise _auth_failed("api_key_not_configured")

    provided = str(x_index_api_key or "").strip() or _extract_bearer_token(authorization)
    if not provided or not hmac.compare_digest(provided, configured):
        raise _auth_failed("invalid_or_missing_api_key")


router = APIRouter(
    prefix="/maintenance",
    tags=["maintenance"],
    dependencies=[Depends(require_maintenance_api_key)],
)


class OptimizeRequest(BaseModel):
    cleanup_orphans: bool = True
    remove_duplicates: bool = True
    merge_similar: bool = True
    remove_low_frequency: bool = False
    analyze: bool = True
    low_frequency_min_records: Optional[int] = Field(default=None, ge=1)

    def to_options(self) -> OptimizeOptions:
        return OptimizeOptions(
            cleanup_orphans=self.cleanup_orphans,
            remove_duplicates=self.remove_duplicates,
            merge_similar=self.merge_similar,
            remove_low_frequency=self.remove_low_frequency,
            analyze=self.analyze,
            low_frequency_min_records=self.low_frequency_min_records,
        )


class LegacyIndexRequest(BaseModel):
    path: str = Field(min_length=1)


async def _in_lane(operation: str, task) -> Any:
    try:
        return await runtime_state.maintenance_lane.run(operation=operation, task=task)
    except SearchIndexError as exc:
        raise to_http_exception(exc) from exc


@router.get("/index/health")
async def index_health(engine: SearchIndexEngine = Depends(get_engine)):
    try:
        report = await engine.analyze_health()
    except SearchIndexError as exc:
        raise to_http_exception(exc) from exc
    return report.to_dict()


@router.get("/index/statistics")
async def index_statistics(engine: SearchIndexEngine = Depends(get_engine)):
    try:
        return await engine.index_statistics()
    except SearchIndexError as exc:
        raise to_http_exception(exc) from exc


@router.get("/lane")
async def maintenance_lane_status():
    return await runtime_state.maintenance_lane.status()


@router.post("/index/optimize")
async def optimize_index(
    body: Optional[OptimizeRequest] = None,
    engine: SearchIndexEngine = Depends(get_engine),
):
    options = (body or OptimizeRequest()).to_options()
    result = await _in_lane("optimize", lambda: engine.optimize(options))
    return result.to_dict()


@router.post("/index/rebuild")
async def rebuild_index(
    reason: str = "api", engine: SearchIndexEngine = Depends(get_engine)
):
    result = await _in_lane("rebuild", lambda: engine.rebuild(reason or "api"))
    return result.to_dict()


@router.post("/index/repair")
async def repair_index(
    body: Optional[OptimizeRequest] = None,
    engine: SearchIndexEngine = Depends(get_engine),
):
    options = (body or OptimizeRequest()).to_options()
    result = await _in_lane("repair", lambda: engine.repair(options))
    return result.to_dict()


@router.post("/index/reindex/{record_id}")
async def reindex_record(record_id: str, engine: SearchIndexEngine = Depends(get_engine)):
    result = await _in_lane("reindex", lambda: engine.reindex_record(record_id))
    if not result.found:
        raise HTTPException(status_code=404, detail=result.to_dict())
    return result.to_dict()


@router.post("/index/migrate-legacy")
async def migrate_legacy_index(
    body: LegacyIndexRequest, engine: SearchIndexEngine = Depends(get_engine)
):
    result = await _in_lane(
        "migrate_legacy", lambda: engine.migrate_legacy_index(body.path)
    )
    payload: Dict[str, Any] = result.to_dict()
    if not result.success:
        raise HTTPException(status_code=422, detail=payload)
    return payload


@router.post("/index/migrate-legacy/verify")
async def verify_legacy_migration(
    body: LegacyIndexRequest, engine: SearchIndexEngine = Depends(get_engine)
):
    try:
        report = await engine.verify_legacy_migration(body.path)
    except SearchIndexError as exc:
        raise to_http_exception(exc) from exc
    return report.to_dict()


@router.delete("/cache")
async def clear_cache(
    pattern: Optional[str] = None, engine: SearchIndexEngine = Depends(get_engine)
):
    removed = engine.clear_cache(pattern)
    return {"removed": removed, "pattern": pattern, "cache": engine.cache_stats()}
