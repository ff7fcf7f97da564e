import hmac
import os
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from memory_engine import MemoryEngine, MemoryEngineError
from runtime_state import RuntimeState

_MAINTENANCE_API_KEY_ENV = "MAINTENANCE_API_KEY"
_MAINTENANCE_API_KEY_HEADER = "X-Maintenance-API-Key"
_ALLOW_INSECURE_LOCAL_ENV = "MAINTENANCE_API_KEY_ALLOW_INSECURE_LOCAL"
_TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}
_LOOPBACK_CLIENT_HOSTS = {"127.0.0.1", "::1", "localhost"}


def get_engine(request: Request) -> MemoryEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "engine_unavailable"},
        )
    return engine


def get_runtime(request: Request) -> RuntimeState:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        runtime = RuntimeState()
        request.app.state.runtime = runtime
    return runtime


def _get_configured_api_key() -> str:
    return str(os.getenv(_MAINTENANCE_API_KEY_ENV) or "").strip()


def _allow_insecure_local_without_api_key() -> bool:
    value = str(os.getenv(_ALLOW_INSECURE_LOCAL_ENV) or "").strip().lower()
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
    x_maintenance_api_key: Optional[str] = Header(
        default=None, alias=_MAINTENANCE_API_KEY_HEADER
    ),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> None:
    configured = _get_configured_api_key()
    if not configured:
        if _allow_insecure_local_without_api_key():
            if _is_loopback_request(request):
                return
            raise _auth_failed("insecure_local_override_requires_loopback")
        raise _auth_failed("api_key_not_configured")

    provided = str(x_maintenance_api_key or "").strip() or _extract_bearer_token(
        authorization
    )
    if not provided or not hmac.compare_digest(provided, configured):
        raise _auth_failed("invalid_or_missing_api_key")


router = APIRouter(
    prefix="/maintenance",
    tags=["maintenance"],
    dependencies=[Depends(require_maintenance_api_key)],
)


def _wrap(result: Dict[str, Any]) -> Dict[str, Any]:
    degraded = bool(result.get("degraded"))
    return {
        "ok": not degraded,
        "status": "degraded" if degraded else "ok",
        "result": result,
    }


@router.post("/decay")
async def trigger_decay(
    reason: str = "api",
    engine: MemoryEngine = Depends(get_engine),
    runtime: RuntimeState = Depends(get_runtime),
):
    result = await runtime.decay.run_decay(engine.apply_decay_cycle, reason=reason or "api")
    return _wrap(result)


@router.get("/decay/status")
async def get_decay_status(runtime: RuntimeState = Depends(get_runtime)):
    payload = await runtime.decay.status()
    payload["scheduler"] = (
        runtime.scheduler.status() if runtime.scheduler is not None else {"started": False}
    )
    return payload


@router.post("/index/rebuild")
async def rebuild_index(engine: MemoryEngine = Depends(get_engine)):
    try:
        result = await engine.rebuild_index()
    except MemoryEngineError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "store_unavailable", "reason": str(exc)},
        )
    return _wrap(result)


@router.get("/write-lanes")
async def get_write_lane_status(engine: MemoryEngine = Depends(get_engine)):
    return await engine.write_lanes.status()
