"""Key allocation endpoints for outbound callers.

A caller borrows the least-used key of a service, uses it against the
service's host directly, and reports the use back. Quota is counted once the
key has been sent upstream, whatever the upstream answered.
"""

from typing import Dict

from fastapi import APIRouter, HTTPException, Request
from starlette.responses import JSONResponse

from keypool.errors import PersistenceFailure, ServiceNotFound

allocation_router = APIRouter(prefix="/keys", tags=["keys"])


@allocation_router.post("/{service_name}/allocate")
async def allocate_key(request: Request, service_name: str) -> JSONResponse:
    """Allocate the next key for a service.

    Keys over quota are still handed out when nothing better exists;
    ``exhausted`` tells the caller that happened.
    """
    key_manager = request.app.state.key_manager
    try:
        selection = await key_manager.select_key(service_name)
    except ServiceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PersistenceFailure as e:
        raise HTTPException(status_code=503, detail=f"Key pool unavailable: {e}")

    return JSONResponse(
        content={
            "key": selection.key,
            "host": selection.host,
            "remaining": selection.remaining,
            "exhausted": selection.exhausted,
        }
    )


@allocation_router.post("/{service_name}/report-usage")
async def report_usage(request: Request, service_name: str) -> Dict[str, object]:
    """Report that a previously allocated key was used.

    Body: {"apiKey": "..."}
    """
    key_manager = request.app.state.key_manager
    body = await request.json()
    api_key = body.get("apiKey")

    if not api_key or not isinstance(api_key, str):
        raise HTTPException(status_code=400, detail="apiKey is required")

    try:
        record = await key_manager.record_use(service_name, api_key)
    except PersistenceFailure as e:
        raise HTTPException(status_code=503, detail=f"Key pool unavailable: {e}")

    if record is None:
        raise HTTPException(
            status_code=404,
            detail=f"API key not found in service '{service_name}'",
        )

    return {"usageCount": record.usage_count, "remaining": record.remaining}
