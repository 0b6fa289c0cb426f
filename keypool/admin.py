"""Admin endpoints for service and key management."""

from typing import Dict

from fastapi import APIRouter, HTTPException, Request
from starlette.responses import JSONResponse

from keypool.errors import (
    InvalidArgument,
    KeyNotFound,
    PersistenceFailure,
    ServiceNotFound,
)
from keypool.models import DEFAULT_MAX_USAGE, RESET_NEVER

admin_router = APIRouter(prefix="/services", tags=["services"])


def _unavailable(exc: PersistenceFailure) -> HTTPException:
    return HTTPException(status_code=503, detail=f"Key pool unavailable: {exc}")


@admin_router.get("/stats")
async def get_all_stats(request: Request) -> Dict[str, object]:
    """Get usage statistics for every service."""
    key_manager = request.app.state.key_manager
    try:
        stats = await key_manager.get_stats()
    except PersistenceFailure as e:
        raise _unavailable(e)
    return {"stats": stats}


@admin_router.get("/{service_name}/stats")
async def get_service_stats(request: Request, service_name: str) -> Dict[str, object]:
    """Get usage statistics for a single service."""
    key_manager = request.app.state.key_manager
    try:
        stats = await key_manager.get_stats(service_name)
    except ServiceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PersistenceFailure as e:
        raise _unavailable(e)
    return {"serviceName": service_name, "stats": stats}


@admin_router.post("")
async def add_service(request: Request) -> JSONResponse:
    """Register a new service or update an existing one."""
    key_manager = request.app.state.key_manager
    body = await request.json()
    service_name = body.get("serviceName")
    host = body.get("host")
    if not service_name or not host:
        raise HTTPException(
            status_code=400, detail="Service name and host are required"
        )
    max_usage = body.get("maxUsage", DEFAULT_MAX_USAGE)
    reset_frequency = body.get("resetFrequency", RESET_NEVER)

    try:
        created = await key_manager.add_service(
            service_name, host, max_usage, reset_frequency
        )
    except InvalidArgument as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PersistenceFailure as e:
        raise _unavailable(e)

    return JSONResponse(
        content={
            "message": "Service added successfully"
            if created
            else "Service configuration updated",
            "service": {
                "name": service_name,
                "host": host,
                "maxUsage": max_usage,
                "resetFrequency": reset_frequency,
            },
        },
        status_code=201 if created else 200,
    )


@admin_router.post("/{service_name}/keys")
async def add_key(request: Request, service_name: str) -> JSONResponse:
    """Add an API key to a service."""
    key_manager = request.app.state.key_manager
    body = await request.json()
    api_key = body.get("apiKey")
    if not api_key:
        raise HTTPException(status_code=400, detail="API key is required")
    remaining_uses = body.get("remainingUses")

    try:
        added = await key_manager.add_key(service_name, api_key, remaining_uses)
        if not added:
            raise HTTPException(
                status_code=409,
                detail=f"API key already exists in service '{service_name}'",
            )
        stats = await key_manager.get_stats(service_name)
    except ServiceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidArgument as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PersistenceFailure as e:
        raise _unavailable(e)

    return JSONResponse(
        content={
            "message": f"API key added successfully to service '{service_name}'",
            "serviceStats": stats,
        },
        status_code=201,
    )


@admin_router.put("/{service_name}/keys/{api_key}/remaining")
async def update_remaining_uses(
    request: Request, service_name: str, api_key: str
) -> Dict[str, object]:
    """Overwrite the remaining uses of a key with the provider's figure."""
    key_manager = request.app.state.key_manager
    body = await request.json()
    remaining_uses = body.get("remainingUses")
    if remaining_uses is None:
        raise HTTPException(
            status_code=400, detail="Valid remainingUses value is required"
        )

    try:
        await key_manager.set_remaining_uses(service_name, api_key, remaining_uses)
        stats = await key_manager.get_stats(service_name)
    except (ServiceNotFound, KeyNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidArgument as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PersistenceFailure as e:
        raise _unavailable(e)

    return {
        "message": f"API key remaining uses updated for '{service_name}'",
        "serviceStats": stats,
    }
