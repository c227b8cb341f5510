from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from gwiplatform.apps.api.deps import require_capability
from gwiplatform.services.auth.principals import Portal, Principal
from gwiplatform.services.gwi_client import GWIDataClient, get_gwi_client


router = APIRouter(prefix="/api/gwi/data", tags=["gwi-data"])


@router.get("/{path:path}")
async def proxy_data(
    path: str,
    request: Request,
    principal: Principal = Depends(require_capability(Portal.GWI, "gwi:datasources:read")),
    client: GWIDataClient = Depends(get_gwi_client),
) -> Response:
    # Status, body and content type are relayed as-is; an unreachable upstream becomes a 502.
    try:
        upstream = await client.forward(path, params=list(request.query_params.multi_items()))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "VALIDATION_ERROR", "message": str(exc)},
        ) from exc
    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        headers=upstream.headers,
    )
