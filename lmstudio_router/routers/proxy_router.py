from fastapi import APIRouter, Request

from lmstudio_router.services.request_service.request import route_general_request

router = APIRouter()

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


@router.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def proxy(request: Request, path: str):
    """Forward everything that is not a status endpoint to LM Studio."""
    return await route_general_request(request)
