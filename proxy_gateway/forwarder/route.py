from fastapi import APIRouter, Request

from proxy_gateway.forwarder.forwarder import PROXY_METHODS, Forwarder

# Mounted under the configured proxy prefix by the app factory
router = APIRouter()

# Catches every path no other route claimed; included last, and only when
# TARGET_SERVER_URL is set
fallback_router = APIRouter()


@router.api_route("", methods=PROXY_METHODS, include_in_schema=False)
@router.api_route("/{slug:path}", methods=PROXY_METHODS, include_in_schema=False)
async def proxy_all(request: Request):
    """Catch-all route that forwards every request below the prefix upstream."""
    forwarder: Forwarder = request.app.state.forwarder
    return await forwarder.forward(request)


@fallback_router.api_route(
    "/{slug:path}", methods=PROXY_METHODS, include_in_schema=False
)
async def proxy_unmatched(request: Request):
    """Forward an otherwise unrouted path upstream as-is, nothing stripped."""
    forwarder: Forwarder = request.app.state.forwarder
    return await forwarder.forward(request, proxy_prefix="")
