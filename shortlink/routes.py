"""FastAPI route definitions for the shortlink service.

API Endpoint Overview
=====================
::
    GET    /health
        └─ HealthResponse (200)

    POST   /api/v2/links               LinkCreate  ─► LinkResponse (201)
    GET    /api/v2/links               ?skip&limit ─► LinkList
    PATCH  /api/v2/links/:id           LinkEdit    ─► LinkResponse
    DELETE /api/v2/links/:id                       ─► 204
    GET    /api/v2/links/:id/stats                 ─► LinkStats
    POST   /api/v2/links/:id/ban       BanRequest  ─► BanResponse (admin)

    POST   /api/v2/domains             DomainCreate ─► DomainResponse (201)
    DELETE /api/v2/domains/:id                      ─► 204
    POST   /api/v2/auth/apikey                      ─► ApiKeyResponse

    POST   /:address/protected         {password}  ─► {target} or 401
    GET    /                           custom domain homepage or 404
    GET    /:address                   307 / 401 / 403 / 404

Redirect Surface
================
::
    Outcome            Status  Body
    ─────────────────  ──────  ──────────────────────────────────────
    Redirect           307     Location: target
    ExternalRedirect   307     Location: homepage
    PasswordRequired   401     {"status": "password_required", "address"}
    Banned             403     {"status": "banned"}
    NotFound / Expired 404     {"status": "not_found"}

Key Behaviours
===============
- Identity is the ``X-API-KEY`` header; an unknown key is rejected even on
  endpoints that allow anonymous callers.
- Password presentation never includes the target URL.
- Management routes are registered before the catch-all ``/{address}``.
"""

from fastapi import APIRouter, Depends, Query, Response, status
from fastapi.responses import JSONResponse, RedirectResponse

from shortlink.dependencies import (
    RequestContext,
    get_link_service,
    get_request_context,
    require_user,
)
from shortlink.enums import HealthStatus, OutcomeKind
from shortlink.errors import BannedError, NotFoundError, PasswordMismatchError
from shortlink.link_service import LinkService
from shortlink.models import User
from shortlink.resolver import (
    Banned,
    Expired,
    ExternalRedirect,
    NotFound,
    Outcome,
    PasswordRequired,
    Redirect,
)
from shortlink.schemas import (
    ApiKeyResponse,
    BanRequest,
    BanResponse,
    CachedLinkPayload,
    DomainCreate,
    DomainResponse,
    ErrorResponse,
    HealthResponse,
    LinkCreate,
    LinkEdit,
    LinkList,
    LinkResponse,
    LinkStats,
    ProtectedLinkRequest,
    ProtectedLinkResponse,
    ResolutionResponse,
)

__all__ = ["router"]

router = APIRouter()

# Every ShortlinkError renders as {"error": message}
ERROR_RESPONSES: dict[int | str, dict] = {
    code: {"model": ErrorResponse} for code in (400, 401, 403, 404, 409, 429)
}


def _link_response(service: LinkService, link: CachedLinkPayload) -> LinkResponse:
    return LinkResponse(
        id=link.id,
        address=link.address,
        target=link.target,
        link=service.short_url(link),
        domain=link.domain,
        description=link.description,
        password=bool(link.password),
        banned=link.banned,
        expire_in=link.expire_in,
        visit_count=link.visit_count,
        created_at=link.created_at,
        updated_at=link.updated_at,
    )


def _render(outcome: Outcome, address: str) -> Response:
    if isinstance(outcome, (Redirect, ExternalRedirect)):
        return RedirectResponse(url=outcome.target, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
    if isinstance(outcome, PasswordRequired):
        body = ResolutionResponse(status=OutcomeKind.PASSWORD_REQUIRED, address=outcome.address)
        return JSONResponse(body.model_dump(mode="json"), status_code=status.HTTP_401_UNAUTHORIZED)
    if isinstance(outcome, Banned):
        body = ResolutionResponse(status=OutcomeKind.BANNED, address=address or None)
        return JSONResponse(body.model_dump(mode="json"), status_code=status.HTTP_403_FORBIDDEN)
    # NotFound and Expired are indistinguishable to the visitor
    body = ResolutionResponse(status=OutcomeKind.NOT_FOUND, address=address or None)
    return JSONResponse(body.model_dump(mode="json"), status_code=status.HTTP_404_NOT_FOUND)


# ============================================================================
# HEALTH
# ============================================================================


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(ctx: RequestContext = Depends(get_request_context)) -> HealthResponse:
    ctx.logger.info("Health check requested")
    db_status = HealthStatus.HEALTHY
    cache_status = HealthStatus.HEALTHY

    try:
        await ctx.store.ping()
        ctx.logger.debug("Database health check passed")
    except Exception as e:
        ctx.logger.error(f"Database health check failed: {e}")
        db_status = HealthStatus.UNHEALTHY

    try:
        await ctx.cache.ping()
        ctx.logger.debug("Cache health check passed")
    except Exception as e:
        ctx.logger.error(f"Cache health check failed: {e}")
        cache_status = HealthStatus.UNHEALTHY

    overall = (
        HealthStatus.HEALTHY
        if db_status is HealthStatus.HEALTHY and cache_status is HealthStatus.HEALTHY
        else HealthStatus.UNHEALTHY
    )

    ctx.logger.info(f"Health check completed: {overall.value}")
    return HealthResponse(status=overall, database=db_status, cache=cache_status)


# ============================================================================
# LINKS
# ============================================================================


@router.post("/api/v2/links", response_model=LinkResponse, status_code=201, tags=["links"], responses=ERROR_RESPONSES)
async def create_link(
    payload: LinkCreate,
    ctx: RequestContext = Depends(get_request_context),
    service: LinkService = Depends(get_link_service),
) -> LinkResponse:
    ctx.logger.info(
        "Link creation requested",
        extra={"target": payload.target, "anonymous": ctx.user is None},
    )
    link = await service.create(payload, ctx.user, ctx.client_ip)
    return _link_response(service, link)


@router.get("/api/v2/links", response_model=LinkList, tags=["links"], responses=ERROR_RESPONSES)
async def list_links(
    skip: int = Query(0, ge=0),
    limit: int = Query(10, ge=1, le=50),
    user: User = Depends(require_user),
    service: LinkService = Depends(get_link_service),
) -> LinkList:
    total, links = await service.list_links(user, skip=skip, limit=limit)
    return LinkList(total=total, skip=skip, limit=limit, data=[_link_response(service, link) for link in links])


@router.patch("/api/v2/links/{link_id}", response_model=LinkResponse, tags=["links"], responses=ERROR_RESPONSES)
async def edit_link(
    link_id: int,
    payload: LinkEdit,
    user: User = Depends(require_user),
    service: LinkService = Depends(get_link_service),
) -> LinkResponse:
    link = await service.edit(link_id, payload, user)
    return _link_response(service, link)


@router.delete("/api/v2/links/{link_id}", status_code=204, tags=["links"], responses=ERROR_RESPONSES)
async def delete_link(
    link_id: int,
    user: User = Depends(require_user),
    service: LinkService = Depends(get_link_service),
) -> Response:
    await service.delete(link_id, user)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/api/v2/links/{link_id}/stats", response_model=LinkStats, tags=["links"], responses=ERROR_RESPONSES)
async def link_stats(
    link_id: int,
    user: User = Depends(require_user),
    service: LinkService = Depends(get_link_service),
) -> LinkStats:
    link, stats = await service.stats(link_id, user)
    return LinkStats(
        id=link.id,
        address=link.address,
        target=link.target,
        link=service.short_url(link),
        visit_count=link.visit_count,
        total=stats.total,
        browser=stats.browser,
        os=stats.os,
        country=stats.country,
        referrer=stats.referrer,
    )


@router.post("/api/v2/links/{link_id}/ban", response_model=BanResponse, tags=["links"], responses=ERROR_RESPONSES)
async def ban_link(
    link_id: int,
    payload: BanRequest,
    user: User = Depends(require_user),
    service: LinkService = Depends(get_link_service),
) -> BanResponse:
    message = await service.ban(link_id, user, payload)
    return BanResponse(message=message)


# ============================================================================
# DOMAINS AND API KEYS
# ============================================================================


@router.post(
    "/api/v2/domains", response_model=DomainResponse, status_code=201, tags=["domains"], responses=ERROR_RESPONSES
)
async def add_domain(
    payload: DomainCreate,
    user: User = Depends(require_user),
    service: LinkService = Depends(get_link_service),
) -> DomainResponse:
    domain = await service.add_domain(user, payload)
    return DomainResponse.model_validate(domain)


@router.delete("/api/v2/domains/{domain_id}", status_code=204, tags=["domains"], responses=ERROR_RESPONSES)
async def remove_domain(
    domain_id: int,
    user: User = Depends(require_user),
    service: LinkService = Depends(get_link_service),
) -> Response:
    await service.remove_domain(user, domain_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/api/v2/auth/apikey", response_model=ApiKeyResponse, tags=["auth"], responses=ERROR_RESPONSES)
async def regenerate_apikey(
    user: User = Depends(require_user),
    service: LinkService = Depends(get_link_service),
) -> ApiKeyResponse:
    return ApiKeyResponse(apikey=await service.regenerate_apikey(user))


# ============================================================================
# REDIRECT SURFACE
# ============================================================================


@router.post(
    "/{address}/protected", response_model=ProtectedLinkResponse, tags=["redirect"], responses=ERROR_RESPONSES
)
async def unlock_protected(
    address: str,
    payload: ProtectedLinkRequest,
    ctx: RequestContext = Depends(get_request_context),
) -> ProtectedLinkResponse:
    outcome = await ctx.resolver.resolve(ctx.host, address, ctx.meta, password=payload.password)
    if isinstance(outcome, Redirect):
        return ProtectedLinkResponse(target=outcome.target)
    if isinstance(outcome, PasswordRequired):
        ctx.logger.info(f"Protected link unlock failed: {address}")
        raise PasswordMismatchError()
    if isinstance(outcome, Banned):
        raise BannedError()
    raise NotFoundError()


@router.get("/", tags=["redirect"], include_in_schema=False)
async def resolve_root(ctx: RequestContext = Depends(get_request_context)) -> Response:
    outcome = await ctx.resolver.resolve(ctx.host, "", ctx.meta)
    return _render(outcome, "")


@router.get("/{address}", tags=["redirect"])
async def redirect_to_target(address: str, ctx: RequestContext = Depends(get_request_context)) -> Response:
    outcome = await ctx.resolver.resolve(ctx.host, address, ctx.meta)
    if isinstance(outcome, (NotFound, Expired)):
        ctx.logger.warning(f"Redirect not resolved: {address} ({outcome.kind.value})")
    else:
        ctx.logger.debug(f"Resolved {address} to {outcome.kind.value} in {ctx.get_duration():.2f}ms")
    return _render(outcome, address)
