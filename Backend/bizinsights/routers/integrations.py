import logging
import uuid
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from bizinsights.config import settings
from bizinsights.database import get_db
from bizinsights.dependencies import get_current_user, require_membership
from bizinsights.models.enums import Platform
from bizinsights.models.integration import Integration
from bizinsights.models.user import User
from bizinsights.schemas.integration import (
    AuthorizeRequest,
    AuthorizeResponse,
    GoogleServiceAccountRequest,
    IntegrationResponse,
    OrganizationScopedRequest,
    StripeConnectRequest,
    SyncResponse,
    WooCommerceConnectRequest,
)
from bizinsights.services import integration_service, sync_service
from bizinsights.services.oauth_errors import (
    InvalidAccount,
    OAuthError,
    ProviderNotConfigured,
    UnsupportedFlow,
)
from bizinsights.services.oauth_providers import get_provider

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/integrations", tags=["integrations"])


def _platform_or_404(slug: str) -> Platform:
    try:
        return Platform.from_slug(slug)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown platform: {slug}"
        )


async def _integration_or_404(
    db: AsyncSession, organization_id: uuid.UUID, platform: Platform
) -> Integration:
    integration = await integration_service.get_integration(db, organization_id, platform)
    if integration is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Integration not found"
        )
    return integration


def _dashboard_redirect(**params) -> RedirectResponse:
    query = urlencode({k: v for k, v in params.items() if v is not None})
    return RedirectResponse(
        url=f"{settings.FRONTEND_URL}/dashboard/integrations?{query}",
        status_code=status.HTTP_302_FOUND,
    )


@router.get("", response_model=list[IntegrationResponse])
async def list_integrations(
    organization_id: uuid.UUID = Query(alias="organizationId"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await require_membership(db, organization_id, user)
    return await integration_service.list_integrations(db, organization_id)


# --- OAuth ---


@router.post("/{platform}/oauth/authorize", response_model=AuthorizeResponse)
async def authorize(
    platform: str,
    data: AuthorizeRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Start an OAuth connection and return the provider consent URL."""
    resolved = _platform_or_404(platform)
    await require_membership(db, data.organization_id, user)

    try:
        provider = get_provider(resolved)
        url = await provider.authorize(db, data.organization_id, user.id, data.shop)
    except InvalidAccount as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.message)
    except UnsupportedFlow as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except ProviderNotConfigured as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)

    return AuthorizeResponse(authorize_url=url)


@router.get("/{platform}/oauth/callback")
async def oauth_callback(
    platform: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Provider redirect target. Always answers with a redirect to the dashboard."""
    try:
        resolved = Platform.from_slug(platform)
    except ValueError as e:
        return _dashboard_redirect(
            oauth_result="error", error=UnsupportedFlow.code, message=str(e)
        )

    try:
        provider = get_provider(resolved)
        result = await provider.handle_callback(db, dict(request.query_params))
    except OAuthError as e:
        logger.info("OAuth callback for %s failed: %s", platform, e.code)
        return _dashboard_redirect(oauth_result="error", error=e.code, message=e.message)

    return _dashboard_redirect(
        oauth_result="success", platform=resolved.slug, shop=result.account
    )


# --- Key-based connections ---


@router.post("/stripe/connect", response_model=IntegrationResponse)
async def connect_stripe(
    data: StripeConnectRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Connect Stripe with a restricted or secret API key."""
    await require_membership(db, data.organization_id, user)

    try:
        account = await get_provider(Platform.STRIPE).fetch_account(data.secret_key)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return await integration_service.connect_stripe_with_keys(
        db, data.organization_id, data.secret_key, data.publishable_key, account
    )


@router.post("/google-analytics/connect", response_model=IntegrationResponse)
async def connect_google_analytics(
    data: GoogleServiceAccountRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Connect Google Analytics with a service-account JSON key."""
    await require_membership(db, data.organization_id, user)
    try:
        return await integration_service.connect_google_service_account(
            db, data.organization_id, data.property_id, data.service_account_key
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


@router.post("/woocommerce/connect", response_model=IntegrationResponse)
async def connect_woocommerce(
    data: WooCommerceConnectRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await require_membership(db, data.organization_id, user)
    try:
        return await integration_service.connect_woocommerce(
            db, data.organization_id, data.site_url, data.consumer_key, data.consumer_secret
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


# --- Lifecycle ---


@router.post("/{platform}/disconnect", response_model=IntegrationResponse)
async def disconnect(
    platform: str,
    data: OrganizationScopedRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    resolved = _platform_or_404(platform)
    await require_membership(db, data.organization_id, user)
    integration = await _integration_or_404(db, data.organization_id, resolved)
    return await integration_service.disconnect(db, integration)


@router.post("/{platform}/sync", response_model=SyncResponse)
async def sync(
    platform: str,
    data: OrganizationScopedRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Pull fresh data from the provider. Failures are reported in the body, not as errors."""
    resolved = _platform_or_404(platform)
    await require_membership(db, data.organization_id, user)
    integration = await _integration_or_404(db, data.organization_id, resolved)

    result = await sync_service.sync_integration(db, integration)
    return SyncResponse(
        platform=result.platform,
        success=result.success,
        counts=result.counts,
        error=result.error,
    )
