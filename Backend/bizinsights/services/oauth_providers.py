"""Per-platform OAuth connect flows.

Each platform implements the same small interface (authorize URL, callback
signature check, code exchange, post-connect enrichment) and is looked up by
``Platform``. The callback sequence itself lives in
``OAuthProvider.handle_callback`` and is identical for every platform:

1. provider-reported ``error``            -> ProviderDenied
2. missing ``code`` / ``state`` / account -> MissingParameters
3. signature over the query               -> InvalidSignature  (no DB access yet)
4. single-use state claim                 -> InvalidState / ShopMismatch / Expired
5. code exchange                          -> TokenExchangeFailed
6. encrypt + persist CONNECTED            -> EncryptionFailed
7. account info / webhook registration    (best effort, never fails the flow)
"""

import logging
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from urllib.parse import urlencode

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from bizinsights.config import settings
from bizinsights.models.enums import AlertSeverity, AlertType, Platform
from bizinsights.models.integration import Integration
from bizinsights.schemas.alert import AlertDraft
from bizinsights.services import alert_service, integration_service, oauth_state_service
from bizinsights.services.crypto_service import EncryptionError, encrypt, hmac_verify
from bizinsights.services.oauth_errors import (
    EncryptionFailed,
    InvalidAccount,
    InvalidSignature,
    MissingParameters,
    ProviderDenied,
    ProviderNotConfigured,
    TokenExchangeFailed,
    UnsupportedFlow,
)

logger = logging.getLogger(__name__)


@dataclass
class TokenGrant:
    access_token: str
    scope: str | None = None
    refresh_token: str | None = None
    expires_in: int | None = None
    account_id: str | None = None
    extra: dict = field(default_factory=dict)


@dataclass
class CallbackResult:
    integration: Integration
    account: str | None


class OAuthProvider(ABC):
    """One platform's OAuth connect flow."""

    platform: Platform
    display_name: str
    # Query parameter naming the account on the callback (Shopify: "shop")
    account_param: str | None = None

    # ── Configuration ────────────────────────────────────────────

    @abstractmethod
    def is_configured(self) -> bool:
        ...

    @property
    def redirect_uri(self) -> str:
        return f"{settings.APP_URL}/api/integrations/{self.platform.slug}/oauth/callback"

    def normalize_account(self, account: str | None) -> str | None:
        return account

    # ── Protocol steps ───────────────────────────────────────────

    @abstractmethod
    def build_authorize_url(self, state: str, nonce: str, account: str | None) -> str:
        ...

    def verify_callback(self, params: dict[str, str]) -> bool:
        """Providers that do not sign their redirects rely on the state check alone."""
        return True

    @abstractmethod
    async def exchange_token(
        self,
        code: str,
        account: str | None,
        http_client: httpx.AsyncClient | None = None,
    ) -> TokenGrant:
        ...

    async def after_connect(
        self,
        grant: TokenGrant,
        account: str | None,
        http_client: httpx.AsyncClient | None = None,
    ) -> dict:
        """Best-effort enrichment after the token is stored. Returns metadata to merge."""
        return {}

    # ── Flow ─────────────────────────────────────────────────────

    async def authorize(
        self,
        db: AsyncSession,
        organization_id: uuid.UUID,
        user_id: uuid.UUID,
        account: str | None = None,
    ) -> str:
        if not self.is_configured():
            raise ProviderNotConfigured(f"{self.display_name} is not configured on the server.")
        if self.account_param and not account:
            raise InvalidAccount(f"A {self.account_param} is required to connect {self.display_name}.")

        normalized = self.normalize_account(account) if account else None
        state, nonce = await oauth_state_service.begin(
            db, organization_id, self.platform, normalized, user_id
        )
        return self.build_authorize_url(state, nonce, normalized)

    async def handle_callback(
        self,
        db: AsyncSession,
        params: dict[str, str],
        http_client: httpx.AsyncClient | None = None,
    ) -> CallbackResult:
        if params.get("error"):
            logger.info(
                "%s authorization denied: %s", self.display_name, params.get("error")
            )
            raise ProviderDenied(
                params.get("error_description") or ProviderDenied.default_message
            )

        code = params.get("code")
        state = params.get("state")
        raw_account = params.get(self.account_param) if self.account_param else None
        if not code or not state or (self.account_param and not raw_account):
            raise MissingParameters()

        if not self.verify_callback(params):
            logger.warning("%s callback failed signature verification", self.display_name)
            raise InvalidSignature()

        account = self.normalize_account(raw_account) if raw_account else None
        pending = await oauth_state_service.consume(db, self.platform, state, account)
        # The claim is durable before any network call
        await db.commit()

        integration = await db.get(Integration, pending.integration_id)

        try:
            grant = await self.exchange_token(code, account, http_client=http_client)
        except TokenExchangeFailed:
            await alert_service.create_or_merge_alert(
                db,
                AlertDraft(
                    organization_id=pending.organization_id,
                    type=AlertType.INTEGRATION,
                    severity=AlertSeverity.HIGH,
                    title=f"{self.platform.value} Connection Failed",
                    description=(
                        f"{self.display_name} did not issue an access token. "
                        "Please try connecting again."
                    ),
                    metadata={
                        "platform": self.platform.value,
                        "integrationId": str(pending.integration_id),
                        "errorCode": TokenExchangeFailed.code,
                    },
                    action_url="/dashboard/integrations",
                    action_label="Reconnect",
                ),
            )
            await db.commit()
            raise

        metadata = {
            "scope": grant.scope,
            "connected_by": pending.user_id,
            **grant.extra,
        }
        try:
            if grant.refresh_token:
                metadata["encrypted_refresh_token"] = encrypt(grant.refresh_token)
            await integration_service.persist_connection(
                db,
                integration,
                access_token=grant.access_token,
                shop_domain=account or grant.account_id,
                metadata_updates=metadata,
            )
        except EncryptionError as exc:
            logger.error("Could not encrypt %s token: %s", self.display_name, exc)
            raise EncryptionFailed() from exc
        await db.commit()

        try:
            updates = await self.after_connect(grant, account, http_client=http_client)
        except Exception:
            logger.exception("%s post-connect step failed", self.display_name)
            updates = {}
        if updates:
            integration_service.merge_metadata(integration, updates)
            await db.flush()

        return CallbackResult(integration=integration, account=account or grant.account_id)

    # ── Helpers ──────────────────────────────────────────────────

    @staticmethod
    def _client(http_client: httpx.AsyncClient | None) -> tuple[httpx.AsyncClient, bool]:
        if http_client is not None:
            return http_client, False
        return httpx.AsyncClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS), True

    def _exchange_failed(self, response: httpx.Response) -> TokenExchangeFailed:
        # Provider bodies stay in the server log only
        logger.error(
            "%s token endpoint returned %d: %s",
            self.display_name,
            response.status_code,
            response.text[:500],
        )
        return TokenExchangeFailed()


# ---------------------------------------------------------------------------
# Shopify
# ---------------------------------------------------------------------------


SHOP_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{0,59}$")
SHOPIFY_SUFFIX = ".myshopify.com"
SHOPIFY_WEBHOOK_TOPICS = ("orders/create", "app/uninstalled")


def sanitize_shop_domain(shop: str) -> str:
    """``https://Demo-Store.myshopify.com/`` -> ``demo-store``."""
    shop = shop.strip().lower()
    shop = re.sub(r"^https?://", "", shop).rstrip("/")
    if shop.endswith(SHOPIFY_SUFFIX):
        shop = shop[: -len(SHOPIFY_SUFFIX)]
    return shop


def shopify_hmac_message(params: dict[str, str]) -> str:
    """Every query parameter except the signature itself, sorted by key."""
    return "&".join(
        f"{key}={value}"
        for key, value in sorted(params.items())
        if key not in ("hmac", "signature")
    )


class ShopifyProvider(OAuthProvider):
    platform = Platform.SHOPIFY
    display_name = "Shopify"
    account_param = "shop"

    def is_configured(self) -> bool:
        return bool(settings.SHOPIFY_API_KEY and settings.SHOPIFY_API_SECRET)

    def normalize_account(self, account: str | None) -> str | None:
        shop = sanitize_shop_domain(account or "")
        if not SHOP_PATTERN.match(shop):
            raise InvalidAccount("Invalid shop domain. Use letters, numbers and hyphens only.")
        return shop

    def _admin_url(self, shop: str, path: str) -> str:
        return f"https://{shop}{SHOPIFY_SUFFIX}/admin/{path}"

    def build_authorize_url(self, state: str, nonce: str, account: str | None) -> str:
        query = urlencode(
            {
                "client_id": settings.SHOPIFY_API_KEY,
                "scope": settings.SHOPIFY_SCOPES,
                "redirect_uri": self.redirect_uri,
                "state": state,
            }
        )
        return f"{self._admin_url(account, 'oauth/authorize')}?{query}"

    def verify_callback(self, params: dict[str, str]) -> bool:
        return hmac_verify(
            shopify_hmac_message(params),
            params.get("hmac"),
            settings.SHOPIFY_API_SECRET,
        )

    async def exchange_token(self, code, account, http_client=None) -> TokenGrant:
        client, should_close = self._client(http_client)
        try:
            response = await client.post(
                self._admin_url(account, "oauth/access_token"),
                json={
                    "client_id": settings.SHOPIFY_API_KEY,
                    "client_secret": settings.SHOPIFY_API_SECRET,
                    "code": code,
                },
            )
            if response.status_code >= 400:
                raise self._exchange_failed(response)
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Shopify token exchange request failed: %s", exc)
            raise TokenExchangeFailed() from exc
        finally:
            if should_close:
                await client.aclose()

        if not data.get("access_token"):
            logger.error("Shopify token response had no access_token")
            raise TokenExchangeFailed()
        return TokenGrant(access_token=data["access_token"], scope=data.get("scope"))

    async def after_connect(self, grant, account, http_client=None) -> dict:
        client, should_close = self._client(http_client)
        headers = {
            "X-Shopify-Access-Token": grant.access_token,
            "Content-Type": "application/json",
        }
        version = settings.SHOPIFY_API_VERSION
        updates: dict = {}

        try:
            try:
                response = await client.get(
                    self._admin_url(account, f"api/{version}/shop.json"), headers=headers
                )
                if response.status_code < 400:
                    shop = response.json().get("shop", {})
                    updates["shop_info"] = {
                        "name": shop.get("name"),
                        "email": shop.get("email"),
                        "currency": shop.get("currency"),
                        "plan": shop.get("plan_name"),
                        "timezone": shop.get("iana_timezone"),
                    }
                else:
                    logger.warning("Shopify shop.json returned %d", response.status_code)
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("Shopify shop info request failed: %s", exc)

            registered = []
            for topic in SHOPIFY_WEBHOOK_TOPICS:
                try:
                    response = await client.post(
                        self._admin_url(account, f"api/{version}/webhooks.json"),
                        headers=headers,
                        json={
                            "webhook": {
                                "topic": topic,
                                "address": f"{settings.APP_URL}/api/webhooks/shopify",
                                "format": "json",
                            }
                        },
                    )
                    if response.status_code < 400:
                        registered.append(topic)
                    else:
                        logger.warning(
                            "Shopify webhook %s registration returned %d",
                            topic,
                            response.status_code,
                        )
                except httpx.HTTPError as exc:
                    logger.warning("Shopify webhook %s registration failed: %s", topic, exc)
            updates["webhooks"] = registered
        finally:
            if should_close:
                await client.aclose()

        return updates


# ---------------------------------------------------------------------------
# Facebook Ads
# ---------------------------------------------------------------------------


class FacebookAdsProvider(OAuthProvider):
    platform = Platform.FACEBOOK_ADS
    display_name = "Facebook Ads"
    SCOPES = "ads_read,ads_management,business_management"

    def is_configured(self) -> bool:
        return bool(settings.FACEBOOK_APP_ID and settings.FACEBOOK_APP_SECRET)

    @property
    def graph_url(self) -> str:
        return f"https://graph.facebook.com/{settings.FACEBOOK_GRAPH_VERSION}"

    def build_authorize_url(self, state: str, nonce: str, account: str | None) -> str:
        query = urlencode(
            {
                "client_id": settings.FACEBOOK_APP_ID,
                "redirect_uri": self.redirect_uri,
                "state": state,
                "scope": self.SCOPES,
                "response_type": "code",
            }
        )
        return f"https://www.facebook.com/{settings.FACEBOOK_GRAPH_VERSION}/dialog/oauth?{query}"

    async def exchange_token(self, code, account, http_client=None) -> TokenGrant:
        client, should_close = self._client(http_client)
        try:
            try:
                response = await client.get(
                    f"{self.graph_url}/oauth/access_token",
                    params={
                        "client_id": settings.FACEBOOK_APP_ID,
                        "client_secret": settings.FACEBOOK_APP_SECRET,
                        "redirect_uri": self.redirect_uri,
                        "code": code,
                    },
                )
                if response.status_code >= 400:
                    raise self._exchange_failed(response)
                short_lived = response.json().get("access_token")
            except (httpx.HTTPError, ValueError) as exc:
                logger.error("Facebook token exchange request failed: %s", exc)
                raise TokenExchangeFailed() from exc
            if not short_lived:
                raise TokenExchangeFailed()

            # Swap for a ~60 day token; the short-lived one still works if this fails
            access_token, expires_in = short_lived, None
            try:
                response = await client.get(
                    f"{self.graph_url}/oauth/access_token",
                    params={
                        "grant_type": "fb_exchange_token",
                        "client_id": settings.FACEBOOK_APP_ID,
                        "client_secret": settings.FACEBOOK_APP_SECRET,
                        "fb_exchange_token": short_lived,
                    },
                )
                data = response.json() if response.status_code < 400 else {}
                if data.get("access_token"):
                    access_token, expires_in = data["access_token"], data.get("expires_in")
                else:
                    logger.warning(
                        "Facebook long-lived token exchange returned %d", response.status_code
                    )
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("Facebook long-lived token exchange failed: %s", exc)
        finally:
            if should_close:
                await client.aclose()

        return TokenGrant(
            access_token=access_token,
            scope=self.SCOPES,
            expires_in=expires_in,
            extra={"long_lived": expires_in is not None},
        )

    async def after_connect(self, grant, account, http_client=None) -> dict:
        client, should_close = self._client(http_client)
        try:
            response = await client.get(
                f"{self.graph_url}/me/adaccounts",
                params={
                    "fields": "account_id,name,currency",
                    "access_token": grant.access_token,
                },
            )
            if response.status_code >= 400:
                logger.warning("Facebook ad accounts request returned %d", response.status_code)
                return {}
            accounts = response.json().get("data", [])
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Facebook ad accounts request failed: %s", exc)
            return {}
        finally:
            if should_close:
                await client.aclose()

        return {
            "ad_accounts": [
                {
                    "account_id": a.get("account_id"),
                    "name": a.get("name"),
                    "currency": a.get("currency"),
                }
                for a in accounts
            ],
            "ad_account_id": accounts[0].get("account_id") if accounts else None,
        }


# ---------------------------------------------------------------------------
# Google Analytics
# ---------------------------------------------------------------------------


class GoogleAnalyticsProvider(OAuthProvider):
    platform = Platform.GOOGLE_ANALYTICS
    display_name = "Google Analytics"
    SCOPE = "https://www.googleapis.com/auth/analytics.readonly"
    AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    ACCOUNT_SUMMARIES_URL = "https://analyticsadmin.googleapis.com/v1beta/accountSummaries"

    def is_configured(self) -> bool:
        return bool(settings.GOOGLE_CLIENT_ID and settings.GOOGLE_CLIENT_SECRET)

    def build_authorize_url(self, state: str, nonce: str, account: str | None) -> str:
        query = urlencode(
            {
                "client_id": settings.GOOGLE_CLIENT_ID,
                "redirect_uri": self.redirect_uri,
                "response_type": "code",
                "scope": self.SCOPE,
                "access_type": "offline",
                "prompt": "consent",
                "state": state,
            }
        )
        return f"{self.AUTHORIZE_URL}?{query}"

    async def exchange_token(self, code, account, http_client=None) -> TokenGrant:
        client, should_close = self._client(http_client)
        try:
            response = await client.post(
                self.TOKEN_URL,
                data={
                    "code": code,
                    "client_id": settings.GOOGLE_CLIENT_ID,
                    "client_secret": settings.GOOGLE_CLIENT_SECRET,
                    "redirect_uri": self.redirect_uri,
                    "grant_type": "authorization_code",
                },
            )
            if response.status_code >= 400:
                raise self._exchange_failed(response)
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Google token exchange request failed: %s", exc)
            raise TokenExchangeFailed() from exc
        finally:
            if should_close:
                await client.aclose()

        if not data.get("access_token"):
            raise TokenExchangeFailed()
        return TokenGrant(
            access_token=data["access_token"],
            scope=data.get("scope"),
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            extra={"connection_type": "oauth"},
        )

    async def after_connect(self, grant, account, http_client=None) -> dict:
        client, should_close = self._client(http_client)
        try:
            response = await client.get(
                self.ACCOUNT_SUMMARIES_URL,
                headers={"Authorization": f"Bearer {grant.access_token}"},
            )
            if response.status_code >= 400:
                logger.warning("Google account summaries returned %d", response.status_code)
                return {}
            summaries = response.json().get("accountSummaries", [])
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Google account summaries request failed: %s", exc)
            return {}
        finally:
            if should_close:
                await client.aclose()

        properties = [
            {"property": p.get("property"), "name": p.get("displayName")}
            for summary in summaries
            for p in summary.get("propertySummaries", [])
        ]
        return {
            "properties": properties,
            "property_id": properties[0]["property"] if properties else None,
        }


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------


class StripeProvider(OAuthProvider):
    """Stripe Connect (read-only). Key-based connection goes through ``fetch_account``."""

    platform = Platform.STRIPE
    display_name = "Stripe"
    AUTHORIZE_URL = "https://connect.stripe.com/oauth/authorize"
    TOKEN_URL = "https://connect.stripe.com/oauth/token"
    ACCOUNT_URL = "https://api.stripe.com/v1/account"

    def is_configured(self) -> bool:
        return bool(settings.STRIPE_CLIENT_ID and settings.STRIPE_SECRET_KEY)

    def build_authorize_url(self, state: str, nonce: str, account: str | None) -> str:
        query = urlencode(
            {
                "response_type": "code",
                "client_id": settings.STRIPE_CLIENT_ID,
                "scope": "read_only",
                "redirect_uri": self.redirect_uri,
                "state": state,
            }
        )
        return f"{self.AUTHORIZE_URL}?{query}"

    async def exchange_token(self, code, account, http_client=None) -> TokenGrant:
        client, should_close = self._client(http_client)
        try:
            response = await client.post(
                self.TOKEN_URL,
                data={"grant_type": "authorization_code", "code": code},
                headers={"Authorization": f"Bearer {settings.STRIPE_SECRET_KEY}"},
            )
            if response.status_code >= 400:
                raise self._exchange_failed(response)
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Stripe token exchange request failed: %s", exc)
            raise TokenExchangeFailed() from exc
        finally:
            if should_close:
                await client.aclose()

        if not data.get("access_token"):
            raise TokenExchangeFailed()
        return TokenGrant(
            access_token=data["access_token"],
            scope=data.get("scope"),
            refresh_token=data.get("refresh_token"),
            account_id=data.get("stripe_user_id"),
            extra={
                "connection_type": "oauth",
                "account_id": data.get("stripe_user_id"),
                "live_mode": data.get("livemode"),
            },
        )

    async def fetch_account(
        self, secret_key: str, http_client: httpx.AsyncClient | None = None
    ) -> dict:
        """Validate an API key by reading the account it belongs to."""
        client, should_close = self._client(http_client)
        try:
            response = await client.get(
                self.ACCOUNT_URL, headers={"Authorization": f"Bearer {secret_key}"}
            )
        except httpx.HTTPError as exc:
            logger.error("Stripe account request failed: %s", exc)
            raise ValueError("Could not reach Stripe to verify the API key") from exc
        finally:
            if should_close:
                await client.aclose()

        if response.status_code >= 400:
            logger.warning("Stripe rejected API key (status %d)", response.status_code)
            raise ValueError("Invalid Stripe API key")
        try:
            return response.json()
        except ValueError:
            logger.error("Stripe account response was not JSON: %s", response.text[:500])
            raise ValueError("Unexpected response from Stripe") from None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


_PROVIDERS: dict[Platform, OAuthProvider] = {
    Platform.SHOPIFY: ShopifyProvider(),
    Platform.FACEBOOK_ADS: FacebookAdsProvider(),
    Platform.GOOGLE_ANALYTICS: GoogleAnalyticsProvider(),
    Platform.STRIPE: StripeProvider(),
}


def get_provider(platform: Platform) -> OAuthProvider:
    try:
        return _PROVIDERS[platform]
    except KeyError:
        raise UnsupportedFlow(
            f"{platform.value} connects with API keys, not OAuth."
        ) from None
