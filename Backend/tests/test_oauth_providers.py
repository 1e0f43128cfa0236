from unittest.mock import AsyncMock

import httpx
import pytest

from bizinsights.config import settings
from bizinsights.models.enums import Platform
from bizinsights.services.crypto_service import hmac_sign
from bizinsights.services.oauth_errors import InvalidAccount, TokenExchangeFailed, UnsupportedFlow
from bizinsights.services.oauth_providers import (
    FacebookAdsProvider,
    GoogleAnalyticsProvider,
    ShopifyProvider,
    StripeProvider,
    TokenGrant,
    get_provider,
    sanitize_shop_domain,
    shopify_hmac_message,
)


def _mock_client(**methods) -> AsyncMock:
    client = AsyncMock(spec=httpx.AsyncClient)
    for name, value in methods.items():
        if isinstance(value, list):
            getattr(client, name).side_effect = value
        else:
            getattr(client, name).return_value = value
    return client


# ── Registry ─────────────────────────────────────────────────────────


def test_registry_covers_oauth_platforms():
    assert isinstance(get_provider(Platform.SHOPIFY), ShopifyProvider)
    assert isinstance(get_provider(Platform.FACEBOOK_ADS), FacebookAdsProvider)
    assert isinstance(get_provider(Platform.GOOGLE_ANALYTICS), GoogleAnalyticsProvider)
    assert isinstance(get_provider(Platform.STRIPE), StripeProvider)


def test_woocommerce_has_no_oauth_flow():
    with pytest.raises(UnsupportedFlow):
        get_provider(Platform.WOOCOMMERCE)


# ── Shopify ──────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("demo-store", "demo-store"),
        ("Demo-Store.myshopify.com", "demo-store"),
        ("https://demo-store.myshopify.com/", "demo-store"),
        ("  DEMO-STORE  ", "demo-store"),
    ],
)
def test_sanitize_shop_domain(raw, expected):
    assert sanitize_shop_domain(raw) == expected


@pytest.mark.parametrize("raw", ["", "-demo", "demo store", "demo.example.com", "demo_store"])
def test_invalid_shop_is_rejected(raw):
    with pytest.raises(InvalidAccount):
        ShopifyProvider().normalize_account(raw)


def test_hmac_message_is_sorted_and_excludes_signatures():
    params = {"state": "s", "code": "c", "hmac": "x", "signature": "y", "shop": "demo"}
    assert shopify_hmac_message(params) == "code=c&shop=demo&state=s"


def test_verify_callback():
    provider = ShopifyProvider()
    params = {"code": "c", "shop": "demo-store.myshopify.com", "state": "s", "timestamp": "1"}
    params["hmac"] = hmac_sign(shopify_hmac_message(params), settings.SHOPIFY_API_SECRET)

    assert provider.verify_callback(params)
    for key in ("code", "shop", "state", "timestamp"):
        tampered = {**params, key: params[key] + "x"}
        assert not provider.verify_callback(tampered)


def test_verify_callback_without_secret_fails_closed(monkeypatch):
    params = {"code": "c", "state": "s"}
    params["hmac"] = hmac_sign(shopify_hmac_message(params), "")
    monkeypatch.setattr(settings, "SHOPIFY_API_SECRET", "")
    assert not ShopifyProvider().verify_callback(params)


@pytest.mark.asyncio
async def test_shopify_exchange_token():
    client = _mock_client(
        post=httpx.Response(200, json={"access_token": "shpat_abc", "scope": "read_orders"})
    )
    grant = await ShopifyProvider().exchange_token("code-1", "demo-store", http_client=client)

    assert grant.access_token == "shpat_abc"
    assert grant.scope == "read_orders"
    url = client.post.call_args.args[0]
    assert url == "https://demo-store.myshopify.com/admin/oauth/access_token"
    assert client.post.call_args.kwargs["json"]["code"] == "code-1"


@pytest.mark.asyncio
async def test_shopify_exchange_token_error_status():
    client = _mock_client(post=httpx.Response(400, json={"error": "invalid_request"}))
    with pytest.raises(TokenExchangeFailed) as exc_info:
        await ShopifyProvider().exchange_token("code-1", "demo-store", http_client=client)
    # Provider details stay out of the user-facing message
    assert "invalid_request" not in exc_info.value.message


@pytest.mark.asyncio
async def test_shopify_exchange_token_network_error():
    client = _mock_client()
    client.post.side_effect = httpx.ConnectTimeout("timed out")
    with pytest.raises(TokenExchangeFailed):
        await ShopifyProvider().exchange_token("code-1", "demo-store", http_client=client)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "provider, method",
    [
        (ShopifyProvider(), "post"),
        (GoogleAnalyticsProvider(), "post"),
        (StripeProvider(), "post"),
        (FacebookAdsProvider(), "get"),
    ],
)
async def test_exchange_token_rejects_html_body(provider, method):
    client = _mock_client(**{method: httpx.Response(200, text="<html>maintenance</html>")})
    with pytest.raises(TokenExchangeFailed):
        await provider.exchange_token("code-1", "demo-store", http_client=client)


@pytest.mark.asyncio
async def test_facebook_keeps_short_lived_token_when_upgrade_is_not_json(facebook_configured):
    client = _mock_client(
        get=[
            httpx.Response(200, json={"access_token": "short"}),
            httpx.Response(200, text="<html>oops</html>"),
        ]
    )
    grant = await FacebookAdsProvider().exchange_token("code", None, http_client=client)
    assert grant.access_token == "short"


@pytest.mark.asyncio
async def test_shopify_after_connect_registers_webhooks():
    client = _mock_client(
        get=httpx.Response(
            200, json={"shop": {"name": "Demo Store", "currency": "USD", "plan_name": "basic"}}
        ),
        post=httpx.Response(201, json={"webhook": {"id": 1}}),
    )
    updates = await ShopifyProvider().after_connect(
        TokenGrant(access_token="shpat_abc"), "demo-store", http_client=client
    )

    assert updates["shop_info"]["name"] == "Demo Store"
    assert updates["webhooks"] == ["orders/create", "app/uninstalled"]
    addresses = {c.kwargs["json"]["webhook"]["address"] for c in client.post.call_args_list}
    assert addresses == {"https://api.bizinsights.test/api/webhooks/shopify"}
    headers = client.get.call_args.kwargs["headers"]
    assert headers["X-Shopify-Access-Token"] == "shpat_abc"


@pytest.mark.asyncio
async def test_shopify_after_connect_tolerates_failures():
    client = _mock_client(
        get=httpx.Response(500),
        post=[httpx.Response(422, json={"errors": "taken"}), httpx.Response(201, json={})],
    )
    updates = await ShopifyProvider().after_connect(
        TokenGrant(access_token="shpat_abc"), "demo-store", http_client=client
    )
    assert "shop_info" not in updates
    assert updates["webhooks"] == ["app/uninstalled"]


# ── Facebook Ads ─────────────────────────────────────────────────────


@pytest.fixture
def facebook_configured(monkeypatch):
    monkeypatch.setattr(settings, "FACEBOOK_APP_ID", "fb-app")
    monkeypatch.setattr(settings, "FACEBOOK_APP_SECRET", "fb-secret")


def test_facebook_authorize_url(facebook_configured):
    url = FacebookAdsProvider().build_authorize_url("state-1", "nonce", None)
    assert url.startswith("https://www.facebook.com/v19.0/dialog/oauth?")
    assert "state=state-1" in url
    assert "ads_read" in url


@pytest.mark.asyncio
async def test_facebook_exchanges_for_long_lived_token(facebook_configured):
    client = _mock_client(
        get=[
            httpx.Response(200, json={"access_token": "short"}),
            httpx.Response(200, json={"access_token": "long", "expires_in": 5183944}),
        ]
    )
    grant = await FacebookAdsProvider().exchange_token("code", None, http_client=client)

    assert grant.access_token == "long"
    assert grant.expires_in == 5183944
    second_params = client.get.call_args_list[1].kwargs["params"]
    assert second_params["grant_type"] == "fb_exchange_token"
    assert second_params["fb_exchange_token"] == "short"


@pytest.mark.asyncio
async def test_facebook_keeps_short_lived_token_when_upgrade_fails(facebook_configured):
    client = _mock_client(
        get=[
            httpx.Response(200, json={"access_token": "short"}),
            httpx.Response(400, json={"error": {"message": "nope"}}),
        ]
    )
    grant = await FacebookAdsProvider().exchange_token("code", None, http_client=client)
    assert grant.access_token == "short"
    assert grant.extra == {"long_lived": False}


@pytest.mark.asyncio
async def test_facebook_after_connect_lists_ad_accounts(facebook_configured):
    client = _mock_client(
        get=httpx.Response(
            200,
            json={"data": [{"account_id": "act_1", "name": "Main", "currency": "USD"}]},
        )
    )
    updates = await FacebookAdsProvider().after_connect(
        TokenGrant(access_token="long"), None, http_client=client
    )
    assert updates["ad_account_id"] == "act_1"
    assert updates["ad_accounts"][0]["name"] == "Main"


# ── Google Analytics ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_google_exchange_keeps_refresh_token(monkeypatch):
    monkeypatch.setattr(settings, "GOOGLE_CLIENT_ID", "g-client")
    monkeypatch.setattr(settings, "GOOGLE_CLIENT_SECRET", "g-secret")
    client = _mock_client(
        post=httpx.Response(
            200,
            json={
                "access_token": "ya29.token",
                "refresh_token": "1//refresh",
                "expires_in": 3599,
                "scope": "https://www.googleapis.com/auth/analytics.readonly",
            },
        )
    )
    grant = await GoogleAnalyticsProvider().exchange_token("code", None, http_client=client)

    assert grant.refresh_token == "1//refresh"
    assert client.post.call_args.args[0] == "https://oauth2.googleapis.com/token"
    assert client.post.call_args.kwargs["data"]["grant_type"] == "authorization_code"


# ── Stripe ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_stripe_fetch_account():
    client = _mock_client(
        get=httpx.Response(200, json={"id": "acct_123", "country": "US"})
    )
    account = await StripeProvider().fetch_account("sk_test_abc", http_client=client)
    assert account["id"] == "acct_123"
    assert client.get.call_args.kwargs["headers"]["Authorization"] == "Bearer sk_test_abc"


@pytest.mark.asyncio
async def test_stripe_fetch_account_rejects_bad_key():
    client = _mock_client(get=httpx.Response(401, json={"error": {"type": "invalid_request_error"}}))
    with pytest.raises(ValueError, match="Invalid Stripe API key"):
        await StripeProvider().fetch_account("sk_test_bad", http_client=client)
