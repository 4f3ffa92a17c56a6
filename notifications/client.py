"""Async client for the Komunitin social, accounting and auth services."""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Literal

import httpx
import structlog

from notifications.errors import ApiError, EnrichmentError
from notifications.resources import (
    Account,
    Currency,
    Group,
    Member,
    Post,
    Transfer,
    User,
    UserSettings,
    UserWithSettings,
)
from shared.config import Settings, get_settings

logger = structlog.get_logger()

JSONAPI_MEDIA_TYPE = "application/vnd.api+json"
TOKEN_SCOPES = "komunitin_social_read_all komunitin_accounting_read_all"

# Refresh the access token this long before it expires
TOKEN_EXPIRY_BUFFER_SECONDS = 60
MAX_NETWORK_ATTEMPTS = 3
PAGE_DELAY_SECONDS = 0.1

Service = Literal["social", "accounting"]


def find_included(document: dict, type_: str, id_: str | None) -> dict | None:
    """Find a resource in a JSON:API ``included`` array."""
    for item in document.get("included") or []:
        if item.get("type") == type_ and item.get("id") == id_:
            return item
    return None


class KomunitinClient:
    """Client authenticated with OAuth2 client credentials.

    The access token is cached until shortly before it expires. Concurrent
    callers share one refresh, and a 401 answer forces a single refresh and
    retry.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._settings = settings or get_settings()
        self._http = http_client or httpx.AsyncClient(timeout=self._settings.http_timeout_seconds)
        self._clock = clock
        self._access_token: str | None = None
        self._expires_at = 0.0
        self._refresh: asyncio.Future[str] | None = None

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def get_access_token(self) -> str:
        if self._access_token and self._clock() < self._expires_at - TOKEN_EXPIRY_BUFFER_SECONDS:
            return self._access_token

        if self._refresh is None:
            self._refresh = asyncio.ensure_future(self._fetch_token())
        return await asyncio.shield(self._refresh)

    async def _fetch_token(self) -> str:
        try:
            logger.info("access_token_refreshing")
            resp = await self._send(
                "POST",
                f"{self._settings.komunitin_auth_url}/token",
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._settings.oauth_client_id,
                    "client_secret": self._settings.oauth_client_secret,
                    "scope": TOKEN_SCOPES,
                },
            )
            if not resp.is_success:
                logger.error("access_token_failed", status=resp.status_code)
                raise ApiError(resp.status_code, str(resp.url), resp.text)

            body = resp.json()
            self._access_token = body["access_token"]
            self._expires_at = self._clock() + float(body.get("expires_in", 0))
            logger.info("access_token_refreshed", expires_in=body.get("expires_in"))
            return self._access_token
        finally:
            self._refresh = None

    def force_refresh(self) -> None:
        self._access_token = None
        self._expires_at = 0.0

    async def get_auth_code(self, user_id: str, scopes: list[str] | None = None) -> str:
        """Get a one-time code that logs ``user_id`` in from an e-mail link."""
        token = await self.get_access_token()
        form = {"user_id": user_id}
        if scopes:
            form["scope"] = " ".join(scopes)

        resp = await self._send(
            "POST",
            f"{self._settings.komunitin_auth_url}/get-auth-code",
            data=form,
            headers={"Authorization": f"Bearer {token}"},
        )
        if not resp.is_success:
            logger.error("auth_code_failed", user_id=user_id, status=resp.status_code)
            raise ApiError(resp.status_code, str(resp.url), resp.text)
        return resp.json()["code"]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send a request, retrying transport errors with a linear back-off."""
        attempt = 1
        while True:
            try:
                return await self._http.request(method, url, **kwargs)
            except httpx.TransportError as e:
                if attempt >= MAX_NETWORK_ATTEMPTS:
                    raise
                logger.warning("api_network_error", url=url, attempt=attempt, error=str(e))
                await asyncio.sleep(1.0 * attempt)
                attempt += 1

    async def _get_json(self, url: str, params: dict[str, str] | None = None) -> dict:
        token = await self.get_access_token()
        headers = {"Accept": JSONAPI_MEDIA_TYPE}

        resp = await self._send(
            "GET", url, params=params, headers={**headers, "Authorization": f"Bearer {token}"}
        )
        if resp.status_code == 401:
            logger.warning("api_unauthorized_retrying", url=url)
            self.force_refresh()
            token = await self.get_access_token()
            resp = await self._send(
                "GET", url, params=params, headers={**headers, "Authorization": f"Bearer {token}"}
            )

        if not resp.is_success:
            logger.error("api_request_failed", status=resp.status_code, url=url)
            raise ApiError(resp.status_code, url, resp.text)
        return resp.json()

    def _url(self, service: Service, path: str) -> str:
        base = (
            self._settings.komunitin_social_url
            if service == "social"
            else self._settings.komunitin_accounting_url
        )
        return f"{base.rstrip('/')}/{path.lstrip('/')}"

    async def _get(self, service: Service, path: str, params: dict[str, str] | None = None) -> dict:
        return await self._get_json(self._url(service, path), params)

    async def _paginate(
        self, service: Service, path: str, params: dict[str, str] | None = None
    ) -> list[dict]:
        """Collect ``data`` across all pages following ``links.next``."""
        url: str | None = self._url(service, path)
        page_params = params or None
        items: list[dict] = []

        while url:
            body = await self._get_json(url, page_params)
            items.extend(body.get("data") or [])
            url = (body.get("links") or {}).get("next")
            # links.next already carries the query
            page_params = None
            if url:
                await asyncio.sleep(PAGE_DELAY_SECONDS)
        return items

    @staticmethod
    def _include(include: list[str] | None) -> dict[str, str] | None:
        return {"include": ",".join(include)} if include else None

    # ------------------------------------------------------------------
    # Social service
    # ------------------------------------------------------------------

    async def get_groups(self, params: dict[str, str] | None = None) -> list[Group]:
        return [Group.model_validate(g) for g in await self._paginate("social", "/groups", params)]

    async def get_group(self, code: str) -> Group:
        body = await self._get("social", f"/{code}")
        return Group.model_validate(body["data"])

    async def get_members(self, code: str, params: dict[str, str] | None = None) -> list[Member]:
        items = await self._paginate("social", f"/{code}/members", params)
        return [Member.model_validate(m) for m in items]

    async def get_member(self, code: str, member_id: str) -> Member:
        body = await self._get("social", f"/{code}/members/{member_id}")
        return Member.model_validate(body["data"])

    async def get_members_by_account(self, code: str, account_ids: list[str]) -> list[Member]:
        return await self.get_members(code, {"filter[account]": ",".join(account_ids)})

    async def get_member_users(self, member_id: str) -> list[UserWithSettings]:
        body = await self._get(
            "social", "/users", {"filter[members]": member_id, "include": "settings"}
        )
        return [self._with_settings(body, u) for u in body.get("data") or []]

    async def get_posts(
        self,
        code: str,
        post_type: Literal["offers", "needs"],
        params: dict[str, str] | None = None,
    ) -> list[Post]:
        items = await self._paginate("social", f"/{code}/{post_type}", params)
        return [Post.model_validate(p) for p in items]

    async def get_offers(self, code: str, params: dict[str, str] | None = None) -> list[Post]:
        return await self.get_posts(code, "offers", params)

    async def get_needs(self, code: str, params: dict[str, str] | None = None) -> list[Post]:
        return await self.get_posts(code, "needs", params)

    async def get_post_with_member(
        self, code: str, post_type: Literal["offers", "needs"], post_id: str
    ) -> tuple[Post, Member]:
        """Fetch an offer or need together with its author."""
        body = await self._get("social", f"/{code}/{post_type}/{post_id}", self._include(["member"]))
        post = Post.model_validate(body["data"])
        member = find_included(body, "members", post.member_id)
        if member is None:
            raise EnrichmentError(f"Missing member {post.member_id} in response for {post_type} {post_id}")
        return post, Member.model_validate(member)

    async def get_user(self, user_id: str) -> User:
        body = await self._get("social", f"/users/{user_id}")
        return User.model_validate(body["data"])

    async def get_user_settings(self, user_id: str) -> UserSettings:
        body = await self._get("social", f"/users/{user_id}/settings")
        return UserSettings.model_validate(body["data"])

    async def get_user_with_settings(self, user_id: str) -> UserWithSettings:
        body = await self._get("social", f"/users/{user_id}", self._include(["settings"]))
        return self._with_settings(body, body["data"])

    @staticmethod
    def _with_settings(document: dict, user_data: dict) -> UserWithSettings:
        user = User.model_validate(user_data)
        settings = find_included(document, "user-settings", user.settings_id)
        return UserWithSettings(
            user=user,
            settings=UserSettings.model_validate(settings) if settings else None,
        )

    # ------------------------------------------------------------------
    # Accounting service
    # ------------------------------------------------------------------

    async def get_account(self, code: str, account_id: str) -> Account:
        body = await self._get("accounting", f"/{code}/accounts/{account_id}")
        return Account.model_validate(body["data"])

    async def get_transfer_with_accounts(
        self, code: str, transfer_id: str
    ) -> tuple[Transfer, Account, Account]:
        """Fetch a transfer with its payer and payee accounts."""
        body = await self._get(
            "accounting", f"/{code}/transfers/{transfer_id}", self._include(["payer", "payee"])
        )
        transfer = Transfer.model_validate(body["data"])
        payer = find_included(body, "accounts", transfer.payer_id)
        payee = find_included(body, "accounts", transfer.payee_id)
        if payer is None or payee is None:
            raise EnrichmentError(f"Missing payer or payee account in transfer {transfer.id}")
        return transfer, Account.model_validate(payer), Account.model_validate(payee)

    async def get_currency(self, code: str) -> Currency:
        body = await self._get("accounting", f"/{code}/currency")
        return Currency.model_validate(body["data"])
