"""Shared OAuth-refresh and authenticated-request plumbing for calendar providers."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from cally.scheduling.errors import CalendarProviderError, sanitize_error_message
from cally.scheduling.ports import CalendarProviderClient, ConfigT

logger = logging.getLogger(__name__)

RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0
DEFAULT_TOKEN_TTL_SECONDS = 3600


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_TOKEN_TTL_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_TOKEN_TTL_SECONDS
    return DEFAULT_TOKEN_TTL_SECONDS


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short, credential-free message from a provider error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return sanitize_error_message(message)
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                return sanitize_error_message(f"{error_payload}: {description}")
            return sanitize_error_message(error_payload)

    raw_text = response.text.strip()
    if raw_text:
        return sanitize_error_message(raw_text)
    return "Request failed without an error payload"


class OAuthCalendarClient(CalendarProviderClient[ConfigT]):
    """Calendar REST client authenticating with a tenant's stored OAuth tokens.

    Tokens expiring within five minutes are refreshed before the request; a
    401 forces one refresh and a retry.  429/503 responses are retried with
    backoff.  The (possibly refreshed) config is returned with every response.
    """

    provider_name: str = "calendar"
    token_url: str = ""
    api_base_url: str = ""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # -- token refresh -------------------------------------------------------

    def _refresh_form(self, config: ConfigT) -> dict[str, str]:
        return {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "refresh_token": config.refresh_token,
            "grant_type": "refresh_token",
        }

    async def refresh(self, config: ConfigT) -> ConfigT:
        """Exchange the refresh token for a new access token."""
        try:
            response = await self._http_client.post(
                self.token_url,
                data=self._refresh_form(config),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CalendarProviderError(
                f"token refresh request failed: {exc}", provider=self.provider_name
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarProviderError(
                f"token refresh failed: {safe_error_message(response)}",
                provider=self.provider_name,
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarProviderError(
                "token endpoint returned invalid JSON", provider=self.provider_name
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise CalendarProviderError(
                "token response is missing a non-empty access_token", provider=self.provider_name
            )

        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        update: dict[str, Any] = {
            "access_token": access_token.strip(),
            "token_expiry": datetime.now(UTC) + timedelta(seconds=expires_in),
        }
        rotated = payload.get("refresh_token")
        if isinstance(rotated, str) and rotated.strip():
            update["refresh_token"] = rotated.strip()
        logger.info("Refreshed %s access token", self.provider_name)
        return config.model_copy(update=update)

    async def ensure_fresh(self, config: ConfigT) -> ConfigT:
        if config.needs_refresh():
            return await self.refresh(config)
        return config

    # -- requests ------------------------------------------------------------

    def _url(self, path: str) -> str:
        if path.startswith(("https://", "http://")):
            return path
        normalized_path = path if path.startswith("/") else f"/{path}"
        return f"{self.api_base_url}{normalized_path}"

    async def _request_once(
        self,
        config: ConfigT,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        extra_headers: dict[str, str] | None,
    ) -> httpx.Response:
        headers: dict[str, str] = {"Authorization": f"Bearer {config.access_token}"}
        if extra_headers:
            headers.update(extra_headers)
        try:
            return await self._http_client.request(
                method, url, params=params, json=json_body, headers=headers
            )
        except httpx.HTTPError as exc:
            raise CalendarProviderError(
                f"request failed: {exc}", provider=self.provider_name
            ) from exc

    async def _request(
        self,
        config: ConfigT,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> tuple[httpx.Response, ConfigT]:
        config = await self.ensure_fresh(config)
        request_kwargs: dict[str, Any] = {
            "method": method,
            "url": self._url(path),
            "params": params,
            "json_body": json_body,
            "extra_headers": extra_headers,
        }
        response = await self._request_once(config, **request_kwargs)

        if response.status_code == 401:
            config = await self.refresh(config)
            response = await self._request_once(config, **request_kwargs)

        # Honour Retry-After on 429; exponential backoff otherwise.
        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "%s API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                self.provider_name,
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(config, **request_kwargs)
            retry += 1

        return response, config

    async def _request_json(
        self,
        config: ConfigT,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> tuple[dict[str, Any], ConfigT]:
        response, config = await self._request(
            config,
            method,
            path,
            params=params,
            json_body=json_body,
            extra_headers=extra_headers,
        )

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarProviderError(
                safe_error_message(response),
                provider=self.provider_name,
                status_code=response.status_code,
            )

        if response.status_code in (202, 204) or not response.content:
            return {}, config

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarProviderError(
                "API returned invalid JSON for a successful response",
                provider=self.provider_name,
            ) from exc

        if not isinstance(payload, dict):
            raise CalendarProviderError(
                "API returned an unexpected JSON payload shape", provider=self.provider_name
            )
        return payload, config
