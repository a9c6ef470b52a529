from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import requests

from pairbot.broker.base import BrokerAuthError, BrokerError, TransientBrokerError

LOGGER = logging.getLogger(__name__)

RETRYABLE_STATUS = (500, 502, 503, 504)
GOLD_ALIASES = {"XAU", "XAUUSD", "GOLD"}


class CapitalAPIError(BrokerError):
    """Non-retryable Capital.com API error."""


class RetryableCapitalAPIError(CapitalAPIError, TransientBrokerError):
    """Retryable API/network error."""


class CapitalAuthError(CapitalAPIError, BrokerAuthError):
    """Authentication/authorization error for session creation."""


class CapitalNotFoundError(CapitalAPIError):
    """The requested deal/position does not exist (HTTP 404)."""


@dataclass(slots=True)
class CapitalClientMetrics:
    total_requests: int = 0
    total_retries: int = 0
    http_429_count: int = 0
    network_disconnects: int = 0
    session_refreshes: int = 0


class TokenBucketLimiter:
    def __init__(self, rate_per_second: float, burst: int):
        self.rate_per_second = max(0.1, float(rate_per_second))
        self.capacity = max(1, int(burst))
        self.tokens = float(self.capacity)
        self.last_refill = time.monotonic()
        self.lock = threading.Lock()

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(float(self.capacity), self.tokens + elapsed * self.rate_per_second)
        self.last_refill = now

    def acquire(self) -> None:
        while True:
            with self.lock:
                self._refill(time.monotonic())
                if self.tokens >= 1.0:
                    self.tokens -= 1.0
                    return
                wait_seconds = (1.0 - self.tokens) / self.rate_per_second
            time.sleep(wait_seconds)


def _is_disconnect_error(exc: requests.RequestException) -> bool:
    text = str(exc).lower()
    return any(
        marker in text
        for marker in (
            "remote end closed connection",
            "remote disconnected",
            "connection aborted",
            "connection reset",
        )
    )


def _parse_retry_after(headers: Any) -> float | None:
    value = headers.get("Retry-After")
    if not value:
        return None
    try:
        parsed = float(value.strip())
    except ValueError:
        return None
    if parsed < 0:
        return None
    return parsed


def backoff_delay(attempt: int, *, base: float, cap: float, retry_after: float | None = None) -> float:
    """Seconds to wait before retry ``attempt`` (1-based); Retry-After wins when present."""
    if retry_after is not None:
        return max(0.0, retry_after)
    exponential = min(cap, base * (2 ** max(0, attempt - 1)))
    jitter = random.uniform(0.0, max(0.01, exponential * 0.2))
    return min(cap, exponential + jitter)


def _extract_error_code(response: requests.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    error_code = payload.get("errorCode")
    return str(error_code) if error_code else None


_AUTH_ERROR_MESSAGES = {
    "error.invalid.api.key": "Invalid Capital.com API key (wrong key, disabled key, or key from another environment)",
    "error.invalid.details": "Invalid Capital.com credentials (API key/identifier/password) or wrong account environment",
    "error.null.accountId": "Capital.com rejected accountId. Verify BROKER_ACCOUNT_ID belongs to this account.",
    "error.null.client.token": "Missing/invalid API key token. Verify BROKER_TOKEN and environment (DEMO vs LIVE).",
}


class CapitalClient:
    """
    Blocking Capital.com REST client.

    Auth flow:
    - POST /session with X-CAP-API-KEY + identifier/password.
    - Read CST and X-SECURITY-TOKEN from response headers.
    - Optional PUT /session to switch to the configured account.

    Every call goes through a token bucket and is retried on network
    errors, 429 and 5xx with exponential backoff. Session tokens are
    refreshed once per call on 401/403.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        identifier: str,
        password: str,
        account_id: str | None = None,
        timeout_seconds: int = 10,
        *,
        rate_limit_rps: float = 2.0,
        rate_limit_burst: int = 5,
        request_max_attempts: int = 4,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 10.0,
        reconnect_short_retries: int = 2,
        session_refresh_min_interval_seconds: int = 5,
        confirm_attempts: int = 5,
        confirm_delay_seconds: float = 0.25,
        session: requests.Session | None = None,
    ):
        self.base_url = self._normalize_base_url(base_url)
        self.api_key = api_key
        self.identifier = identifier
        self.password = password
        self.account_id = account_id.strip() if account_id else None
        self.timeout_seconds = timeout_seconds
        self.request_max_attempts = max(1, int(request_max_attempts))
        self.backoff_base_seconds = max(0.1, float(backoff_base_seconds))
        self.backoff_max_seconds = max(self.backoff_base_seconds, float(backoff_max_seconds))
        self.reconnect_short_retries = max(0, int(reconnect_short_retries))
        self.session_refresh_min_interval_seconds = max(1, int(session_refresh_min_interval_seconds))
        self.confirm_attempts = max(1, int(confirm_attempts))
        self.confirm_delay_seconds = max(0.0, float(confirm_delay_seconds))

        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json", "Content-Type": "application/json"})
        self.cst: str | None = None
        self.security_token: str | None = None
        self._auth_cooldown_until: datetime | None = None
        self._auth_error_message: str | None = None
        self._epic_aliases: dict[str, str] = {}
        self._limiter = TokenBucketLimiter(rate_per_second=rate_limit_rps, burst=rate_limit_burst)
        self._session_lock = threading.RLock()
        self._last_session_refresh_at: float | None = None
        self._metrics = CapitalClientMetrics()
        self._metrics_lock = threading.Lock()

    @staticmethod
    def _normalize_base_url(base_url: str) -> str:
        normalized = base_url.strip().rstrip("/")
        if normalized.endswith("/api/v1"):
            return normalized
        if normalized.endswith("/api"):
            return f"{normalized}/v1"
        return f"{normalized}/api/v1"

    def _metric_add(self, field_name: str, value: int = 1) -> None:
        with self._metrics_lock:
            setattr(self._metrics, field_name, getattr(self._metrics, field_name) + value)

    def metrics_snapshot(self) -> dict[str, int]:
        with self._metrics_lock:
            return asdict(self._metrics)

    def _auth_headers(self) -> dict[str, str]:
        headers = {"X-CAP-API-KEY": self.api_key}
        if self.cst and self.security_token:
            headers["CST"] = self.cst
            headers["X-SECURITY-TOKEN"] = self.security_token
        return headers

    def _wait_before_retry(self, *, path: str, attempt: int, reason: str, retry_after: float | None = None) -> None:
        delay = backoff_delay(
            attempt,
            base=self.backoff_base_seconds,
            cap=self.backoff_max_seconds,
            retry_after=retry_after,
        )
        self._metric_add("total_retries")
        LOGGER.warning(
            "Retrying Capital API call path=%s attempt=%d/%d sleep=%.2fs reason=%s",
            path,
            attempt,
            self.request_max_attempts,
            delay,
            reason,
        )
        time.sleep(delay)

    def _send(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str],
        params: dict[str, Any] | None = None,
        json_payload: dict[str, Any] | None = None,
    ) -> requests.Response:
        self._limiter.acquire()
        self._metric_add("total_requests")
        return self.session.request(
            method=method,
            url=f"{self.base_url}{path}",
            params=params,
            json=json_payload,
            headers=headers,
            timeout=self.timeout_seconds,
        )

    def _retry_transient(self, response: requests.Response, *, path: str, attempt: int) -> bool:
        """Sleep and return True when ``response`` is a retryable status with attempts left."""
        if response.status_code == 429:
            self._metric_add("http_429_count")
            retry_after = _parse_retry_after(response.headers)
            reason = "http_429"
        elif response.status_code in RETRYABLE_STATUS:
            retry_after = None
            reason = f"http_{response.status_code}"
        else:
            return False
        if attempt >= self.request_max_attempts:
            raise RetryableCapitalAPIError(f"Retryable API error {path}: HTTP {response.status_code} {response.text}")
        self._wait_before_retry(path=path, attempt=attempt, reason=reason, retry_after=retry_after)
        return True

    # ---- session ----

    def create_session(self) -> None:
        now = datetime.now(timezone.utc)
        if self._auth_cooldown_until and now < self._auth_cooldown_until:
            wait_seconds = int((self._auth_cooldown_until - now).total_seconds())
            message = self._auth_error_message or "Session auth is temporarily blocked"
            raise CapitalAuthError(f"{message}. Retry in ~{wait_seconds}s")

        credentials = {"identifier": self.identifier, "password": self.password, "encryptedPassword": False}
        for attempt in range(1, self.request_max_attempts + 1):
            try:
                response = self._send(
                    "POST",
                    "/session",
                    headers={"X-CAP-API-KEY": self.api_key},
                    json_payload=credentials,
                )
            except requests.RequestException as exc:
                if _is_disconnect_error(exc):
                    self._metric_add("network_disconnects")
                if attempt >= self.request_max_attempts:
                    raise RetryableCapitalAPIError(f"Network error creating session: {exc}") from exc
                self._wait_before_retry(path="/session", attempt=attempt, reason=f"network:{type(exc).__name__}")
                continue

            if self._retry_transient(response, path="/session", attempt=attempt):
                continue
            if response.status_code in (401, 403):
                error_code = _extract_error_code(response)
                message = _AUTH_ERROR_MESSAGES.get(error_code or "")
                if message:
                    self._auth_cooldown_until = datetime.now(timezone.utc) + timedelta(seconds=90)
                    self._auth_error_message = message
                    raise CapitalAuthError(message)
                raise CapitalAuthError(f"Session authorization failed: HTTP {response.status_code} {response.text}")
            if response.status_code >= 400:
                raise CapitalAPIError(f"Failed to create session: HTTP {response.status_code} {response.text}")

            self.cst = response.headers.get("CST")
            self.security_token = response.headers.get("X-SECURITY-TOKEN")
            if not self.cst or not self.security_token:
                raise CapitalAPIError("Session tokens missing in response headers")
            if self.account_id:
                self._request("PUT", "/session", json={"accountId": self.account_id, "defaultAccount": False})
            self._auth_cooldown_until = None
            self._auth_error_message = None
            LOGGER.info("Capital session created (account=%s)", self.account_id or "default")
            return
        raise RetryableCapitalAPIError("Could not create session after retries")

    def _refresh_session(self, reason: str) -> None:
        with self._session_lock:
            now = time.monotonic()
            if (
                self._last_session_refresh_at is not None
                and now - self._last_session_refresh_at < self.session_refresh_min_interval_seconds
            ):
                LOGGER.info("Session refresh skipped (recent) reason=%s", reason)
                return
            LOGGER.info("Refreshing Capital session reason=%s", reason)
            self.cst = None
            self.security_token = None
            self.create_session()
            self._last_session_refresh_at = now
            self._metric_add("session_refreshes")

    def _ensure_session(self) -> None:
        # re-entrant: create_session issues its own PUT /session through _request
        with self._session_lock:
            if not self.cst or not self.security_token:
                self.create_session()

    # ---- generic request ----

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        allow_404: bool = False,
    ) -> dict[str, Any]:
        refreshed_once = False
        for attempt in range(1, self.request_max_attempts + 1):
            self._ensure_session()
            try:
                response = self._send(method, path, headers=self._auth_headers(), params=params, json_payload=json)
            except requests.RequestException as exc:
                if _is_disconnect_error(exc):
                    self._metric_add("network_disconnects")
                    if attempt > self.reconnect_short_retries and not refreshed_once:
                        self._refresh_session("remote_disconnect")
                        refreshed_once = True
                if attempt >= self.request_max_attempts:
                    raise RetryableCapitalAPIError(f"Network error {method} {path}: {exc}") from exc
                self._wait_before_retry(path=path, attempt=attempt, reason=f"network:{type(exc).__name__}")
                continue

            if response.status_code in (401, 403):
                if not refreshed_once:
                    self._refresh_session("session_expired")
                    refreshed_once = True
                    continue
                raise CapitalAuthError(f"Session authorization failed: HTTP {response.status_code} {response.text}")
            if self._retry_transient(response, path=path, attempt=attempt):
                continue
            if response.status_code == 404:
                if allow_404:
                    return {}
                raise CapitalNotFoundError(f"API error {method} {path}: HTTP 404 not found {response.text}")
            if response.status_code >= 400:
                raise CapitalAPIError(f"API error {method} {path}: HTTP {response.status_code} {response.text}")
            if not response.text:
                return {}
            return response.json()
        raise RetryableCapitalAPIError(f"Could not complete request {method} {path}")

    # ---- markets ----

    def _resolve_epic_via_search(self, epic: str) -> str | None:
        term = epic.strip().upper()
        payload = self._request("GET", "/markets", params={"searchTerm": term})
        markets = payload.get("markets", [])
        if not isinstance(markets, list) or not markets:
            return None
        for market in markets:
            if str(market.get("epic", "")).upper() == term:
                return str(market["epic"])
        commodities = [m for m in markets if str(m.get("instrumentType", "")).upper() == "COMMODITIES"]
        if term in GOLD_ALIASES:
            for market in commodities:
                if str(market.get("instrumentName", "")).strip().upper() == "GOLD":
                    return str(market.get("epic"))
        if commodities:
            return str(commodities[0].get("epic"))
        return str(markets[0].get("epic")) if markets[0].get("epic") else None

    def resolve_epic(self, epic: str) -> str:
        requested = epic.strip().upper()
        return self._epic_aliases.get(requested, requested)

    def get_market_details(self, epic: str) -> dict[str, Any]:
        resolved = self.resolve_epic(epic)
        payload = self._request("GET", f"/markets/{resolved}", allow_404=True)
        if payload:
            return payload
        discovered = self._resolve_epic_via_search(epic)
        if discovered and discovered.upper() != resolved:
            self._epic_aliases[epic.strip().upper()] = discovered.upper()
            LOGGER.info("Resolved epic alias: %s -> %s", epic, discovered)
            payload = self._request("GET", f"/markets/{discovered}", allow_404=True)
            if payload:
                return payload
        raise CapitalAPIError(f"API error GET /markets/{epic}: epic not found. Try SYMBOL=GOLD.")

    def get_quote(self, epic: str) -> tuple[float, float]:
        snapshot = self.get_market_details(epic).get("snapshot", {})
        bid = snapshot.get("bid")
        ask = snapshot.get("offer")
        if bid is None or ask is None:
            raise CapitalAPIError(f"Missing bid/ask in market snapshot for {epic}")
        return float(bid), float(ask)

    # ---- account & positions ----

    def get_accounts(self) -> list[dict[str, Any]]:
        accounts = self._request("GET", "/accounts").get("accounts", [])
        return accounts if isinstance(accounts, list) else []

    def get_positions(self) -> list[dict[str, Any]]:
        positions = self._request("GET", "/positions").get("positions", [])
        return positions if isinstance(positions, list) else []

    def get_confirmation(self, deal_reference: str) -> dict[str, Any]:
        return self._request("GET", f"/confirms/{deal_reference}", allow_404=True)

    def confirm_deal(self, deal_reference: str) -> dict[str, Any]:
        """Poll ``/confirms`` until the deal shows up; ``{}`` if it never does.

        A fresh deal reference can 404 for a short while after POST /positions.
        """
        for attempt in range(1, self.confirm_attempts + 1):
            confirmation = self.get_confirmation(deal_reference)
            if confirmation:
                return confirmation
            if attempt >= self.confirm_attempts:
                break
            delay = backoff_delay(attempt, base=self.confirm_delay_seconds, cap=self.backoff_max_seconds)
            LOGGER.info(
                "Deal %s not confirmed yet attempt=%d/%d sleep=%.2fs",
                deal_reference,
                attempt,
                self.confirm_attempts,
                delay,
            )
            time.sleep(delay)
        LOGGER.warning("Deal %s still unconfirmed after %d attempts", deal_reference, self.confirm_attempts)
        return {}

    def open_position(
        self,
        *,
        epic: str,
        direction: str,
        size: float,
        stop_level: float | None = None,
        profit_level: float | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "epic": self.resolve_epic(epic),
            "direction": direction.upper(),
            "size": size,
            "guaranteedStop": False,
        }
        if stop_level is not None:
            payload["stopLevel"] = stop_level
        if profit_level is not None:
            payload["profitLevel"] = profit_level
        return self._request("POST", "/positions", json=payload)

    def update_position(
        self,
        deal_id: str,
        *,
        stop_level: float | None = None,
        profit_level: float | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if stop_level is not None:
            payload["stopLevel"] = stop_level
        if profit_level is not None:
            payload["profitLevel"] = profit_level
        if not payload:
            return {}
        return self._request("PUT", f"/positions/{deal_id}", json=payload)

    def close_position(self, deal_id: str, size: float | None = None) -> dict[str, Any]:
        payload = {"size": size} if size is not None else None
        return self._request("DELETE", f"/positions/{deal_id}", json=payload)
