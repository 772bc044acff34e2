from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import httpx

from roundcrank.core.contracts.ledger import LedgerClient, RandomnessOracle
from roundcrank.exceptions import (
    LedgerAuthError,
    LedgerError,
    LedgerNetworkError,
    LedgerRateLimitError,
    LedgerRejectedError,
    LedgerTimeoutError,
    OracleError,
)
from roundcrank.settings import CrankConfig

logger = logging.getLogger("roundcrank.ledger_gateway")

CONFIRMED = "confirmed"
TX_FAILED = "failed"


class HttpLedgerClient(LedgerClient, RandomnessOracle):
    """
    Ledger gateway over HTTP.

    One request per call and no retry loop: a failed read or send surfaces as a
    classified LedgerError and the next scheduled pass tries again.
    """

    def __init__(
        self,
        base_url: str,
        authority_key: str,
        *,
        oracle_url: Optional[str] = None,
        timeout_seconds: float = 10.0,
        confirm_poll_seconds: float = 0.5,
    ):
        self.base_url = base_url.rstrip("/")
        self.oracle_url = (oracle_url or base_url).rstrip("/")
        self.timeout_seconds = float(timeout_seconds)
        self.confirm_poll_seconds = max(0.05, float(confirm_poll_seconds))
        self.headers = {
            "Authorization": f"Bearer {authority_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    @classmethod
    def from_config(cls, config: CrankConfig) -> "HttpLedgerClient":
        return cls(
            config.rpc_endpoint,
            config.authority_key,
            oracle_url=config.resolved_oracle_endpoint,
            timeout_seconds=config.request_timeout_seconds,
        )

    async def _request_response(
        self,
        method: str,
        url: str,
        *,
        payload: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.request(method, url, headers=self.headers, json=payload)
                response.raise_for_status()
                return response
        except httpx.TimeoutException as exc:
            self.log_failure("timeout", operation=f"{method} {url}", error=str(exc))
            raise LedgerTimeoutError(str(exc)) from exc
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code if exc.response is not None else None
            self.log_failure("http_status", operation=f"{method} {url}", status_code=status_code, error=str(exc))
            raise self.classify_http_error(status_code=status_code, exc=exc) from exc
        except httpx.RequestError as exc:
            self.log_failure("network", operation=f"{method} {url}", error=str(exc))
            raise LedgerNetworkError(str(exc)) from exc

    async def _request_json(self, method: str, url: str, *, payload: Optional[Dict[str, Any]] = None) -> Any:
        response = await self._request_response(method, url, payload=payload)
        if not response.text.strip():
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise LedgerError(f"Malformed ledger response from {method} {url}: {exc}") from exc

    @staticmethod
    def classify_http_error(*, status_code: Optional[int], exc: Exception) -> LedgerError:
        if status_code == 429:
            return LedgerRateLimitError(str(exc))
        if status_code in {401, 403}:
            return LedgerAuthError(str(exc))
        if status_code in {409, 412, 422}:
            return LedgerRejectedError(str(exc))
        return LedgerError(str(exc))

    @staticmethod
    def log_failure(failure_class: str, **fields: Any) -> None:
        record = {
            "event": "ledger_gateway_failure",
            "failure_class": failure_class,
            **fields,
        }
        logger.warning(json.dumps(record, ensure_ascii=False))

    @staticmethod
    def _transaction_id(body: Any) -> str:
        if isinstance(body, dict):
            tx_id = body.get("transaction_id") or body.get("signature")
            if tx_id:
                return str(tx_id)
        raise LedgerError(f"Ledger did not return a transaction id: {body!r}")

    async def get_round_snapshot(self) -> Optional[Dict[str, Any]]:
        try:
            body = await self._request_json("GET", f"{self.base_url}/round")
        except LedgerError as exc:
            if isinstance(exc.__cause__, httpx.HTTPStatusError) and exc.__cause__.response.status_code == 404:
                return None
            raise
        if body is None:
            return None
        if not isinstance(body, dict):
            raise LedgerError(f"Unexpected round payload: {body!r}")
        return body

    async def close_window(self) -> str:
        body = await self._request_json("POST", f"{self.base_url}/round/close-window", payload={})
        return self._transaction_id(body)

    async def select_winner_and_payout(self, randomness_handle: Optional[str]) -> str:
        body = await self._request_json(
            "POST",
            f"{self.base_url}/round/select-winner",
            payload={"randomness_handle": randomness_handle},
        )
        return self._transaction_id(body)

    async def confirm(self, transaction_id: str, *, timeout_seconds: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, float(timeout_seconds))
        while True:
            body = await self._request_json("GET", f"{self.base_url}/transactions/{transaction_id}")
            status = str((body or {}).get("status") or "").strip().lower()
            if status == CONFIRMED:
                return True
            if status == TX_FAILED:
                return False
            if loop.time() >= deadline:
                raise LedgerTimeoutError(f"Transaction {transaction_id} not confirmed within {timeout_seconds}s")
            await asyncio.sleep(self.confirm_poll_seconds)

    async def check_fulfilled(self, randomness_handle: str) -> bool:
        try:
            body = await self._request_json("GET", f"{self.oracle_url}/randomness/{randomness_handle}")
        except LedgerError as exc:
            raise OracleError(str(exc)) from exc
        return bool((body or {}).get("fulfilled"))
