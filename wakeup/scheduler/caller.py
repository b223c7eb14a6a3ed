"""HttpRemoteCaller — performs one wakeup through the remote wakeup service."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

import httpx
from pydantic import ValidationError

from wakeup.config import settings
from wakeup.scheduler.errors import RemoteCallError
from wakeup.scheduler.models import WakeupReply

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

SKIPPED_DUPLICATE_REPLY = (
    "Skipped duplicate wakeup request (recently executed for this account)."
)


class HttpRemoteCaller:
    """POSTs ``{accountId, modelId, prompt, maxOutputTokens}`` to ``{base_url}/wakeup``.

    One account is woken at most once per *duplicate_window_ms*: a second call
    inside the window succeeds immediately with a "skipped" reply instead of
    hitting the service.  A failed call releases the account so it can retry.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        duplicate_window_ms: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._base_url = (base_url or settings.wakeup_service_url).rstrip("/")
        self._token = token if token is not None else settings.wakeup_service_token
        self._timeout = timeout if timeout is not None else settings.wakeup_request_timeout
        self._duplicate_window_ms = (
            duplicate_window_ms
            if duplicate_window_ms is not None
            else settings.duplicate_wakeup_window_ms
        )
        self._transport = transport
        self._monotonic = monotonic
        self._last_wakeup_ms: dict[str, float] = {}

    def _try_reserve(self, account_id: str) -> bool:
        now = self._monotonic() * 1000
        last = self._last_wakeup_ms.get(account_id)
        if last is not None and now - last < self._duplicate_window_ms:
            return False
        self._last_wakeup_ms[account_id] = now
        return True

    def _release(self, account_id: str) -> None:
        self._last_wakeup_ms.pop(account_id, None)

    async def invoke(
        self,
        account_id: str,
        model_id: str,
        prompt: str | None,
        max_output_tokens: int,
    ) -> WakeupReply:
        if not self._try_reserve(account_id):
            logger.info(
                "Skipping duplicate wakeup call: account=%s model=%s", account_id, model_id
            )
            return WakeupReply(reply=SKIPPED_DUPLICATE_REPLY, duration_ms=0)

        try:
            return await self._post(account_id, model_id, prompt, max_output_tokens)
        except RemoteCallError:
            self._release(account_id)
            raise

    async def _post(
        self,
        account_id: str,
        model_id: str,
        prompt: str | None,
        max_output_tokens: int,
    ) -> WakeupReply:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        payload = {
            "accountId": account_id,
            "modelId": model_id,
            "prompt": prompt,
            "maxOutputTokens": max_output_tokens,
        }

        logger.info("Starting wakeup: account=%s model=%s", account_id, model_id)
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.post(f"{self._base_url}/wakeup", json=payload, headers=headers)
        except httpx.HTTPError as exc:
            msg = f"Wakeup request failed: {exc}"
            raise RemoteCallError(msg) from exc

        if resp.status_code != 200:
            msg = f"Wakeup service returned {resp.status_code}: {resp.text[:200]}"
            raise RemoteCallError(msg)

        try:
            reply = WakeupReply.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            msg = f"Wakeup service returned an invalid payload: {exc}"
            raise RemoteCallError(msg) from exc

        logger.info(
            "Wakeup completed: account=%s model=%s duration=%sms",
            account_id,
            model_id,
            reply.duration_ms,
        )
        return reply
