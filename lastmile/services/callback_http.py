from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Mapping

import httpx

from lastmile.core.config import settings
from lastmile.core.errors import TransientDeliveryError


@dataclass(frozen=True)
class HttpResult:
    ok: bool
    status_code: int | None
    detail: dict[str, Any]

    error_code: str | None = None
    error_message: str | None = None

    elapsed_ms: int | None = None


def _is_json_response(resp: httpx.Response) -> bool:
    ct = (resp.headers.get("content-type") or "").lower()
    return "application/json" in ct or ct.endswith("+json")


def _cap_text(s: str, *, max_chars: int) -> str:
    if len(s) <= max_chars:
        return s
    return s[:max_chars] + f"...(truncated, {len(s)} chars)"


class CallbackHttpClient:
    """
    HTTP client for tenant callback endpoints.

    - One AsyncClient per instance (connection pooling); close with aclose() or `async with`.
    - Single attempt per call. Retries are scheduled by services/callbacks.py.
    - Every non-2xx status and every transport error is a failed result; all of them are retried.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float | None = None,
        max_response_body_chars: int = 4_000,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.callback_timeout_seconds
        self._max_body = max_response_body_chars
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds), transport=transport)

    async def __aenter__(self) -> "CallbackHttpClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def post_json(
        self,
        *,
        url: str,
        json_body: dict[str, Any],
        bearer_token: str | None = None,
        headers: Mapping[str, str] | None = None,
        request_id: str | None = None,
    ) -> HttpResult:
        h = {"Accept": "application/json"}
        if headers:
            h.update(dict(headers))
        if bearer_token:
            h["Authorization"] = f"Bearer {bearer_token}"
        if request_id and "X-Request-Id" not in h:
            h["X-Request-Id"] = request_id

        started = time.monotonic()
        try:
            resp = await self._client.post(url, headers=h, json=json_body)
        except httpx.TimeoutException:
            err = TransientDeliveryError.timeout(url, self.timeout_seconds)
            return HttpResult(
                ok=False,
                status_code=None,
                detail={"error": "timeout"},
                error_code=err.error_code,
                error_message=err.message,
                elapsed_ms=int((time.monotonic() - started) * 1000),
            )
        except httpx.RequestError as e:
            # DNS errors, connection refused, TLS, etc.
            err = TransientDeliveryError.network_error(url, str(e) or type(e).__name__)
            return HttpResult(
                ok=False,
                status_code=None,
                detail={"error": "request_error"},
                error_code=err.error_code,
                error_message=err.message,
                elapsed_ms=int((time.monotonic() - started) * 1000),
            )

        elapsed_ms = int((time.monotonic() - started) * 1000)

        detail: dict[str, Any]
        if _is_json_response(resp):
            try:
                parsed = resp.json()
                detail = parsed if isinstance(parsed, dict) else {"data": parsed}
            except ValueError:
                detail = {"raw": _cap_text(resp.text, max_chars=self._max_body)}
        else:
            detail = {"raw": _cap_text(resp.text, max_chars=self._max_body)} if resp.text else {}

        if 200 <= resp.status_code < 300:
            return HttpResult(ok=True, status_code=resp.status_code, detail=detail, elapsed_ms=elapsed_ms)

        err = TransientDeliveryError.send_failed(url, resp.status_code)
        return HttpResult(
            ok=False,
            status_code=resp.status_code,
            detail=detail,
            error_code=err.error_code,
            error_message=err.message,
            elapsed_ms=elapsed_ms,
        )
