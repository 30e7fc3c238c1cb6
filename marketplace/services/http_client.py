from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping

import httpx


HttpMethod = Literal["GET", "POST"]

# Worth another attempt later; every other 4xx/5xx is final.
RETRYABLE_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})


@dataclass(frozen=True)
class HttpResult:
    ok: bool
    status_code: int | None
    detail: dict[str, Any] = field(default_factory=dict)

    error_code: str | None = None
    error_message: str | None = None
    retryable: bool = False

    elapsed_ms: int | None = None

    @classmethod
    def transport_failure(cls, code: str, exc: Exception) -> "HttpResult":
        # no response at all: always retryable
        return cls(ok=False, status_code=None, detail={"error": code.lower()}, error_code=code, error_message=str(exc), retryable=True)


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else f"{text[:limit]}...(truncated, {len(text)} chars)"


def _body_of(resp: httpx.Response, limit: int) -> dict[str, Any]:
    content_type = (resp.headers.get("content-type") or "").lower()
    if "json" in content_type:
        try:
            parsed = resp.json()
        except ValueError:
            return {"raw": _truncate(resp.text, limit)}
        return parsed if isinstance(parsed, dict) else {"data": parsed}
    return {"raw": _truncate(resp.text, limit), "content_type": content_type or None}


class ServiceHttpClient:
    """
    Outbound calls to the payment gateway API and the email API.

    One pooled AsyncClient per instance. Nothing is retried here: callers get
    an HttpResult saying whether a retry makes sense and decide themselves
    (the Celery tasks back off, the gateway lookup just reports "unknown").
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 20.0,
        max_response_body_chars: int = 20_000,
        default_headers: Mapping[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._max_body = max_response_body_chars
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            headers=dict(default_headers or {}),
            transport=transport,
        )

    async def __aenter__(self) -> "ServiceHttpClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request_json(
        self,
        *,
        method: HttpMethod,
        url: str,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, str] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> HttpResult:
        try:
            resp = await self._client.request(method, url, headers=headers, params=params, json=json_body)
        except httpx.TimeoutException as e:
            return HttpResult.transport_failure("TIMEOUT", e)
        except httpx.RequestError as e:
            # DNS, refused connections, TLS
            return HttpResult.transport_failure("REQUEST_ERROR", e)

        detail = _body_of(resp, self._max_body)
        elapsed_ms = int(resp.elapsed.total_seconds() * 1000)
        if resp.is_success:
            return HttpResult(ok=True, status_code=resp.status_code, detail=detail, elapsed_ms=elapsed_ms)
        return HttpResult(
            ok=False,
            status_code=resp.status_code,
            detail=detail,
            error_code=f"HTTP_{resp.status_code}",
            error_message=resp.reason_phrase or f"HTTP {resp.status_code}",
            retryable=resp.status_code in RETRYABLE_STATUSES,
            elapsed_ms=elapsed_ms,
        )

    async def get_json(self, *, url: str, headers: Mapping[str, str] | None = None, params: Mapping[str, str] | None = None) -> HttpResult:
        return await self.request_json(method="GET", url=url, headers=headers, params=params)

    async def post_json(self, *, url: str, headers: Mapping[str, str] | None = None, json_body: dict[str, Any] | None = None) -> HttpResult:
        return await self.request_json(method="POST", url=url, headers=headers, json_body=json_body)
