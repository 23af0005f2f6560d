# file: app/services/backend_client.py
from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Protocol

import httpx

from app.config import Settings
from app.models.guardrail import GeneratedContent
from app.services.errors import DownstreamFailure

log = logging.getLogger(__name__)

# Caller auth headers preserved on the forwarded request.
FORWARDED_AUTH_HEADERS = ("authorization", "x-api-key")


class GenerativeBackend(Protocol):
    async def generate(
        self, payload: Dict[str, Any], auth_context: Mapping[str, str]
    ) -> GeneratedContent: ...


class LocalEchoBackend:
    """
    Safe default: never leaves the box. Used by CI/tests.
    """

    async def generate(
        self, payload: Dict[str, Any], auth_context: Mapping[str, str]
    ) -> GeneratedContent:
        prompt = str(payload.get("prompt") or "")
        text = f"Echo: {prompt}".strip()
        return GeneratedContent(body=text.encode("utf-8"), content_type="text/plain; charset=utf-8")


class HttpGenerativeBackend:
    """
    Forwards the original payload to the generative backend as JSON.
    - Honors the configured downstream timeout.
    - Never logs request bodies or credentials.
    - Returns the response bytes untouched together with its content type.
    """

    def __init__(
        self,
        url: str,
        timeout_s: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.timeout_s = timeout_s
        self._transport = transport

    @staticmethod
    def _headers(auth_context: Mapping[str, str]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        for k, v in auth_context.items():
            if k.lower() in FORWARDED_AUTH_HEADERS and v:
                headers[k] = v
        return headers

    async def generate(
        self, payload: Dict[str, Any], auth_context: Mapping[str, str]
    ) -> GeneratedContent:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
                r = await client.post(self.url, headers=self._headers(auth_context), json=payload)
                r.raise_for_status()
        except httpx.TimeoutException as exc:
            raise DownstreamFailure("generative backend timed out") from exc
        except httpx.HTTPStatusError as exc:
            raise DownstreamFailure(
                f"generative backend returned {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise DownstreamFailure(f"generative backend unreachable: {type(exc).__name__}") from exc
        ctype = r.headers.get("content-type") or "application/octet-stream"
        return GeneratedContent(body=r.content, content_type=ctype)


def get_backend(settings: Settings) -> GenerativeBackend:
    """
    Select the downstream by settings:
      - GENERATIVE_BACKEND_URL set => HttpGenerativeBackend
      - else => LocalEchoBackend
    """
    if not settings.GENERATIVE_BACKEND_URL:
        return LocalEchoBackend()
    return HttpGenerativeBackend(settings.GENERATIVE_BACKEND_URL, timeout_s=settings.DOWNSTREAM_TIMEOUT_S)
