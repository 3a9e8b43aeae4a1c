"""
Client for the single mission-order PDF generator.
"""

from typing import Protocol

import httpx

from api.config.logging import get_logger
from api.config.settings import Settings
from api.v1.infra.jobs.errors import CollaboratorError, parse_retry_after

logger = get_logger(__name__)


class PdfRenderer(Protocol):
    """Renders one mission order and returns it base64 encoded."""

    async def render(self, match_id: str, official_id: str) -> str: ...


class HttpPdfRenderer:
    """Calls the generator function over HTTP with ``returnBase64`` set."""

    def __init__(
        self,
        url: str,
        token: str | None = None,
        timeout_s: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.token = token
        self.timeout_s = timeout_s
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpPdfRenderer":
        return cls(
            settings.pdf_renderer_url,
            token=settings.pdf_renderer_token,
            timeout_s=settings.pdf_renderer_timeout_s,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def render(self, match_id: str, official_id: str) -> str:
        async with httpx.AsyncClient(
            timeout=self.timeout_s, transport=self._transport
        ) as client:
            response = await client.post(
                self.url,
                json={
                    "matchId": match_id,
                    "officialId": official_id,
                    "returnBase64": True,
                },
                headers=self._headers(),
            )

        if response.status_code >= 400:
            raise CollaboratorError(
                f"PDF generator failed ({response.status_code})",
                code="render_failed",
                status_code=response.status_code,
                retry_after_s=parse_retry_after(response.headers.get("Retry-After")),
            )

        encoded = response.json().get("pdfBase64")
        if not encoded:
            raise CollaboratorError(
                "PDF generator returned no document",
                code="missing_pdf",
                status_code=response.status_code,
            )

        logger.debug(
            "pdf_renderer.rendered",
            match_id=match_id,
            official_id=official_id,
            size=len(encoded),
        )
        return encoded
