from typing import Any, Dict, Optional

import httpx

from ..config import get_float_setting, get_setting
from ..errors import UpstreamCollaboratorFailure


def _headers() -> Dict[str, str]:
    return {
        "Accept": "application/json",
        "User-Agent": "CampusMarket/1.0",
    }


class PriceAdvisor:
    """Client for the external price-suggestion / category-extraction service.

    Its answers are advisory. Callers that can live without them should catch
    UpstreamCollaboratorFailure and carry on.
    """

    def __init__(self, base_url: str, timeout: float = 8.0, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), transport=self.transport) as client:
                r = await client.post(f"{self.base_url}{path}", json=body, headers=_headers())
        except httpx.HTTPError as e:
            raise UpstreamCollaboratorFailure(f"price advisor unavailable: {e.__class__.__name__}")
        if r.status_code != 200:
            raise UpstreamCollaboratorFailure(f"price advisor returned {r.status_code}")
        try:
            data = r.json()
        except ValueError:
            raise UpstreamCollaboratorFailure("price advisor returned malformed data")
        if not isinstance(data, dict):
            raise UpstreamCollaboratorFailure("price advisor returned malformed data")
        return data

    async def suggest_price(
        self,
        title: str,
        description: Optional[str] = None,
        condition: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        data = await self._post("/suggest-price", {
            "product": title,
            "description": description,
            "condition": condition,
            "imageUrl": image_url,
        })
        try:
            low = float(data["minPrice"])
            high = float(data["maxPrice"])
        except (KeyError, TypeError, ValueError):
            raise UpstreamCollaboratorFailure("price advisor returned malformed data")
        out: Dict[str, Any] = {"minPrice": min(low, high), "maxPrice": max(low, high)}
        if data.get("category"):
            out["category"] = str(data["category"])
        return out


def advisor_from_settings() -> Optional[PriceAdvisor]:
    url = get_setting("PRICE_ADVISOR_URL")
    if not url:
        return None
    return PriceAdvisor(url, timeout=get_float_setting("PRICE_ADVISOR_TIMEOUT", 8.0))
