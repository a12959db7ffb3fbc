import logging
from typing import Optional
import httpx

from crm_webhook.schemas import StoredRow

logger = logging.getLogger(__name__)


class CrmForwarder:
    """Best-effort push of newly stored payments to an external CRM API."""

    def __init__(self, url: str, api_key: Optional[str] = None, timeout: float = 5.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.url = url
        self._client = httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def forward(self, row: StoredRow) -> bool:
        try:
            response = await self._client.post(self.url, json=row.model_dump(mode="json"))
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "CRM forward failed payment_id=%s status=%s body=%s",
                row.payment_id, e.response.status_code, e.response.text[:500],
            )
            return False
        except httpx.HTTPError as e:
            logger.error("CRM forward failed payment_id=%s error=%s: %s", row.payment_id, type(e).__name__, e)
            return False

        logger.info("forwarded payment_id=%s status=%s", row.payment_id, response.status_code)
        return True

    async def close(self):
        await self._client.aclose()
