import httpx
import structlog

from common.errors import UpstreamError
from payment_service.schemas import SettlementNotice

logger = structlog.get_logger(__name__)


class SettlementDispatcher:
    """Posts a payment's terminal outcome to the order service callback endpoint."""

    def __init__(self, http_client: httpx.AsyncClient, callback_url: str, timeout: float = 5.0):
        self._http = http_client
        self._callback_url = callback_url
        self._timeout = timeout

    async def notify(self, order_id: str, payment_id: str, outcome: str) -> None:
        notice = SettlementNotice(order_id=order_id, payment_id=payment_id, payment_status=outcome)
        try:
            response = await self._http.post(
                self._callback_url, json=notice.model_dump(), timeout=self._timeout
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"callback request failed: {e}") from e

        if not response.is_success:
            raise UpstreamError(
                f"callback failed with status {response.status_code}: {response.text}",
                upstream_status=response.status_code,
            )
        logger.info("settlement_notified", order_id=order_id, payment_id=payment_id, outcome=outcome)
