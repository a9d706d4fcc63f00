import httpx
import structlog
from pydantic import ValidationError as PydanticValidationError

from common.errors import DecodeError, NotFoundError, UpstreamError
from payment_service.schemas import OrderEnvelope

logger = structlog.get_logger(__name__)


class ReconciliationClient:
    """
    Reads an order's total from the order service so a payment amount can be
    checked before the payment is accepted.

    The HTTP client is injected; one request per call, no retries.
    """

    def __init__(self, http_client: httpx.AsyncClient, order_service_url: str, timeout: float = 5.0):
        self._http = http_client
        self._base_url = order_service_url.rstrip("/")
        self._timeout = timeout

    async def fetch_order_total(self, order_id: str) -> int:
        url = f"{self._base_url}/orders/{order_id}"
        try:
            response = await self._http.get(url, timeout=self._timeout)
        except httpx.HTTPError as e:
            logger.warning("order_total_fetch_failed", order_id=order_id, error=str(e))
            raise UpstreamError(f"failed to fetch order: {e}") from e

        if response.status_code == 404:
            raise NotFoundError("order not found")
        if not response.is_success:
            raise UpstreamError(
                f"order service returned status {response.status_code}",
                upstream_status=response.status_code,
            )

        try:
            envelope = OrderEnvelope.model_validate_json(response.content)
        except PydanticValidationError as e:
            raise DecodeError(
                "failed to decode order response", upstream_status=response.status_code
            ) from e

        logger.debug("order_total_fetched", order_id=order_id, total_amount=envelope.data.total_amount)
        return envelope.data.total_amount
