import logging
import threading
import time
from collections.abc import Callable
from decimal import Decimal
from typing import Any

import httpx
import pybreaker
import pydantic
from prometheus_client import Counter
from pydantic import BaseModel, Field
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
    wait_random,
)

from .config import Settings
from .exceptions import (
    CatalogRequestCancelled,
    InvalidUpstreamResponse,
    InventoryServiceError,
    ProductNotFound,
    ServiceUnavailable,
    UnexpectedError,
)

logger = logging.getLogger(__name__)

CATALOG_REQUESTS_TOTAL = Counter(
    "inventory_service_catalog_requests_total",
    "Catalog service request attempts by outcome",
    ["outcome"],
)

HTTP_NOT_FOUND = 404
HTTP_SERVER_ERROR = 500


class ProductInfo(BaseModel):
    id: str
    price: Decimal = Field(gt=0)
    attributes: dict[str, Any] = {}


class _CatalogProduct(BaseModel):
    id: str
    type: str | None = None
    attributes: dict[str, Any]


class _CatalogEnvelope(BaseModel):
    data: _CatalogProduct


class TransientCatalogError(Exception):
    """A failed attempt that may succeed if tried again."""


class CatalogBreakerListener(pybreaker.CircuitBreakerListener):
    def state_change(
        self,
        cb: pybreaker.CircuitBreaker,
        old_state: pybreaker.CircuitBreakerState,
        new_state: pybreaker.CircuitBreakerState,
    ) -> None:
        logger.warning(
            "CircuitBreaker '%s' state changed: '%s' -> '%s'",
            cb.name,
            old_state.name if old_state else None,
            new_state.name,
        )

    def failure(self, cb: pybreaker.CircuitBreaker, exc: BaseException) -> None:
        logger.error(
            "CircuitBreaker '%s' recorded failure. Count: %d",
            cb.name,
            cb.fail_counter,
        )


def build_breaker(fail_max: int, reset_timeout: int) -> pybreaker.CircuitBreaker | None:
    if fail_max <= 0:
        return None
    return pybreaker.CircuitBreaker(
        fail_max=fail_max,
        reset_timeout=reset_timeout,
        # terminal answers say nothing about the catalog's health
        exclude=[InventoryServiceError],
        listeners=[CatalogBreakerListener()],
        name="CATALOG",
    )


class RemoteCatalogClient:
    """Reads product identity and price from the catalog service.

    Transient failures (transport errors, timeouts, 5xx) are retried with
    exponential backoff; a 404 or any other 4xx ends the call at once. One
    instance is shared by all request threads and the httpx pool is the only
    state it carries. A circuit breaker, when given, runs guarded lookups one
    at a time through its lock, so settings leave it off by default.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 5.0,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_jitter: float = 0.0,
        breaker: pybreaker.CircuitBreaker | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["X-API-Key"] = api_key
        self.base_url = base_url
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_jitter = backoff_jitter
        self._breaker = breaker
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "RemoteCatalogClient":
        return cls(
            base_url=settings.CATALOG_SERVICE_URL,
            api_key=settings.CATALOG_API_KEY,
            timeout=settings.CATALOG_TIMEOUT,
            max_attempts=settings.CATALOG_RETRY_ATTEMPTS,
            backoff_base=settings.CATALOG_BACKOFF_BASE,
            backoff_jitter=settings.CATALOG_BACKOFF_JITTER,
            breaker=build_breaker(
                settings.CATALOG_BREAKER_FAIL_MAX,
                settings.CATALOG_BREAKER_RESET_TIMEOUT,
            ),
            **kwargs,
        )

    def fetch_product(
        self,
        product_id: str,
        cancel_event: threading.Event | None = None,
    ) -> ProductInfo:
        """Return the catalog's view of ``product_id``.

        Setting ``cancel_event`` cuts any pending backoff short and raises
        ``CatalogRequestCancelled`` instead of making further attempts.
        """
        stop = stop_after_attempt(self.max_attempts)
        sleep = self._sleep
        if cancel_event is not None:
            stop = stop | stop_when_event_set(cancel_event)

            def sleep(seconds: float) -> None:
                cancel_event.wait(seconds)

        wait = wait_exponential(multiplier=self.backoff_base, exp_base=2)
        if self.backoff_jitter > 0:
            wait = wait + wait_random(0, self.backoff_jitter)

        retrying = Retrying(
            stop=stop,
            wait=wait,
            sleep=sleep,
            retry=retry_if_exception_type(TransientCatalogError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

        logger.info("Fetching product info for: %s", product_id)
        try:
            payload = retrying(self._attempt, product_id, cancel_event)
        except TransientCatalogError as e:
            if cancel_event is not None and cancel_event.is_set():
                msg = f"Catalog lookup for product {product_id} was cancelled."
                raise CatalogRequestCancelled(msg) from e
            logger.error(
                "Catalog service unavailable for product %s after %d attempts: %s",
                product_id,
                self.max_attempts,
                e,
            )
            msg = "Catalog service is temporarily unavailable. Please try again later."
            raise ServiceUnavailable(msg) from e

        product = self._parse_product(product_id, payload)
        logger.info("Product info retrieved for: %s", product_id)
        return product

    def probe(self) -> str:
        """Single un-retried request used by health checks."""
        try:
            response = self._client.get("/api/products/health-probe")
        except httpx.TransportError:
            return "disconnected"
        if response.status_code >= HTTP_SERVER_ERROR:
            return "error"
        return "connected"

    def close(self) -> None:
        self._client.close()

    def _attempt(self, product_id: str, cancel_event: threading.Event | None) -> Any:
        if cancel_event is not None and cancel_event.is_set():
            msg = f"Catalog lookup for product {product_id} was cancelled."
            raise CatalogRequestCancelled(msg)
        if self._breaker is None:
            return self._request_product(product_id)
        try:
            return self._breaker.call(self._request_product, product_id)
        except pybreaker.CircuitBreakerError as e:
            CATALOG_REQUESTS_TOTAL.labels(outcome="circuit_open").inc()
            msg = "Catalog service is currently unavailable."
            raise ServiceUnavailable(msg) from e

    def _request_product(self, product_id: str) -> Any:
        try:
            response = self._client.get(f"/api/products/{product_id}")
        except httpx.TimeoutException as e:
            CATALOG_REQUESTS_TOTAL.labels(outcome="timeout").inc()
            raise TransientCatalogError(f"timed out: {e}") from e
        except httpx.TransportError as e:
            CATALOG_REQUESTS_TOTAL.labels(outcome="transport_error").inc()
            raise TransientCatalogError(f"connection failed: {e}") from e

        if response.status_code == HTTP_NOT_FOUND:
            CATALOG_REQUESTS_TOTAL.labels(outcome="not_found").inc()
            raise ProductNotFound(product_id)
        if response.status_code >= HTTP_SERVER_ERROR:
            CATALOG_REQUESTS_TOTAL.labels(outcome="server_error").inc()
            raise TransientCatalogError(f"catalog answered {response.status_code}")
        if response.is_error:
            CATALOG_REQUESTS_TOTAL.labels(outcome="rejected").inc()
            logger.error(
                "Catalog rejected lookup of product %s with %s: %s",
                product_id,
                response.status_code,
                response.text,
            )
            msg = f"Catalog service rejected the request with status {response.status_code}."
            raise UnexpectedError(msg)

        CATALOG_REQUESTS_TOTAL.labels(outcome="ok").inc()
        try:
            return response.json()
        except ValueError as e:
            raise InvalidUpstreamResponse("Invalid response format from catalog service") from e

    @staticmethod
    def _parse_product(product_id: str, payload: Any) -> ProductInfo:
        try:
            envelope = _CatalogEnvelope.model_validate(payload)
            return ProductInfo(
                id=envelope.data.id,
                price=envelope.data.attributes.get("price"),
                attributes=envelope.data.attributes,
            )
        except pydantic.ValidationError as e:
            logger.error("Malformed catalog payload for product %s: %s", product_id, e)
            msg = f"Invalid response format from catalog service for product {product_id}"
            raise InvalidUpstreamResponse(msg) from e
