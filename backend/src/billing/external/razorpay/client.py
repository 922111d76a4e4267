"""
Razorpay API Client

`RazorpayClient` speaks the Razorpay REST API over httpx (basic auth with the
key id / secret). `RazorpayAPIWrapper` is what the rest of the billing module
uses: every outbound call goes through retry with exponential backoff and
then the circuit breaker.

Usage:
    from backend.src.billing.external.razorpay import razorpay_api

    subscription = await razorpay_api.fetch_subscription("sub_123")
"""

import asyncio
import functools
import hashlib
import hmac
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from backend.core.conf import settings
from backend.src.billing.shared.exceptions import UpstreamUnavailableError

from .circuit_breaker import RazorpayCircuitBreaker
from .retry import call_with_retry

logger = logging.getLogger(__name__)


class RazorpayClient:
    """
    Thin async client for the Razorpay endpoints the subscription core needs.

    Every non-2xx answer, timeout or transport error is raised as
    `UpstreamUnavailableError`; `upstream_status` is set when Razorpay answered.
    """

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.key_id = key_id if key_id is not None else settings.RAZORPAY_KEY_ID
        self.key_secret = key_secret if key_secret is not None else settings.RAZORPAY_KEY_SECRET
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.RAZORPAY_WEBHOOK_SECRET
        self.base_url = (base_url or settings.RAZORPAY_API_BASE_URL).rstrip('/')
        self.timeout = timeout or settings.RAZORPAY_TIMEOUT_SECONDS
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    def _get_http(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
                transport=self._transport,
                headers={'Content-Type': 'application/json'},
            )
        return self._http

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        if not self.key_id or not self.key_secret:
            raise UpstreamUnavailableError(
                message="Razorpay credentials are not configured",
                code="RAZORPAY_NOT_CONFIGURED",
            )

        try:
            response = await self._get_http().request(method, path, json=json, params=params)
        except httpx.TimeoutException as e:
            raise UpstreamUnavailableError(
                message=f"Razorpay request timed out: {method} {path}",
                code="RAZORPAY_TIMEOUT",
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(
                message=f"Razorpay request failed: {method} {path}: {e}",
            ) from e

        if response.status_code >= 400:
            try:
                error = response.json().get('error') or {}
            except ValueError:
                error = {'description': response.text[:500]}
            raise UpstreamUnavailableError(
                message=error.get('description') or f"Razorpay returned HTTP {response.status_code}",
                upstream_status=response.status_code,
                provider_error=error,
            )

        return response.json()

    # -------------------------------------------------------------------------
    # Subscription Operations
    # -------------------------------------------------------------------------

    async def create_subscription(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a subscription.

        Args:
            payload: plan_id, total_count, quantity, customer_notify, notes

        Returns:
            Razorpay subscription entity (id, status, short_url, ...)
        """
        return await self._request('POST', '/subscriptions', json=payload)

    async def cancel_subscription(self, subscription_id: str, at_cycle_end: bool = False) -> Dict[str, Any]:
        return await self._request(
            'POST',
            f'/subscriptions/{subscription_id}/cancel',
            json={'cancel_at_cycle_end': 1 if at_cycle_end else 0},
        )

    async def fetch_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self._request('GET', f'/subscriptions/{subscription_id}')

    # -------------------------------------------------------------------------
    # Invoice Operations
    # -------------------------------------------------------------------------

    async def fetch_pending_invoices(self, subscription_id: str) -> List[Dict[str, Any]]:
        """Invoices of the subscription still waiting for payment."""
        result = await self._request(
            'GET',
            '/invoices',
            params={'subscription_id': subscription_id, 'status': 'issued'},
        )
        invoices = result.get('items', [])
        logger.info(f"[RAZORPAY] Found {len(invoices)} pending invoices for subscription {subscription_id}")
        return invoices

    async def charge_invoice(self, invoice_id: str) -> Dict[str, Any]:
        """
        Push an issued invoice for payment.

        Returns:
            The invoice entity after the attempt (unchanged if it was not issued)
        """
        invoice = await self._request('GET', f'/invoices/{invoice_id}')
        if invoice.get('status') != 'issued':
            return invoice

        updated = await self._request('POST', f'/invoices/{invoice_id}/issue')
        logger.info(f"[RAZORPAY] Invoice {invoice_id} has been issued for payment")
        return updated

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """
        Check the X-Razorpay-Signature header: hex HMAC-SHA256 of the raw body
        keyed with the webhook secret.
        """
        if not signature or not self.webhook_secret:
            return False

        expected = hmac.new(
            self.webhook_secret.encode('utf-8'),
            raw_body,
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, signature)


class RazorpayAPIWrapper:
    """
    Safe wrapper for Razorpay API calls with retry and circuit breaker protection.

    The breaker sees one outcome per call, after retries are exhausted.
    """

    def __init__(
        self,
        client: Optional[RazorpayClient] = None,
        circuit_breaker: Optional[RazorpayCircuitBreaker] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        sleep: Callable = asyncio.sleep
    ):
        self.client = client or RazorpayClient()
        self.circuit_breaker = circuit_breaker or RazorpayCircuitBreaker(
            failure_threshold=settings.RAZORPAY_CIRCUIT_FAILURE_THRESHOLD,
            recovery_timeout=settings.RAZORPAY_CIRCUIT_RECOVERY_TIMEOUT,
        )
        self.max_attempts = max_attempts or settings.RAZORPAY_RETRY_MAX_ATTEMPTS
        self.base_delay = base_delay if base_delay is not None else settings.RAZORPAY_RETRY_BASE_DELAY_SECONDS
        self._sleep = sleep

    @property
    def is_available(self) -> bool:
        """False while the circuit is open and calls would fail fast."""
        return not self.circuit_breaker.is_open

    async def safe_razorpay_call(self, func: Callable, *args, **kwargs) -> Any:
        """
        Execute a Razorpay API call with retry, then circuit breaker accounting.

        Args:
            func: Async client method
            *args: Positional arguments
            **kwargs: Keyword arguments

        Returns:
            Result from Razorpay
        """
        operation = functools.partial(func, *args, **kwargs)
        return await self.circuit_breaker.safe_call(
            call_with_retry,
            operation,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            sleep=self._sleep,
            operation_name=getattr(func, '__name__', 'razorpay call'),
        )

    def get_circuit_status(self) -> Dict:
        """Get the current circuit breaker status."""
        return self.circuit_breaker.get_status()

    async def create_subscription(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.safe_razorpay_call(self.client.create_subscription, payload)

    async def cancel_subscription(self, subscription_id: str, at_cycle_end: bool = False) -> Dict[str, Any]:
        return await self.safe_razorpay_call(self.client.cancel_subscription, subscription_id, at_cycle_end)

    async def fetch_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self.safe_razorpay_call(self.client.fetch_subscription, subscription_id)

    async def fetch_pending_invoices(self, subscription_id: str) -> List[Dict[str, Any]]:
        return await self.safe_razorpay_call(self.client.fetch_pending_invoices, subscription_id)

    async def charge_invoice(self, invoice_id: str) -> Dict[str, Any]:
        return await self.safe_razorpay_call(self.client.charge_invoice, invoice_id)

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        return self.client.verify_webhook_signature(raw_body, signature)


# Global API wrapper instance
razorpay_api = RazorpayAPIWrapper()
