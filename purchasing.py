"""
Payment-Gated Purchases

Runs one task on the external fulfillment service end to end:

    1. Resolve the signing account (WALLET_PRIVATE_KEY), once per process
    2. POST the task through an x402 payment-capable client, which answers
       a 402 Payment Required challenge and resubmits transparently
    3. Poll GET /tasks/{task_id} until completed/failed or the attempt budget
       runs out, relaying new progress steps to the user as they appear

Usage:
    executor = PurchaseExecutor("https://tasks.example/tasks/create", notifier)
    result = await executor.purchase_product(
        "https://shop.example/jacket", "Medium", user_handle="+15551234567"
    )
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx
from x402.clients.base import PaymentError

from notifications import NotificationSink, NullNotifier

logger = logging.getLogger(__name__)


# =============================================================================
# Errors
# =============================================================================

class ConfigurationError(Exception):
    """A required credential or setting is missing or invalid."""


class PurchaseError(Exception):
    """Task creation failed, or the task reported a terminal failure."""


class PurchaseTimeoutError(PurchaseError):
    """Polling exhausted its attempt budget without a terminal status."""


# =============================================================================
# Task Model
# =============================================================================

SUCCESS_STATUSES = frozenset({"completed", "success"})
FAILURE_STATUSES = frozenset({"failed", "error"})

# (required keywords, user-facing update). First matching rule wins per step.
ProgressRules = tuple[tuple[tuple[str, ...], str], ...]

SHOPIFY_PROGRESS_RULES: ProgressRules = (
    (("adding", "cart"), "Found the item! Adding it to cart..."),
    (("checkout",), "Heading to checkout now..."),
    (("submitting",), "Almost there, submitting the order..."),
)

PURCHASE_STARTED = "Payment confirmed! I've started the purchase process for you."
RIDE_STARTED = "Ride requested and paid! Finding you a driver..."


def progress_update_for(message: str, rules: ProgressRules = SHOPIFY_PROGRESS_RULES) -> str | None:
    """Map a progress step message to a user update, or None if nothing matches."""
    if not isinstance(message, str):
        message = "" if message is None else str(message)
    lowered = message.lower()
    for keywords, update in rules:
        if all(keyword in lowered for keyword in keywords):
            return update
    return None


@dataclass
class PurchaseTask:
    """Snapshot of one fulfillment task as last reported by the task service."""
    task_id: str
    status: str = "pending"
    progress: list[dict] = field(default_factory=list)
    order_details: Any = None
    error_message: str | None = None
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, task_id: str, payload: dict) -> "PurchaseTask":
        """Parse a GET /tasks/{id} body.

        Reads current_status (falling back to status) and
        result_data.progress / result_data.order_details.
        """
        result_data = payload.get("result_data") or {}
        progress = result_data.get("progress") if isinstance(result_data, dict) else None
        status = payload.get("current_status") or payload.get("status") or "pending"
        return cls(
            task_id=task_id,
            status=str(status).lower(),
            progress=list(progress) if isinstance(progress, list) else [],
            order_details=result_data.get("order_details") if isinstance(result_data, dict) else None,
            error_message=payload.get("error_message"),
            raw=payload,
        )

    @property
    def succeeded(self) -> bool:
        return self.status in SUCCESS_STATUSES

    @property
    def failed(self) -> bool:
        return self.status in FAILURE_STATUSES


def status_url_for(task_endpoint: str, task_id: str) -> str:
    """Derive the status URL by replacing the trailing /create with the task id."""
    base = task_endpoint.rstrip("/")
    if base.endswith("/create"):
        return f"{base[:-len('/create')]}/{task_id}"
    return f"{base}/{task_id}"


# =============================================================================
# Signing & Payment Client
# =============================================================================

def load_signing_account(private_key: str | None = None, env_var: str = "WALLET_PRIVATE_KEY"):
    """Build an eth_account LocalAccount from a hex private key.

    Args:
        private_key: Hex key, with or without 0x. Defaults to the env var.
        env_var: Environment variable holding the key.

    Raises:
        ConfigurationError: If no key is configured or it cannot be parsed.
    """
    key = (private_key or os.environ.get(env_var) or "").strip()
    if not key:
        raise ConfigurationError(f"{env_var} is not set. Cannot make payment.")
    if not key.startswith("0x"):
        key = f"0x{key}"

    from eth_account import Account

    try:
        return Account.from_key(key)
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"{env_var} is not a valid private key: {e}") from e


def x402_client_factory(account, timeout: float = 30.0) -> httpx.AsyncClient:
    """Create an httpx client that settles x402 payment challenges with account."""
    from x402.clients.httpx import x402HttpxClient

    return x402HttpxClient(account=account, timeout=timeout)


# =============================================================================
# Executor
# =============================================================================

class PurchaseExecutor:
    """
    Creates payment-gated tasks and polls them to completion.

    Notifications go through a NotificationSink, so a failed delivery never
    aborts a purchase. Logical task failures raise PurchaseError; network
    hiccups while polling are retried until the attempt budget is spent.
    """

    def __init__(
        self,
        task_endpoint: str,
        notifier: NotificationSink = None,
        *,
        private_key: str | None = None,
        key_env: str = "WALLET_PRIVATE_KEY",
        poll_interval: float = 1.0,
        max_attempts: int = 120,
        request_timeout: float = 30.0,
        payment_client_factory: Callable[..., httpx.AsyncClient] = None,
        status_transport: httpx.AsyncBaseTransport = None,
    ):
        """
        Args:
            task_endpoint: Task creation URL, e.g. https://host/tasks/create
            notifier: Where progress updates go (defaults to log-only)
            private_key: Signing key; read from key_env when omitted
            poll_interval: Seconds between status polls
            max_attempts: Status polls before giving up
            request_timeout: Per-request timeout in seconds
            payment_client_factory: fn(account, timeout) -> AsyncClient (defaults to x402)
            status_transport: Optional httpx transport for status polls (tests)
        """
        self.task_endpoint = task_endpoint
        self.notifier = notifier or NullNotifier()
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.request_timeout = request_timeout
        self._private_key = private_key
        self._key_env = key_env
        self._payment_client_factory = payment_client_factory or x402_client_factory
        self._status_transport = status_transport
        self._account = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def purchase_product(self, product_url: str, variant: str = "Any", user_handle: str = None) -> dict:
        """Buy one product variant via a shopify_order task.

        Returns:
            {"success": True, "data": <final task payload>}

        Raises:
            ConfigurationError, PurchaseError, PurchaseTimeoutError
        """
        logger.info("Purchasing %s (variant: %s) for %s", product_url, variant, user_handle or "no user")
        return await self.run_task(
            "shopify_order",
            {"product_url": product_url, "size": variant},
            user_handle=user_handle,
            start_message=PURCHASE_STARTED,
        )

    async def book_ride(self, origin: str, destination: str, user_handle: str = None) -> dict:
        """Book a ride via an uber_ride task."""
        return await self.run_task(
            "uber_ride",
            {"from_address": origin, "to_address": destination},
            user_handle=user_handle,
            start_message=RIDE_STARTED,
            progress_rules=(),
        )

    async def run_task(
        self,
        task_type: str,
        input_data: dict,
        user_handle: str = None,
        start_message: str = PURCHASE_STARTED,
        progress_rules: ProgressRules = SHOPIFY_PROGRESS_RULES,
    ) -> dict:
        """Create a task on the fulfillment service and poll it to a terminal state."""
        account = self.signing_account()

        payload = await self._create_task(account, {"task_type": task_type, "input_data": input_data})
        task_id = payload.get("task_id")
        if not task_id:
            raise PurchaseError("No task_id returned from task service")

        logger.info("Task %s (%s) created, polling for completion", task_id, task_type)
        await self._notify(user_handle, start_message)

        task = await self.poll_task(
            task_id, status_url_for(self.task_endpoint, task_id), user_handle, progress_rules
        )

        await self._notify(user_handle, f"Success! Order placed. {_summarize_order(task.order_details)}")
        return {"success": True, "data": task.raw}

    async def pay_for_service(self, url: str, method: str = "POST", data: dict = None,
                              user_handle: str = None) -> dict:
        """Call an arbitrary x402-gated endpoint.

        If the service answers with a task_id the task is polled to completion
        and the final status payload is returned instead.
        """
        account = self.signing_account()
        method = method.upper()
        body = None if method in ("GET", "HEAD") else (data or {})

        try:
            async with self._payment_client(account) as client:
                response = await client.request(method, url, json=body)
        except (httpx.HTTPError, PaymentError) as e:
            raise PurchaseError(f"Request failed: {e}") from e
        if response.status_code >= 400:
            raise PurchaseError(f"Request failed with status {response.status_code}: {response.text}")

        result = _json_or_raw(response)
        task_id = result.get("task_id") if isinstance(result, dict) else None
        if task_id:
            await self._notify(user_handle, PURCHASE_STARTED)
            task = await self.poll_task(task_id, status_url_for(url, task_id), user_handle)
            result = task.raw

        return {
            "success": True,
            "status_code": response.status_code,
            "wallet": getattr(account, "address", None),
            "data": result,
        }

    def signing_account(self):
        """Return the cached signing account, loading it on first use."""
        if self._account is None:
            self._account = load_signing_account(self._private_key, self._key_env)
            logger.info("Using wallet %s for payments", getattr(self._account, "address", "?"))
        return self._account

    # -------------------------------------------------------------------------
    # Task lifecycle
    # -------------------------------------------------------------------------

    async def _create_task(self, account, body: dict) -> dict:
        try:
            async with self._payment_client(account) as client:
                response = await client.post(self.task_endpoint, json=body)
        except (httpx.HTTPError, PaymentError) as e:
            raise PurchaseError(f"Payment/Task failed: {e}") from e

        if response.status_code >= 400:
            raise PurchaseError(f"Payment/Task failed: {response.status_code} {response.text}")

        payload = _json_or_raw(response)
        return payload if isinstance(payload, dict) else {}

    async def poll_task(
        self,
        task_id: str,
        status_url: str,
        user_handle: str = None,
        progress_rules: ProgressRules = SHOPIFY_PROGRESS_RULES,
    ) -> PurchaseTask:
        """Poll a task until terminal.

        Only progress steps appended since the previous poll are inspected,
        so no step is ever announced twice.

        Raises:
            PurchaseError: The task reported failed/error.
            PurchaseTimeoutError: max_attempts polls without a terminal status.
        """
        seen = 0

        async with httpx.AsyncClient(timeout=self.request_timeout, transport=self._status_transport) as client:
            for attempt in range(1, self.max_attempts + 1):
                await asyncio.sleep(self.poll_interval)

                try:
                    response = await client.get(status_url)
                    response.raise_for_status()
                    payload = response.json()
                except (httpx.HTTPError, ValueError) as e:
                    logger.warning("Status check %d/%d for task %s failed: %s. Retrying...",
                                   attempt, self.max_attempts, task_id, e)
                    continue

                if not isinstance(payload, dict):
                    logger.warning("Unexpected status payload for task %s: %r", task_id, payload)
                    continue

                task = PurchaseTask.from_payload(task_id, payload)
                logger.debug("Task %s status: %s (attempt %d)", task_id, task.status, attempt)

                new_steps = task.progress[seen:]
                seen = max(seen, len(task.progress))
                for step in new_steps:
                    message = step.get("message", "") if isinstance(step, dict) else str(step)
                    logger.info("Task %s progress: %s", task_id, message)
                    update = progress_update_for(message, progress_rules)
                    if update:
                        await self._notify(user_handle, update)

                if task.succeeded:
                    logger.info("Task %s completed", task_id)
                    return task
                if task.failed:
                    raise PurchaseError(task.error_message or "Task failed")

        raise PurchaseTimeoutError(f"Task timed out after {self.max_attempts} status checks")

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _payment_client(self, account) -> httpx.AsyncClient:
        return self._payment_client_factory(account, timeout=self.request_timeout)

    async def _notify(self, user_handle: str | None, text: str):
        if user_handle:
            await self.notifier.notify(user_handle, text)


def _json_or_raw(response: httpx.Response):
    try:
        return response.json()
    except ValueError:
        return {"raw": response.text}


def _summarize_order(order_details) -> str:
    if not order_details:
        return "Check email for confirmation."
    if isinstance(order_details, str):
        return order_details
    return json.dumps(order_details)
