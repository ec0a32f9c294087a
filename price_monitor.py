"""
Price-Triggered Purchases: the monitor

A MonitorRegistry owns every standing "buy X when SYMBOL drops below Y"
intent and runs one shared polling loop over them:

    watching --(price < threshold)--> triggered + removed   (purchase dispatched once)
    watching --(unknown upstream)---> removed               (stale, silent)
    watching --(too old / failing)--> removed               (user told)
    watching --(cancel)-------------> removed

Design principles:
- One timer loop for all sessions, started lazily, stopped explicitly
- At most one purchase per session: the session leaves the registry
  before the purchase is dispatched
- A purchase never blocks the loop; it runs as a supervised task whose
  handle stays in `registry.purchases`
- One session's failure never affects the others
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable

import httpx

from notifications import NotificationSink
from purchasing import PurchaseTimeoutError
from utils.events import EventEmitter

logger = logging.getLogger(__name__)


SUPPORTED_SYMBOLS = (
    "BTC/USD", "ETH/USD", "SOL/USD", "BNB/USD", "AVAX/USD", "MATIC/USD",
    "ARB/USD", "OP/USD", "DOGE/USD", "ADA/USD", "DOT/USD", "LINK/USD",
    "UNI/USD", "ATOM/USD", "XRP/USD", "LTC/USD", "APT/USD", "SUI/USD",
    "TRX/USD", "NEAR/USD",
)

DEFAULT_POLL_INTERVAL = 10.0
DEFAULT_UPDATE_INTERVAL = 10
MAX_FINISHED_PURCHASES = 100


def normalize_symbol(symbol: str) -> str:
    """Uppercase a symbol and quote it against USD when no pair is given.

    Examples:
        normalize_symbol("eth") -> "ETH/USD"
        normalize_symbol("btc/usd") -> "BTC/USD"
    """
    symbol = (symbol or "").strip().upper()
    if "/" not in symbol:
        symbol = f"{symbol}/USD"
    return symbol


def format_price(value: float) -> str:
    """Render a price without a trailing .0 (2400.0 -> "2400")."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


# =============================================================================
# Errors
# =============================================================================

class RegistrationError(Exception):
    """The price feed refused or failed to start a watch."""


class SessionNotFound(Exception):
    """The price feed no longer knows this session."""


class PriceFeedError(Exception):
    """A transient price feed failure (network, bad payload, 5xx)."""


# =============================================================================
# Data Models
# =============================================================================

@dataclass
class PriceStatus:
    """One status reading for a watch session."""
    symbol: str
    price: float
    threshold: float
    is_below_threshold: bool

    @classmethod
    def from_payload(cls, data: dict) -> "PriceStatus":
        return cls(
            symbol=str(data.get("symbol", "")),
            price=float(data["price"]),
            threshold=float(data.get("threshold", math.nan)),
            is_below_threshold=_parse_flag(data.get("is_below_threshold", False)),
        )


def _parse_flag(value) -> bool:
    """Read a JSON boolean; "true"/"false" strings are accepted, anything else is malformed."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ValueError(f"is_below_threshold must be a boolean, got {value!r}")


@dataclass
class MonitorSession:
    """
    One user's standing price-triggered purchase intent.

    In-memory only. Owned by MonitorRegistry; removed exactly once.
    """
    session_id: str
    user_handle: str
    symbol: str
    threshold: float
    product_url: str
    variant: str = "Any"
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    # Polling state
    last_price: float | None = None
    last_checked_at: datetime | None = None
    consecutive_failures: int = 0

    def age_seconds(self, now: datetime = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        d = asdict(self)
        d["started_at"] = self.started_at.isoformat()
        d["last_checked_at"] = self.last_checked_at.isoformat() if self.last_checked_at else None
        return d


# =============================================================================
# Price Feed
# =============================================================================

@runtime_checkable
class PriceFeed(Protocol):
    """External price watch service."""

    async def start(self, symbol: str, threshold: float, update_interval: int) -> str:
        ...

    async def status(self, session_id: str) -> PriceStatus:
        ...

    async def stop(self, session_id: str) -> None:
        ...


class HttpPriceFeed:
    """
    PriceFeed over the monitoring service's JSON API.

    Endpoints (relative to base_url):
        POST /api/monitor/start          {symbol, threshold, update_interval} -> {session_id}
        GET  /api/monitor/{id}           -> {data: {symbol, price, threshold, is_below_threshold}}
        POST /api/monitor/{id}/stop
        GET  /api/price/{symbol}         -> {success, symbol, price, timestamp}
    """

    def __init__(self, base_url: str, timeout: float = 15.0, transport: httpx.AsyncBaseTransport = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def start(self, symbol: str, threshold: float, update_interval: int = DEFAULT_UPDATE_INTERVAL) -> str:
        try:
            async with self._client() as client:
                response = await client.post(
                    "/api/monitor/start",
                    json={"symbol": symbol, "threshold": float(threshold), "update_interval": update_interval},
                )
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise RegistrationError(f"Price feed rejected watch for {symbol}: {e}") from e

        session_id = payload.get("session_id") if isinstance(payload, dict) else None
        if not session_id:
            raise RegistrationError("Failed to get session_id from monitoring API")
        return str(session_id)

    async def status(self, session_id: str) -> PriceStatus:
        try:
            async with self._client() as client:
                response = await client.get(f"/api/monitor/{session_id}")
        except httpx.HTTPError as e:
            raise PriceFeedError(str(e)) from e

        if response.status_code == 404:
            raise SessionNotFound(session_id)
        if response.status_code >= 400:
            raise PriceFeedError(f"status {response.status_code}: {response.text[:200]}")

        try:
            data = response.json().get("data")
            if not data:
                raise PriceFeedError(f"No data in status response for {session_id}")
            return PriceStatus.from_payload(data)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise PriceFeedError(f"Malformed status response for {session_id}: {e}") from e

    async def stop(self, session_id: str) -> None:
        try:
            async with self._client() as client:
                response = await client.post(f"/api/monitor/{session_id}/stop")
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise PriceFeedError(f"Failed to stop session {session_id}: {e}") from e

    async def get_price(self, symbol: str) -> dict:
        """Spot price lookup: {success, symbol, price, timestamp}."""
        async with self._client() as client:
            response = await client.get(f"/api/price/{normalize_symbol(symbol)}")
            response.raise_for_status()
            return response.json()


# =============================================================================
# Registry
# =============================================================================

class Purchaser(Protocol):
    async def purchase_product(self, product_url: str, variant: str, user_handle: str = None) -> dict:
        ...


class MonitorRegistry(EventEmitter):
    """
    The set of active watch sessions plus the loop that polls them.

    Usage:
        registry = MonitorRegistry(HttpPriceFeed(url), executor, notifier)
        session_id = await registry.start_monitoring(
            "ETH/USD", 2500, "+15551234567", "https://shop.example/jacket", "Medium"
        )
        ...
        await registry.stop_polling()

    Events emitted:
    - monitor_started: {"session_id", "symbol", "threshold", "user_handle"}
    - monitor_triggered: {"session_id", "symbol", "price", "threshold", "user_handle"}
    - monitor_removed: {"session_id", "reason"}
    - purchase_end: {"session_id", "status", "error"}
    """

    def __init__(
        self,
        feed: PriceFeed,
        purchaser: Purchaser,
        notifier: NotificationSink,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        update_interval: int = DEFAULT_UPDATE_INTERVAL,
        max_session_age: float | None = 24 * 3600,
        max_consecutive_failures: int | None = 360,
        max_finished_purchases: int = MAX_FINISHED_PURCHASES,
    ):
        """
        Args:
            feed: Price watch service
            purchaser: Object with async purchase_product(product_url, variant, user_handle)
            notifier: Best-effort user notifications
            poll_interval: Seconds between loop ticks
            update_interval: Update interval suggested to the feed on registration
            max_session_age: Seconds before an untriggered session expires (None = never)
            max_consecutive_failures: Failed status queries in a row before a session is dropped (None = never)
            max_finished_purchases: Finished purchase handles kept for inspection; older ones are dropped
        """
        self.__init_events__()
        self.feed = feed
        self.purchaser = purchaser
        self.notifier = notifier
        self.poll_interval = poll_interval
        self.update_interval = update_interval
        self.max_session_age = max_session_age
        self.max_consecutive_failures = max_consecutive_failures
        self.max_finished_purchases = max_finished_purchases

        self.sessions: dict[str, MonitorSession] = {}
        self.purchases: dict[str, asyncio.Task] = {}
        self._running = False
        self._timer_task: asyncio.Task | None = None
        self._checking: set[str] = set()
        self._lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Session Management API
    # -------------------------------------------------------------------------

    async def start_monitoring(
        self,
        symbol: str,
        threshold: float,
        user_handle: str,
        product_url: str,
        variant: str = "Any",
    ) -> str:
        """Register a watch with the feed and start tracking it.

        Returns:
            The feed-assigned session id.

        Raises:
            RegistrationError: Bad input, or the feed refused/failed. Nothing is stored.
        """
        symbol = normalize_symbol(symbol)
        if symbol not in SUPPORTED_SYMBOLS:
            raise RegistrationError(f"Unsupported symbol {symbol}. Supported: {', '.join(SUPPORTED_SYMBOLS)}")
        try:
            threshold = float(threshold)
        except (TypeError, ValueError) as e:
            raise RegistrationError(f"Threshold must be a number, got {threshold!r}") from e
        if not math.isfinite(threshold):
            raise RegistrationError(f"Threshold must be a finite number, got {threshold!r}")
        if not user_handle:
            raise RegistrationError("A user handle is required for notifications")

        logger.info("Starting monitor for %s: %s < %s", user_handle, symbol, threshold)

        try:
            session_id = await self.feed.start(symbol, threshold, self.update_interval)
        except RegistrationError:
            raise
        except Exception as e:
            raise RegistrationError(f"Failed to start monitoring {symbol}: {e}") from e
        if not session_id:
            raise RegistrationError("Failed to get session_id from monitoring API")

        session = MonitorSession(
            session_id=session_id,
            user_handle=user_handle,
            symbol=symbol,
            threshold=threshold,
            product_url=product_url,
            variant=variant or "Any",
        )
        async with self._lock:
            self.sessions[session_id] = session

        self.ensure_polling()
        self.emit("monitor_started", {
            "session_id": session_id,
            "symbol": symbol,
            "threshold": threshold,
            "user_handle": user_handle,
        })
        return session_id

    async def cancel_monitoring(self, session_id: str, user_handle: str = None) -> bool:
        """Stop one session.

        Args:
            session_id: Session to cancel
            user_handle: If given, only cancel when this user owns the session

        Returns:
            True if the session was removed.
        """
        async with self._lock:
            session = self.sessions.get(session_id)
            if session is None or (user_handle and session.user_handle != user_handle):
                return False
            del self.sessions[session_id]

        await self._stop_upstream(session_id)
        self.emit("monitor_removed", {"session_id": session_id, "reason": "cancelled"})
        return True

    def get(self, session_id: str) -> MonitorSession | None:
        return self.sessions.get(session_id)

    def list_sessions(self, user_handle: str = None) -> list[MonitorSession]:
        """List sessions, oldest first, optionally only one user's."""
        sessions = [
            s for s in self.sessions.values()
            if user_handle is None or s.user_handle == user_handle
        ]
        return sorted(sessions, key=lambda s: s.started_at)

    def purchase_status(self, session_id: str) -> dict | None:
        """Inspect the supervised purchase dispatched for a session."""
        task = self.purchases.get(session_id)
        if task is None:
            return None
        if not task.done():
            return {"session_id": session_id, "status": "running"}
        if task.cancelled():
            return {"session_id": session_id, "status": "cancelled"}
        return {"session_id": session_id, **task.result()}

    @property
    def is_polling(self) -> bool:
        return self._running

    # -------------------------------------------------------------------------
    # Polling Loop
    # -------------------------------------------------------------------------

    def ensure_polling(self) -> bool:
        """Start the shared loop if it is not already running.

        Returns:
            True if this call started it.
        """
        if self._running:
            return False

        self._running = True
        self._timer_task = asyncio.create_task(self._run_loop(), name="price-monitor-loop")
        logger.info("Price monitor loop started (every %ss)", self.poll_interval)
        return True

    async def stop_polling(self, cancel_purchases: bool = False):
        """Stop the loop. Safe to call when it is not running.

        Args:
            cancel_purchases: Also cancel purchases still in flight (shutdown).
        """
        self._running = False
        if self._timer_task:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None

        if cancel_purchases:
            pending = [t for t in self.purchases.values() if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    async def _run_loop(self):
        """Main loop: sleep, then check every session."""
        while self._running:
            try:
                await asyncio.sleep(self.poll_interval)
                await self.check_sessions()
            except asyncio.CancelledError:
                break
            except Exception as e:
                # check_sessions isolates per-session errors; this is a last resort
                logger.error("Price monitor loop error: %s", e)

    async def check_sessions(self):
        """Run one tick over a snapshot of the current sessions."""
        async with self._lock:
            snapshot = list(self.sessions.values())

        if snapshot:
            logger.debug("Checking %d price monitor session(s)", len(snapshot))

        for session in snapshot:
            try:
                await self._check_session(session)
            except Exception as e:
                logger.error("Error checking session %s: %s", session.session_id, e)

    async def _check_session(self, session: MonitorSession):
        session_id = session.session_id

        # Never overlap two checks of the same session
        if session_id in self._checking or session_id not in self.sessions:
            return
        self._checking.add(session_id)

        try:
            if self.max_session_age is not None and session.age_seconds() >= self.max_session_age:
                await self._retire(
                    session, "expired",
                    f"I've stopped watching {session.symbol} for you: it didn't drop below "
                    f"${format_price(session.threshold)} in time, so I won't buy the item.",
                )
                return

            try:
                status = await self.feed.status(session_id)
            except SessionNotFound:
                logger.info("Session %s no longer exists upstream, removing", session_id)
                async with self._lock:
                    removed = self.sessions.pop(session_id, None)
                if removed is not None:
                    self.emit("monitor_removed", {"session_id": session_id, "reason": "stale"})
                return
            except Exception as e:
                session.consecutive_failures += 1
                logger.warning("Price check for session %s failed (%d in a row): %s",
                               session_id, session.consecutive_failures, e)
                if (self.max_consecutive_failures is not None
                        and session.consecutive_failures >= self.max_consecutive_failures):
                    await self._retire(
                        session, "failures",
                        f"I couldn't reach the price service for {session.symbol}, "
                        f"so I've stopped watching it. Ask me again to restart the monitor.",
                    )
                return

            session.consecutive_failures = 0
            session.last_price = status.price
            session.last_checked_at = datetime.now(timezone.utc)
            logger.debug("Session %s: %s price=%s threshold=%s below=%s", session_id,
                         session.symbol, status.price, session.threshold, status.is_below_threshold)

            if status.is_below_threshold:
                await self._trigger(session, status)
        finally:
            self._checking.discard(session_id)

    async def _trigger(self, session: MonitorSession, status: PriceStatus):
        session_id = session.session_id

        # Leaving the registry is the at-most-once gate
        async with self._lock:
            if self.sessions.pop(session_id, None) is None:
                return

        logger.info("Price target hit for %s: %s at %s (limit %s)",
                    session.user_handle, session.symbol, status.price, session.threshold)
        self.emit("monitor_triggered", {
            "session_id": session_id,
            "symbol": session.symbol,
            "price": status.price,
            "threshold": session.threshold,
            "user_handle": session.user_handle,
        })

        await self.notifier.notify(
            session.user_handle,
            f"🚨 PRICE ALERT: {session.symbol} is now ${format_price(status.price)} "
            f"(below your limit of ${format_price(session.threshold)}). Initiating purchase of your item!",
        )

        self._prune_purchases()
        self.purchases[session_id] = asyncio.create_task(
            self._supervise_purchase(session), name=f"purchase:{session_id}"
        )

        await self._stop_upstream(session_id)
        self.emit("monitor_removed", {"session_id": session_id, "reason": "triggered"})

    async def _supervise_purchase(self, session: MonitorSession) -> dict:
        """Run one purchase; log and report failures instead of raising them."""
        try:
            result = await self.purchaser.purchase_product(
                session.product_url, session.variant, session.user_handle
            )
        except Exception as e:
            timed_out = isinstance(e, PurchaseTimeoutError)
            if timed_out:
                logger.error("Purchase for session %s timed out: %s", session.session_id, e)
            else:
                logger.error("Purchase for session %s failed: %s", session.session_id, e)
            await self.notifier.notify(session.user_handle, f"Purchase failed: {e}")
            self.emit("purchase_end", {"session_id": session.session_id, "status": "error", "error": str(e)})
            return {"status": "error", "error": str(e), "timed_out": timed_out}

        logger.info("Purchase for session %s completed", session.session_id)
        self.emit("purchase_end", {"session_id": session.session_id, "status": "ok", "error": None})
        return {"status": "ok", "result": result}

    def _prune_purchases(self):
        """Drop the oldest finished purchase handles beyond max_finished_purchases."""
        finished = [sid for sid, task in self.purchases.items() if task.done()]
        for sid in finished[:max(0, len(finished) - self.max_finished_purchases)]:
            del self.purchases[sid]

    async def _retire(self, session: MonitorSession, reason: str, message: str):
        async with self._lock:
            if self.sessions.pop(session.session_id, None) is None:
                return
        logger.info("Removing session %s (%s)", session.session_id, reason)
        await self._stop_upstream(session.session_id)
        await self.notifier.notify(session.user_handle, message)
        self.emit("monitor_removed", {"session_id": session.session_id, "reason": reason})

    async def _stop_upstream(self, session_id: str):
        """Best-effort feed stop; local state is already updated either way."""
        try:
            await self.feed.stop(session_id)
        except Exception as e:
            logger.warning("Failed to stop session %s upstream: %s", session_id, e)
