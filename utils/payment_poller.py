# utils/payment_poller.py
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from utils.config import POLL_INITIAL_DELAY_SECONDS, POLL_INTERVAL_SECONDS, POLL_MAX_ATTEMPTS
from utils.logger import get_logger

log = get_logger("[PaymentPoller]")

# check_status(invoice_id, order_id) -> {"paid": bool, "status": "PENDING" | "COMPLETE" | "FAILED" | ...}
StatusCheck = Callable[[str, Optional[str]], Awaitable[dict]]


class PollOutcome(str, Enum):
    PAID = "paid"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class PollResult:
    outcome: PollOutcome
    attempts: int
    last_status: Optional[dict] = None


class PaymentStatusPoller:
    """
    Asks the gateway about one invoice on a fixed interval until it is paid,
    fails, the attempt budget runs out, or cancel() is called.
    No backoff, no jitter. The order's payment_status column stays the source
    of truth; nothing about the polling itself is persisted.
    """

    def __init__(
            self,
            check_status: StatusCheck,
            invoice_id: str,
            order_id: Optional[str] = None,
            initial_delay: float = POLL_INITIAL_DELAY_SECONDS,
            interval: float = POLL_INTERVAL_SECONDS,
            max_attempts: int = POLL_MAX_ATTEMPTS,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.check_status = check_status
        self.invoice_id = invoice_id
        self.order_id = order_id
        self.initial_delay = initial_delay
        self.interval = interval
        self.max_attempts = max_attempts
        self.attempts = 0
        self._cancelled = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        if not self._cancelled.is_set():
            log.info(f"[PaymentPoller] Polling for invoice {self.invoice_id} cancelled")
        self._cancelled.set()

    async def _sleep(self, delay: float) -> bool:
        """Waits for `delay`, returns True if cancel() fired in the meantime."""
        if self._cancelled.is_set():
            return True
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def run(self) -> PollResult:
        last_status: Optional[dict] = None

        if await self._sleep(self.initial_delay):
            return PollResult(PollOutcome.CANCELLED, self.attempts)

        while self.attempts < self.max_attempts:
            self.attempts += 1
            try:
                last_status = await self.check_status(self.invoice_id, self.order_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning(
                    f"[PaymentPoller] Status check {self.attempts}/{self.max_attempts} "
                    f"for invoice {self.invoice_id} failed: {e}"
                )
                last_status = None

            if last_status:
                if last_status.get("paid"):
                    log.info(f"[PaymentPoller] Invoice {self.invoice_id} paid on attempt {self.attempts} [✓]")
                    return PollResult(PollOutcome.PAID, self.attempts, last_status)
                if str(last_status.get("status", "")).upper() == "FAILED":
                    log.info(f"[PaymentPoller] Invoice {self.invoice_id} failed on attempt {self.attempts}")
                    return PollResult(PollOutcome.FAILED, self.attempts, last_status)

            if self.attempts >= self.max_attempts:
                break
            if await self._sleep(self.interval):
                return PollResult(PollOutcome.CANCELLED, self.attempts, last_status)

        log.warning(
            f"[PaymentPoller] Invoice {self.invoice_id} still unresolved after {self.attempts} attempts"
        )
        return PollResult(PollOutcome.TIMEOUT, self.attempts, last_status)

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name=f"payment-poller-{self.invoice_id}")
        return self._task
