"""Trade notifications.

The engine publishes a ``TradeEvent`` for every fill, rejection and
auto-trading state change. Sinks are fire-and-forget: a failing sink is
logged and never affects the operation that produced the event.
"""
import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Set

import structlog
from pydantic import BaseModel, ConfigDict, Field

from paper_trading.core.models import utc_now

logger = structlog.get_logger(__name__)


class TradeEventKind(str, Enum):
    FILLED = "filled"
    REJECTED = "rejected"
    POSITION_CLOSED = "position_closed"
    AUTO_TRADING_ENABLED = "auto_trading_enabled"
    AUTO_TRADING_DISABLED = "auto_trading_disabled"
    EMERGENCY_STOP = "emergency_stop"


class TradeEvent(BaseModel):
    """Notification payload."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    kind: TradeEventKind
    account_id: str = ""
    symbol: Optional[str] = None
    side: Optional[str] = None
    quantity: Optional[Decimal] = None
    price: Optional[Decimal] = None
    strategy: Optional[str] = None
    confidence: Optional[float] = None
    reason: Optional[str] = None
    realized_pnl: Optional[Decimal] = None
    timestamp: datetime = Field(default_factory=utc_now)


class NotificationSink(ABC):
    """Receives trade events."""

    @abstractmethod
    async def publish(self, event: TradeEvent):
        pass


class LoggingNotificationSink(NotificationSink):
    """Writes every event to the structured log."""

    async def publish(self, event: TradeEvent):
        logger.info(
            f"notification.{event.kind.value}",
            **event.model_dump(exclude_none=True, exclude={"kind", "timestamp"}),
        )


class RecordingNotificationSink(NotificationSink):
    """Keeps events in memory, for inspection by callers and tests."""

    def __init__(self):
        self.events: List[TradeEvent] = []

    async def publish(self, event: TradeEvent):
        self.events.append(event)

    def kinds(self) -> List[TradeEventKind]:
        return [e.kind for e in self.events]


class Notifier:
    """Publishes events to a sink as background tasks."""

    def __init__(self, sink: Optional[NotificationSink] = None):
        self.sink = sink or LoggingNotificationSink()
        self._pending: Set[asyncio.Task] = set()

    def notify(self, event: TradeEvent):
        """Schedule delivery without waiting for it."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("notification.no_event_loop", kind=event.kind.value)
            return
        task = loop.create_task(self._deliver(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: TradeEvent):
        try:
            await self.sink.publish(event)
        except Exception as e:
            logger.error(
                "notification.delivery_failed",
                kind=event.kind.value,
                symbol=event.symbol,
                error=str(e),
            )

    async def drain(self):
        """Wait for every scheduled delivery to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
