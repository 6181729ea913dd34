"""In-process stand-in for the booking and demand topics.

Each topic is a bounded queue; each consumer group is one worker thread.
Handler failures are logged and the worker moves on. Stopping with
``drain=True`` finishes the queued backlog before the thread exits.
"""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from venue_pricing.domain.models import DemandObservation
from venue_pricing.repository.pricing_repository import PricingRepository
from venue_pricing.services.demand_aggregator import (
    DemandAggregator,
    DemandBuffer,
    observation_from_message,
    observation_to_message,
)
from venue_pricing.services.surge_service import SurgeUpdateService
from venue_pricing.utils.config import Settings, get_settings
from venue_pricing.utils.logger import get_logger
from venue_pricing.utils.time_utils import utc_now


logger = get_logger(__name__)

BOOKING_TOPIC = "venue.booking.events"
DEMAND_TOPIC = "venue.demand.hourly"
DEMAND_GROUP = "demand-aggregator"
SURGE_GROUP = "surge-updater"


class ChannelUnavailableError(Exception):
    """Raised when a message cannot be published (closed or full)."""


@dataclass(frozen=True)
class ChannelMessage:
    key: str
    payload: Any
    published_at: datetime = field(default_factory=utc_now)


class EventChannel:
    def __init__(self, name: str, maxsize: int, publish_timeout: float) -> None:
        self.name = name
        self._queue: queue.Queue[ChannelMessage] = queue.Queue(maxsize=maxsize)
        self._publish_timeout = publish_timeout
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        self._closed.set()

    def publish(self, key: str, payload: Any) -> None:
        if self.closed:
            raise ChannelUnavailableError(f"channel {self.name} is closed")
        try:
            self._queue.put(ChannelMessage(key=key, payload=payload), timeout=self._publish_timeout)
        except queue.Full as exc:
            raise ChannelUnavailableError(f"channel {self.name} is full") from exc

    def get(self, timeout: float) -> Optional[ChannelMessage]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def task_done(self) -> None:
        self._queue.task_done()

    def pending(self) -> int:
        return self._queue.qsize()


class ConsumerWorker:
    """One consumer group reading one channel on a dedicated thread."""

    def __init__(
        self,
        group: str,
        channel: EventChannel,
        handler: Callable[[Any], Any],
        poll_timeout: float = 0.5,
    ) -> None:
        self.group = group
        self._channel = channel
        self._handler = handler
        self._poll_timeout = poll_timeout
        self._stop = threading.Event()
        self._drain = True
        self._thread: Optional[threading.Thread] = None
        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"consumer-{self.group}", daemon=True)
        self._thread.start()
        logger.info("Consumer started | group=%s | channel=%s", self.group, self._channel.name)

    def _should_exit(self) -> bool:
        if not self._stop.is_set():
            return False
        return not self._drain or self._channel.pending() == 0

    def _run(self) -> None:
        while not self._should_exit():
            message = self._channel.get(self._poll_timeout)
            if message is None:
                continue
            try:
                self._handler(message.payload)
                self.processed += 1
            except Exception:
                self.failed += 1
                logger.exception(
                    "Consumer handler failed | group=%s | key=%s",
                    self.group,
                    message.key,
                )
            finally:
                self._channel.task_done()

    def stop(self, drain: bool = True, timeout: Optional[float] = None) -> None:
        self._drain = drain
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        logger.info(
            "Consumer stopped | group=%s | processed=%s | failed=%s",
            self.group,
            self.processed,
            self.failed,
        )


class EventPipeline:
    """Wires booking events -> aggregator -> observations -> surge updater."""

    def __init__(
        self,
        repository: Optional[PricingRepository] = None,
        settings: Optional[Settings] = None,
        buffer: Optional[DemandBuffer] = None,
        surge_updater: Optional[SurgeUpdateService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or PricingRepository(self._settings)
        self.booking_channel = EventChannel(
            BOOKING_TOPIC,
            self._settings.booking_queue_size,
            self._settings.publish_timeout_seconds,
        )
        self.observation_channel = EventChannel(
            DEMAND_TOPIC,
            self._settings.observation_queue_size,
            self._settings.publish_timeout_seconds,
        )
        self.aggregator = DemandAggregator(
            buffer or DemandBuffer(),
            repository=self._repository,
            publisher=self._publish_observation,
            settings=self._settings,
            clock=clock or utc_now,
        )
        self.surge_updater = surge_updater or SurgeUpdateService(self._repository, self._settings)
        self.workers = (
            ConsumerWorker(
                DEMAND_GROUP,
                self.booking_channel,
                self.aggregator.handle,
                self._settings.consumer_poll_timeout_seconds,
            ),
            ConsumerWorker(
                SURGE_GROUP,
                self.observation_channel,
                self._handle_observation,
                self._settings.consumer_poll_timeout_seconds,
            ),
        )

    def _publish_observation(self, observation: DemandObservation) -> None:
        self.observation_channel.publish(observation.sublocation_id, observation_to_message(observation))

    def _handle_observation(self, payload: Mapping[str, Any]) -> None:
        self.surge_updater.apply_observation(observation_from_message(payload))

    def publish_booking_event(self, payload: Mapping[str, Any]) -> None:
        key = str(payload.get("subLocationId") or "")
        self.booking_channel.publish(key, dict(payload))

    def start(self) -> None:
        for worker in self.workers:
            worker.start()

    def stop(self, drain: bool = True, timeout: Optional[float] = None) -> None:
        """Stop accepting bookings, then stop groups upstream first."""
        self.booking_channel.close()
        for worker in self.workers:
            worker.stop(drain=drain, timeout=timeout)
        self.observation_channel.close()
        self.aggregator.buffer.clear()
