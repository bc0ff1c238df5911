"""
Work queue between the orchestrator API and conversion workers.

Messages carry a JSON-encoded ``WorkItem``. A consumer receives a
``Delivery`` and must settle it with ``ack()`` once the job outcome has been
recorded, or ``reject()`` it; at most one delivery is outstanding per
consumer, so a worker never starts a second job before finishing the first.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import AsyncIterator, Deque, List, Optional, Tuple

import aio_pika
import anyio
from aio_pika import ExchangeType
from aio_pika.abc import AbstractIncomingMessage, AbstractQueue, AbstractRobustChannel, AbstractRobustConnection
from pydantic import ValidationError

from .configuration import QueueSettings, Settings
from .errors import PoisonMessage
from .models import WorkItem

logger = logging.getLogger(__name__)


def encode_work_item(item: WorkItem) -> bytes:
    return item.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


def parse_work_item(body: bytes) -> WorkItem:
    """
    Decode a message body into a ``WorkItem``.

    Raises:
        PoisonMessage: If the body is not JSON or does not describe a job
    """
    try:
        return WorkItem.model_validate_json(body)
    except (ValidationError, ValueError) as exc:
        raise PoisonMessage(f"Malformed work item: {exc}") from exc


class Delivery(ABC):
    """A received message awaiting acknowledgement."""

    body: bytes
    redelivered: bool

    @abstractmethod
    async def ack(self) -> None:
        ...

    @abstractmethod
    async def reject(self, requeue: bool = False) -> None:
        ...


class WorkQueue(ABC):
    poll_interval: float = 0.5

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def publish(self, item: WorkItem) -> None:
        """Durably enqueue one work item."""

    @abstractmethod
    async def get(self) -> Optional[Delivery]:
        """Take the next delivery without waiting; None when the queue is empty."""

    async def consume(self, stop_event: asyncio.Event) -> AsyncIterator[Delivery]:
        """
        Yield deliveries until ``stop_event`` is set.

        The next delivery is only requested after the consumer resumes the
        generator, i.e. after it has finished with the previous one.
        """
        while not stop_event.is_set():
            delivery = await self.get()
            if delivery is None:
                await anyio.sleep(self.poll_interval)
                continue
            yield delivery


class InMemoryDelivery(Delivery):
    def __init__(self, queue: "InMemoryWorkQueue", body: bytes, redelivered: bool) -> None:
        self._queue = queue
        self.body = body
        self.redelivered = redelivered
        self.settled = False

    def _settle(self) -> None:
        if self.settled:
            raise RuntimeError("Delivery already settled")
        self.settled = True
        self._queue.in_flight -= 1

    async def ack(self) -> None:
        self._settle()
        self._queue.acked.append(self.body)

    async def reject(self, requeue: bool = False) -> None:
        self._settle()
        if requeue:
            self._queue._messages.append((self.body, True))
        else:
            self._queue.rejected.append(self.body)


class InMemoryWorkQueue(WorkQueue):
    """
    FIFO queue for a single process.

    Keeps simple counters (``acked``, ``rejected``, ``in_flight``,
    ``max_in_flight``) so callers can observe how deliveries were settled.
    """

    def __init__(self, poll_interval: float = 0.05) -> None:
        self.poll_interval = poll_interval
        self._messages: Deque[Tuple[bytes, bool]] = deque()
        self.acked: List[bytes] = []
        self.rejected: List[bytes] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def __len__(self) -> int:
        return len(self._messages)

    async def publish(self, item: WorkItem) -> None:
        self.publish_raw(encode_work_item(item))

    def publish_raw(self, body: bytes) -> None:
        self._messages.append((body, False))

    async def get(self) -> Optional[Delivery]:
        if not self._messages:
            return None
        body, redelivered = self._messages.popleft()
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        return InMemoryDelivery(self, body, redelivered)


class RabbitMQDelivery(Delivery):
    def __init__(self, message: AbstractIncomingMessage) -> None:
        self._message = message
        self.body = message.body
        self.redelivered = bool(message.redelivered)

    async def ack(self) -> None:
        await self._message.ack()

    async def reject(self, requeue: bool = False) -> None:
        await self._message.reject(requeue=requeue)


class RabbitMQWorkQueue(WorkQueue):
    """
    Durable RabbitMQ queue using aio-pika.

    Messages are published persistent to the default exchange. A worker
    takes one message at a time with ``basic.get`` through the base
    ``consume`` loop and settles it before asking for the next, so being idle
    never tears down a consumer. ``prefetch_count`` is applied to the channel
    as well. Rejected messages go to the dead-letter exchange when one is
    configured, otherwise they are dropped.
    """

    def __init__(self, options: QueueSettings) -> None:
        self.amqp_url = options.url
        self.queue_name = options.name
        self.prefetch_count = options.prefetch_count
        self.dead_letter_exchange_name = options.dead_letter_exchange
        self.dead_letter_queue_name = options.dead_letter_queue or (
            f"{options.name}.dead" if options.dead_letter_exchange else None
        )
        self.poll_interval = options.poll_interval_seconds
        self.connection: Optional[AbstractRobustConnection] = None
        self.channel: Optional[AbstractRobustChannel] = None
        self.queue: Optional[AbstractQueue] = None

    async def connect(self) -> None:
        """
        Establish a robust connection and channel, then declare the work
        queue and, if configured, the dead-letter exchange and queue.
        """
        logger.info("Connecting to RabbitMQ...")
        try:
            self.connection = await aio_pika.connect_robust(self.amqp_url, timeout=10)
            self.channel = await self.connection.channel()
            await self.channel.set_qos(prefetch_count=self.prefetch_count)

            arguments = {}
            if self.dead_letter_exchange_name:
                dead_letter_exchange = await self.channel.declare_exchange(
                    self.dead_letter_exchange_name, ExchangeType.FANOUT, durable=True
                )
                dead_letter_queue = await self.channel.declare_queue(self.dead_letter_queue_name, durable=True)
                await dead_letter_queue.bind(dead_letter_exchange)
                arguments["x-dead-letter-exchange"] = self.dead_letter_exchange_name

            self.queue = await self.channel.declare_queue(self.queue_name, durable=True, arguments=arguments or None)
            logger.info("RabbitMQ queue %s is ready", self.queue_name)
        except asyncio.TimeoutError:
            logger.error("Connection to RabbitMQ timed out.")
            raise
        except Exception as e:
            logger.error(f"Failed to connect to RabbitMQ: {e}")
            raise

    async def close(self) -> None:
        logger.info("Disconnecting from RabbitMQ...")
        if self.channel and not self.channel.is_closed:
            await self.channel.close()
        if self.connection and not self.connection.is_closed:
            await self.connection.close()
        logger.info("RabbitMQ connection closed.")

    def _require_channel(self) -> AbstractRobustChannel:
        if not self.channel or self.queue is None:
            raise RuntimeError("RabbitMQ channel is not available. Did you call connect()?")
        return self.channel

    async def publish(self, item: WorkItem) -> None:
        channel = self._require_channel()
        message = aio_pika.Message(
            body=encode_work_item(item),
            content_type="application/json",
            message_id=item.job_id,
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        await channel.default_exchange.publish(message, routing_key=self.queue_name)

    async def get(self) -> Optional[Delivery]:
        self._require_channel()
        message = await self.queue.get(no_ack=False, fail=False)
        if message is None:
            return None
        return RabbitMQDelivery(message)


def build_work_queue(settings: Settings) -> WorkQueue:
    """Create the (not yet connected) queue selected by ``settings.queue.backend``."""
    options = settings.queue
    if options.backend == "memory":
        logger.info("Using in-memory work queue")
        return InMemoryWorkQueue(poll_interval=options.poll_interval_seconds)
    return RabbitMQWorkQueue(options)
