"""
Terminal run notifications.

``Notifier.publish`` hands each subscriber its own background delivery task,
so a slow or failing subscriber never blocks the pipeline run that published
the event. Failed deliveries are retried with bounded exponential backoff
and logged; once the attempts are exhausted the failure is recorded and
dropped.
"""
import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import requests
from botocore.exceptions import BotoCoreError, ClientError

from .errors import NotificationDeliveryFailure
from .models import PipelineRun, utc_now
from .settings import Settings
from .utils.aws_clients import get_sqs_client
from .utils.decorators import async_retry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunEvent:
    """Structured terminal-state event for a pipeline run."""
    run_id: str
    pipeline: str
    status: str
    timestamp: str
    error: Optional[str] = None
    source_revision: Optional[str] = None
    environment: Optional[str] = None

    @classmethod
    def from_run(cls, run: PipelineRun) -> "RunEvent":
        return cls(
            run_id=run.id,
            pipeline=run.pipeline,
            status=run.status,
            timestamp=run.completed_at or utc_now(),
            error=run.error,
            source_revision=run.trigger.source_revision,
            environment=run.trigger.environment,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Subscriber:
    """Base class for notification transports"""
    name = "subscriber"

    async def deliver(self, event: RunEvent) -> None:
        raise NotImplementedError


class LogSubscriber(Subscriber):
    name = "log"

    async def deliver(self, event: RunEvent) -> None:
        message = f"Pipeline {event.pipeline} run {event.run_id} finished: {event.status}"
        if event.error:
            logger.warning(f"{message} ({event.error})")
        else:
            logger.info(message)


class CallbackSubscriber(Subscriber):
    """Delivers to an in-process callable (sync or async)."""

    def __init__(self, callback: Callable[[RunEvent], Any], name: str = "callback"):
        self.callback = callback
        self.name = name

    async def deliver(self, event: RunEvent) -> None:
        result = self.callback(event)
        if inspect.isawaitable(result):
            await result


class WebhookSubscriber(Subscriber):
    """POSTs the event as JSON to a webhook URL."""

    def __init__(self, url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.name = f"webhook:{url}"

    def _post(self, event: RunEvent) -> None:
        try:
            response = self.session.post(self.url, json=event.to_dict(), timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise NotificationDeliveryFailure(f"Webhook {self.url} rejected event {event.run_id}: {e}") from e

    async def deliver(self, event: RunEvent) -> None:
        await asyncio.to_thread(self._post, event)


class SQSSubscriber(Subscriber):
    """Sends the event as a JSON message to an SQS queue."""

    def __init__(self, queue_url: str, sqs_client=None):
        self.queue_url = queue_url
        self.sqs_client = sqs_client or get_sqs_client()
        self.name = f"sqs:{queue_url}"

    def _send(self, event: RunEvent) -> None:
        try:
            self.sqs_client.send_message(
                QueueUrl=self.queue_url,
                MessageBody=json.dumps(event.to_dict()),
                MessageAttributes={
                    "status": {"DataType": "String", "StringValue": event.status},
                    "pipeline": {"DataType": "String", "StringValue": event.pipeline},
                },
            )
        except (ClientError, BotoCoreError) as e:
            raise NotificationDeliveryFailure(f"SQS send to {self.queue_url} failed for {event.run_id}: {e}") from e

    async def deliver(self, event: RunEvent) -> None:
        await asyncio.to_thread(self._send, event)


class Notifier:
    """Fans terminal run events out to subscribers, at least once each."""

    def __init__(
        self,
        subscribers: Optional[List[Subscriber]] = None,
        max_attempts: int = 5,
        backoff: float = 0.5,
        max_backoff: float = 30.0,
    ):
        self.subscribers: List[Subscriber] = list(subscribers or [])
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.max_backoff = max_backoff
        self.failures: List[Tuple[str, RunEvent, str]] = []
        self._pending: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> "Notifier":
        subscribers: List[Subscriber] = [LogSubscriber()]
        if settings.notify_webhook_url:
            subscribers.append(WebhookSubscriber(settings.notify_webhook_url))
        if settings.notify_sqs_queue_url:
            subscribers.append(SQSSubscriber(settings.notify_sqs_queue_url, get_sqs_client(settings)))
        return cls(
            subscribers,
            max_attempts=settings.notify_max_attempts,
            backoff=settings.notify_backoff_seconds,
        )

    def subscribe(self, subscriber: Subscriber) -> None:
        self.subscribers.append(subscriber)

    def publish(self, event: RunEvent) -> List[asyncio.Task]:
        """Schedule delivery of ``event`` to every subscriber and return immediately."""
        tasks = []
        for subscriber in self.subscribers:
            task = asyncio.create_task(
                self._deliver(subscriber, event),
                name=f"notify-{subscriber.name}-{event.run_id}",
            )
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            tasks.append(task)

        logger.info(f"Published {event.status} event for {event.run_id} to {len(tasks)} subscribers")
        return tasks

    async def _deliver(self, subscriber: Subscriber, event: RunEvent) -> bool:
        deliver = async_retry(
            max_attempts=self.max_attempts,
            delay=self.backoff,
            max_delay=self.max_backoff,
            exceptions=(Exception,),
            logger_name=__name__,
        )(subscriber.deliver)

        try:
            await deliver(event)
            return True
        except Exception as e:
            failure = NotificationDeliveryFailure(
                f"Giving up delivering {event.run_id} to {subscriber.name} after {self.max_attempts} attempts: {e}"
            )
            logger.error(str(failure))
            self.failures.append((subscriber.name, event, str(e)))
            return False

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight deliveries to finish."""
        if not self._pending:
            return
        await asyncio.wait(list(self._pending), timeout=timeout)
