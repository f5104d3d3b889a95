"""
SLA External Service Integrations
==================================

External services for SLA monitoring:
- YAML policy table with hot reload
- In-process event bus feeding alerting and dashboards
- Slack webhook notifications
- APScheduler for the background SLA tick
"""

import asyncio
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler

from shared.infrastructure.logging import get_logger
from config import settings, DEFAULT_SLA_POLICIES
from core import InvalidPolicyError
from sla.application import ISLAPolicyProvider, IEventPublisher
from sla.domain import SLAPolicyTable, SLABreached, SLAEvent

logger = get_logger(__name__)


# ========== SLA policy table ==========

class ConfigFileHandler(FileSystemEventHandler):
    """Watchdog event handler for SLA policy file changes."""

    def __init__(self, policy_manager: "SLAPolicyManager", config_path: Path):
        self.policy_manager = policy_manager
        self.config_path = config_path
        super().__init__()

    def on_modified(self, event):
        """Handle file modification event."""
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.config_path.resolve():
            logger.info("SLA policy file changed", extra={"path": event.src_path})
            self.policy_manager.reload()


class SLAPolicyManager(ISLAPolicyProvider):
    """
    Thread-safe SLA policy table with hot-reload support.

    The file holds a top-level ``policies`` list. A missing file falls back
    to the built-in reference table. A malformed file fails the initial
    load; on reload the last good table stays in place.
    """

    def __init__(self):
        self._policies: Optional[SLAPolicyTable] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> SLAPolicyTable:
        """
        Initial policy table load.

        Raises:
            InvalidPolicyError: If the file exists but is malformed
        """
        self._path = Path(path)
        table = self._load_from_file(self._path)
        with self._lock:
            self._policies = table
        logger.info(
            "SLA policy table loaded",
            extra={"path": str(self._path), "policies": len(table)}
        )
        return table

    def _load_from_file(self, path: Path) -> SLAPolicyTable:
        """Load and validate the YAML policy file."""
        if not path.exists():
            logger.warning(
                "SLA policy file not found, using reference table",
                extra={"path": str(path)}
            )
            return SLAPolicyTable.from_records(DEFAULT_SLA_POLICIES)

        with open(path, "r") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise InvalidPolicyError(
                    f"SLA policy file {path} is not valid YAML",
                    {"path": str(path), "error": str(e)}
                ) from e

        records = data.get("policies") if isinstance(data, dict) else None
        if not isinstance(records, list):
            raise InvalidPolicyError(
                f"SLA policy file {path} must contain a 'policies' list",
                {"path": str(path)}
            )

        return SLAPolicyTable.from_records(records)

    def reload(self) -> bool:
        """Reload the policy table from file, keeping the old one on failure."""
        if self._path is None:
            return False

        try:
            new_table = self._load_from_file(self._path)
        except (InvalidPolicyError, OSError) as e:
            logger.error(
                "Failed to reload SLA policies, keeping previous table",
                extra={"path": str(self._path), "error": str(e)}
            )
            return False

        with self._lock:
            self._policies = new_table
        logger.info(
            "SLA policy table reloaded",
            extra={"path": str(self._path), "policies": len(new_table)}
        )
        return True

    def start_watching(self) -> None:
        """
        Start watching the policy file for changes.

        Skips watching if the file doesn't exist or the platform has no
        file-event support (e.g. some container filesystems).
        """
        if self._path is None:
            raise RuntimeError("Policies not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(
                "SLA policy file doesn't exist, skipping file watch",
                extra={"path": str(self._path)}
            )
            return

        try:
            self._observer = Observer()
            handler = ConfigFileHandler(self, self._path)
            self._observer.schedule(
                handler,
                str(self._path.resolve().parent),
                recursive=False
            )
            self._observer.start()
            logger.info("Started watching SLA policy file", extra={"path": str(self._path)})
        except OSError as e:
            logger.warning(
                "File watching not available, using static policies",
                extra={"error": str(e)}
            )
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching the policy file (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def get_policies(self) -> SLAPolicyTable:
        return self.policies

    @property
    def policies(self) -> SLAPolicyTable:
        """Get current policy table."""
        with self._lock:
            if self._policies is None:
                raise RuntimeError("SLA policies not loaded")
            return self._policies


# ========== Event bus ==========

class SLAEventBus(IEventPublisher):
    """
    In-process fan-out of committed SLA events.

    Each subscriber (Slack notifier, dashboard feed) owns a bounded queue.
    A full queue drops the event for that subscriber only and logs it, so
    a slow consumer never blocks the SLA tick.
    """

    def __init__(self, queue_size: Optional[int] = None):
        self._queue_size = queue_size or settings.event_queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}

    def subscribe(self, name: str) -> asyncio.Queue:
        """Register a subscriber and return its queue."""
        if name not in self._subscribers:
            self._subscribers[name] = asyncio.Queue(maxsize=self._queue_size)
            logger.info("Event bus subscriber added", extra={"subscriber": name})
        return self._subscribers[name]

    def unsubscribe(self, name: str) -> None:
        self._subscribers.pop(name, None)

    @property
    def subscribers(self) -> List[str]:
        return list(self._subscribers)

    def publish(self, event: SLAEvent) -> None:
        """Hand an event to every subscriber queue."""
        for name, queue in self._subscribers.items():
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "Event bus subscriber queue full, event dropped",
                    extra={
                        "subscriber": name,
                        "request_id": event.request_id,
                        "event_type": event.event_type
                    }
                )


# ========== Slack notifications ==========

class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        name: str = "external"
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        """Get current circuit state."""
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            elapsed = time.monotonic() - self._last_failure_time
            if elapsed >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        """Check if request should be allowed."""
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = time.monotonic()

        if self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "service": self.name,
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


class SlackAlertNotifier:
    """
    Slack webhook notifier for SLA breaches and escalations.

    Consumes events from an event bus queue and posts Block Kit messages
    with:
    - Circuit breaker to prevent cascade failures
    - Exponential backoff retry
    - Timeout handling

    Without a webhook URL every alert is skipped.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        channel: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        retry_base_delay: float = 1.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.webhook_url = webhook_url if webhook_url is not None else settings.slack_webhook_url
        self.channel = channel or settings.slack_channel
        self.timeout_seconds = timeout_seconds or settings.slack_timeout_seconds
        self.retry_base_delay = retry_base_delay
        self._circuit_breaker = CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=60,
            name="slack"
        )
        self._http_client: Optional[httpx.AsyncClient] = http_client

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    def build_message(self, event: SLAEvent) -> Dict[str, Any]:
        """Build Slack Block Kit message."""
        if isinstance(event, SLABreached):
            header_text = ":rotating_light: SLA Breached"
            detail_fields = [
                {"type": "mrkdwn", "text": f"*Deadline:*\n{event.deadline:%Y-%m-%d %H:%M} UTC"},
                {"type": "mrkdwn", "text": f"*Observed:*\n{event.breached_at:%Y-%m-%d %H:%M} UTC"},
            ]
            occurred_at = event.breached_at
        else:
            header_text = f":arrow_double_up: SLA Escalated to Level {event.level}"
            detail_fields = [
                {"type": "mrkdwn", "text": f"*Level:*\n{event.level}"},
                {"type": "mrkdwn", "text": f"*Notify:*\n{event.target.replace('_', ' ').title()}"},
            ]
            occurred_at = event.escalated_at

        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": header_text,
                    "emoji": True
                }
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Request:*\n{event.request_id}"},
                    {"type": "mrkdwn", "text": f"*Type:*\n{event.request_type.title()}"},
                    {"type": "mrkdwn", "text": f"*Priority:*\n{event.priority.title()}"},
                    *detail_fields
                ]
            },
            {
                "type": "context",
                "elements": [
                    {
                        "type": "mrkdwn",
                        "text": f"{event.event_type} at {occurred_at.isoformat()}"
                    }
                ]
            }
        ]

        return {
            "channel": self.channel,
            "text": header_text,
            "blocks": blocks
        }

    async def send_alert(self, event: SLAEvent, max_retries: int = 3) -> bool:
        """
        Send alert to Slack webhook.

        Returns:
            True if sent successfully, False otherwise
        """
        if not self.enabled:
            logger.debug("Slack webhook URL not configured, skipping notification")
            return False

        if not self._circuit_breaker.allow_request():
            logger.warning(
                "Circuit breaker open, skipping Slack notification",
                extra={"request_id": event.request_id}
            )
            return False

        message = self.build_message(event)

        for attempt in range(max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self.webhook_url, json=message)

                if response.status_code == 200:
                    self._circuit_breaker.record_success()
                    logger.info(
                        "Slack notification sent",
                        extra={
                            "request_id": event.request_id,
                            "event_type": event.event_type
                        }
                    )
                    return True

                logger.warning(
                    "Slack webhook returned non-200",
                    extra={
                        "status_code": response.status_code,
                        "attempt": attempt + 1
                    }
                )
            except httpx.HTTPError as e:
                logger.error(
                    "Slack notification failed",
                    extra={
                        "error": str(e),
                        "attempt": attempt + 1,
                        "request_id": event.request_id
                    }
                )

            if attempt < max_retries - 1:
                await asyncio.sleep(self.retry_base_delay * 2 ** attempt)

        self._circuit_breaker.record_failure()
        return False

    async def consume(self, queue: asyncio.Queue) -> None:
        """Forward events from an event bus queue until cancelled."""
        while True:
            event = await queue.get()
            try:
                await self.send_alert(event)
            except Exception:
                logger.exception(
                    "Slack alert delivery crashed, continuing with next event",
                    extra={"request_id": event.request_id, "event_type": event.event_type}
                )
            finally:
                queue.task_done()

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


# ========== Scheduler ==========

class SLAScheduler:
    """
    Wrapper for APScheduler running the periodic SLA tick.

    A tick never overlaps with itself; missed runs are coalesced.
    """

    def __init__(self, interval_seconds: Optional[int] = None):
        self.interval_seconds = interval_seconds or settings.sla_evaluation_interval
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func) -> None:
        """Start the scheduler with the given job function."""
        if self._running:
            logger.warning("SLA scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()

        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id="sla_evaluation",
            name="SLA Evaluation Job",
            misfire_grace_time=self.interval_seconds,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        self._scheduler.start()
        self._running = True

        logger.info(
            "SLA scheduler started",
            extra={"interval_seconds": self.interval_seconds}
        )

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("SLA scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running
