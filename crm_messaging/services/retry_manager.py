"""
Retry manager: backoff scheduling and the dead-letter transition.

Per message id the state moves ``retrying -> retrying | dlq``; ``dlq`` is
terminal until an operator reprocesses the message. Pending retries live in
a ``RetrySchedule`` which a pump loop polls, so they survive a restart.
"""
import asyncio
import random
import time
from typing import Awaitable, Callable, Dict, List, Optional

from crm_messaging.core.config import Settings, settings as default_settings
from crm_messaging.core.document_store import DocumentStore
from crm_messaging.core.events import EventSink, PipelineEvent, Severity
from crm_messaging.core.queue_policies import RetryPolicy, policy_from_settings
from crm_messaging.core.retry_schedule import RetrySchedule
from crm_messaging.schemas.queue import (
    DeadLetterRecord,
    MessageEnvelope,
    RetryDecision,
    RetryRecord,
    RetryStats,
    RetryStatus,
)
from .base_service import BaseService


class RetryManager(BaseService):

    def __init__(
        self,
        store: DocumentStore,
        schedule: RetrySchedule,
        broker,
        events: Optional[EventSink] = None,
        policy: Optional[RetryPolicy] = None,
        config: Settings = default_settings,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(store, events)
        self.schedule = schedule
        self.broker = broker
        self.policy = policy or policy_from_settings(config)
        self.config = config
        self.poll_interval = config.RETRY_POLL_INTERVAL_SECONDS
        self.dlq_inspect_interval = config.DLQ_INSPECT_INTERVAL_SECONDS
        self._clock = clock
        self._rng = rng
        self._sleep = sleep
        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._successes = 0

    # Lifecycle

    async def start(self):
        if self._running:
            return
        self.logger.info("Starting retry manager", max_retries=self.policy.max_retries)
        self._running = True
        await self.recover_pending_retries()
        self._tasks = [
            asyncio.create_task(self._pump_loop()),
            asyncio.create_task(self._dlq_inspection_loop()),
        ]

    async def stop(self):
        """Stop the loops. Durable schedule entries are left in place."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.logger.info("Retry manager stopped")

    def is_running(self) -> bool:
        return self._running

    async def _pump_loop(self):
        while self._running:
            try:
                await self.process_due_retries()
            except Exception as e:
                self.logger.error(f"Error processing due retries: {e}")
            await self._sleep(self.poll_interval)

    async def _dlq_inspection_loop(self):
        while self._running:
            await self._sleep(self.dlq_inspect_interval)
            try:
                await self.inspect_dead_letter_queues()
            except Exception as e:
                self.logger.error(f"Error inspecting dead-letter queues: {e}")

    # Failure handling

    async def schedule_retry(self, envelope: MessageEnvelope, error, attempt: int) -> RetryDecision:
        """
        Record a delivery failure for ``envelope``.

        ``attempt`` is the number of failures before this one. Once the new
        failure count reaches the policy limit the message is dead-lettered;
        otherwise it is (re)scheduled, replacing any pending entry for the id.
        """
        failures = attempt + 1
        reason = str(error)
        now = self._clock()
        existing = await self.retry_repo.get(envelope.id)
        first_failed_at = existing.first_failed_at if existing else now

        if self.policy.is_exhausted(failures):
            await self.move_to_dead_letter(envelope, reason, failures, first_failed_at=first_failed_at)
            return RetryDecision.DEAD_LETTERED

        delay = self.policy.compute_delay(attempt, self._rng)
        next_retry_at = now + delay
        record = RetryRecord(
            message_id=envelope.id,
            attempt=failures,
            last_error=reason,
            next_retry_at=next_retry_at,
            status=RetryStatus.RETRYING,
            first_failed_at=first_failed_at,
            updated_at=now,
            envelope=envelope.model_copy(update={"attempt": failures}),
        )
        await self.retry_repo.save(record)
        await self.schedule.schedule(envelope.id, next_retry_at)

        self.emit(PipelineEvent(
            kind="retry.scheduled",
            severity=Severity.WARNING,
            message_id=envelope.id,
            detail=f"Retry {failures}/{self.policy.max_retries} scheduled",
            error=reason,
            data={"attempt": failures, "delay": round(delay, 3), "next_retry_at": next_retry_at},
        ))
        return RetryDecision.SCHEDULED

    async def move_to_dead_letter(
        self,
        envelope: MessageEnvelope,
        reason: str,
        failure_count: int,
        first_failed_at: Optional[float] = None,
    ) -> DeadLetterRecord:
        """Terminal transition: record, notify operators, clear bookkeeping."""
        now = self._clock()
        await self.schedule.cancel(envelope.id)

        record = DeadLetterRecord(
            message_id=envelope.id,
            envelope=envelope.model_copy(update={"attempt": failure_count}),
            failure_reason=reason,
            failure_count=failure_count,
            first_failed_at=first_failed_at or now,
            last_failed_at=now,
            dlq_processed_at=now,
        )
        await self.dead_letter_repo.add(record)
        await self.notification_repo.create_failure_notification(record)
        await self.message_repo.mark_failed(envelope, failure_count, reason)
        await self.retry_repo.delete(envelope.id)

        self.emit(PipelineEvent(
            kind="message.dead_lettered",
            severity=Severity.HIGH,
            message_id=envelope.id,
            detail=f"Message moved to dead letter after {failure_count} attempts",
            error=reason,
            data={"failure_count": failure_count, "ticket_id": envelope.ticket_id},
        ))
        return record

    async def reject_permanently(self, envelope: MessageEnvelope, error) -> DeadLetterRecord:
        """Dead-letter a failure that retrying cannot fix."""
        existing = await self.retry_repo.get(envelope.id)
        return await self.move_to_dead_letter(
            envelope,
            str(error),
            envelope.attempt + 1,
            first_failed_at=existing.first_failed_at if existing else None,
        )

    async def clear(self, message_id: str) -> bool:
        """Drop the schedule entry and retry record for ``message_id``."""
        await self.schedule.cancel(message_id)
        return await self.retry_repo.delete(message_id)

    async def record_success(self, message_id: str):
        if await self.clear(message_id):
            self._successes += 1
            self.logger.info("Retry succeeded", message_id=message_id)

    # Scheduled work

    async def process_due_retries(self) -> int:
        """Re-publish every due retry. Returns how many were handed to the broker."""
        republished = 0
        for message_id in await self.schedule.pop_due(self._clock()):
            try:
                if await self._republish(message_id):
                    republished += 1
            except Exception as e:
                self.emit(PipelineEvent(
                    kind="retry.execution_failed",
                    severity=Severity.WARNING,
                    message_id=message_id,
                    detail="Error executing scheduled retry",
                    error=str(e),
                ))
        return republished

    async def _republish(self, message_id: str) -> bool:
        record = await self.retry_repo.get(message_id)
        if record is None or record.status != RetryStatus.RETRYING:
            return False

        if await self.broker.publish_outbound(record.envelope):
            record.next_retry_at = None
            record.updated_at = self._clock()
            await self.retry_repo.save(record)
            self.logger.info("Retry republished", message_id=message_id, attempt=record.attempt)
            return True

        # a failed re-publication is one more failure
        await self.schedule_retry(record.envelope, "Failed to republish message", record.attempt)
        return False

    async def recover_pending_retries(self) -> int:
        """Put every persisted retry with a due time back on the schedule."""
        now = self._clock()
        recovered = 0
        for record in await self.retry_repo.list_retrying():
            if record.next_retry_at is None:
                continue
            due_at = record.next_retry_at if record.next_retry_at > now else now
            await self.schedule.schedule(record.message_id, due_at)
            recovered += 1
        if recovered:
            self.logger.info("Recovered pending retries", count=recovered)
        return recovered

    # Operator actions and stats

    async def reprocess_dead_letter(self, message_id: str) -> bool:
        """Re-enter a dead-lettered message at attempt 0, due immediately."""
        dead = await self.dead_letter_repo.latest_for(message_id)
        if dead is None:
            self.logger.warning("Dead-letter record not found", message_id=message_id)
            return False

        now = self._clock()
        record = RetryRecord(
            message_id=message_id,
            attempt=0,
            last_error="Manual reprocess",
            next_retry_at=now,
            status=RetryStatus.RETRYING,
            first_failed_at=now,
            updated_at=now,
            envelope=dead.envelope.model_copy(update={"attempt": 0}),
        )
        await self.retry_repo.save(record)
        await self.schedule.schedule(message_id, now)

        self.emit(PipelineEvent(
            kind="retry.manual_reprocess",
            message_id=message_id,
            detail="Manual reprocess scheduled",
        ))
        return True

    async def get_retry_stats(self) -> RetryStats:
        return RetryStats(
            pending=await self.schedule.count(),
            dlq=await self.dead_letter_repo.count(),
            success=self._successes,
        )

    async def inspect_dead_letter_queues(self) -> Dict[str, int]:
        """Report broker-side dead-letter queue depths."""
        depths = {}
        for queue_name in self.config.dead_letter_queues:
            try:
                info = await self.broker.queue_info(queue_name)
            except Exception as e:
                self.logger.warning(f"Could not inspect {queue_name}: {e}")
                continue
            depths[queue_name] = info.message_count
            if info.message_count:
                self.emit(PipelineEvent(
                    kind="dlq.messages_present",
                    severity=Severity.WARNING,
                    detail=f"{info.message_count} messages in {queue_name}",
                    data={"queue": queue_name, "message_count": info.message_count},
                ))
        return depths
