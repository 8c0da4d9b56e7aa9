"""
Trigger Scheduler Job.

Evaluates admin-defined trigger rules on two cadences and dispatches the
automated messages they produce:

    coarse  once a day at SCHEDULER_DAILY_TIME, SMS-only rules; the daily
            tick is the time gate so send_time is not matched again
    fine    every minute, rules that deliver through the realtime channel;
            send_time must match the current minute exactly

A rule fires at most once per calendar day in its own timezone. Each tick
is guarded so an overlapping tick of the same cadence is skipped, and an
error in one rule never stops the others.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.jobs.ticker import DailyTicker, IntervalTicker, RunGuard, Ticker
from app.models.domain.audience_domain import (
    ROLE_PARENT,
    ROLE_PLAYER,
    AllAudience,
    AudienceDescriptor,
    RolesAudience,
    ScopedAudience,
    canonicalize,
)
from app.models.domain.delivery_domain import BatchResult, OutboundMessage
from app.models.domain.snapshot_domain import DomainSnapshot
from app.models.domain.trigger_domain import Cadence, Channel, RuleKind, ScheduleMode, TriggerRule
from app.repositories.domain_snapshot_repository import domain_snapshot_repository
from app.repositories.trigger_rule_repository import trigger_rule_repository
from app.services.audience_resolver import audience_resolver
from app.services.message_composer import (
    RecipientGroup,
    compose_messages,
    group_by_parent,
    payment_overdue_context,
    recipient_context,
    render_template,
    session_reminder_context,
    subscription_expiring_context,
)
from app.services.realtime.broadcast_hub import broadcast_hub
from app.services.sms.delivery_channel import delivery_channel

logger = get_logger(__name__)

# Record-driven kinds address parents and players when the audience is "all"
RECORD_AUDIENCE = RolesAudience(roles=frozenset({ROLE_PARENT, ROLE_PLAYER}))

RECORD_KINDS = (RuleKind.SUBSCRIPTION_EXPIRING, RuleKind.PAYMENT_OVERDUE, RuleKind.SESSION_REMINDER)


class TriggerSchedulerError(Exception):
    """Custom exception for trigger scheduler operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


@dataclass(slots=True)
class FireOutcome:
    """What one rule evaluation did."""

    fired: bool = False
    checked: bool = False
    recipients: int = 0
    sent: int = 0
    failed: int = 0


class TickMetrics:
    """Metrics tracking for one scheduler tick."""

    def __init__(self, cadence: Cadence):
        self.cadence = cadence
        self.start_time = datetime.now(UTC)
        self.rules_evaluated = 0
        self.rules_due = 0
        self.rules_fired = 0
        self.rules_checked = 0
        self.rules_failed = 0
        self.sent = 0
        self.failed = 0
        self.total_duration_seconds = 0.0
        self.errors: list[dict] = []

    def record_outcome(self, rule: TriggerRule, outcome: FireOutcome):
        if outcome.fired:
            self.rules_fired += 1
        if outcome.checked:
            self.rules_checked += 1
        self.sent += outcome.sent
        self.failed += outcome.failed

        logger.info(
            "Trigger rule evaluated",
            rule_id=rule.id,
            kind=rule.kind.value,
            cadence=self.cadence.value,
            fired=outcome.fired,
            checked=outcome.checked,
            recipients=outcome.recipients,
            sent=outcome.sent,
            failed=outcome.failed,
        )

    def record_failure(self, rule: TriggerRule, error: Exception):
        self.rules_failed += 1
        self.errors.append(
            {
                "rule_id": rule.id,
                "error": str(error),
                "error_type": type(error).__name__,
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )
        logger.error(
            "Trigger rule failed",
            rule_id=rule.id,
            kind=rule.kind.value,
            cadence=self.cadence.value,
            error=str(error),
            error_type=type(error).__name__,
        )

    def finalize(self):
        self.total_duration_seconds = (datetime.now(UTC) - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "job_run": "trigger_scheduler",
            "cadence": self.cadence.value,
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "rules_evaluated": self.rules_evaluated,
            "rules_due": self.rules_due,
            "rules_fired": self.rules_fired,
            "rules_checked": self.rules_checked,
            "rules_failed": self.rules_failed,
            "sent": self.sent,
            "failed": self.failed,
            "errors": list(self.errors),
        }


def should_fire(rule: TriggerRule, now: datetime, match_minute: bool = True) -> bool:
    """
    Decide whether `rule` is due at `now`.

    Args:
        rule: Rule to evaluate
        now: Current instant (naive values are treated as UTC)
        match_minute: Require send_time to equal the current local HH:MM

    Returns:
        bool: True when the rule has not fired today, the time matches and
        the schedule window contains today
    """
    if not rule.enabled:
        return False
    local = rule.local_moment(now)
    if rule.fired_on(local.today):
        return False
    if match_minute and rule.send_time != local.hour_minute:
        return False
    return rule.in_window(local)


class TriggerScheduler:
    """
    Background job evaluating trigger rules on a coarse and a fine cadence.

    Collaborators are injectable so tests can run ticks against fakes with
    synthetic clocks.
    """

    def __init__(
        self,
        rule_repository=None,
        snapshot_repository=None,
        channel=None,
        hub=None,
        resolver=None,
        clock: Callable[[], datetime] | None = None,
        timezone: str | None = None,
        daily_time: str | None = None,
        fine_interval_seconds: int | None = None,
        max_concurrent_rules: int | None = None,
    ):
        self.rule_repository = rule_repository or trigger_rule_repository
        self.snapshot_repository = snapshot_repository or domain_snapshot_repository
        self.channel = channel or delivery_channel
        self.hub = hub or broadcast_hub
        self.resolver = resolver or audience_resolver
        self.clock = clock or (lambda: datetime.now(UTC))
        self.timezone = timezone or settings.SCHEDULER_TIMEZONE
        self.daily_time = daily_time or settings.SCHEDULER_DAILY_TIME
        self.fine_interval_seconds = fine_interval_seconds or settings.SCHEDULER_FINE_INTERVAL_SECONDS
        self.max_concurrent_rules = max_concurrent_rules or settings.SCHEDULER_MAX_CONCURRENT_RULES

        self.guards: dict[Cadence, RunGuard] = {cadence: RunGuard(cadence.value) for cadence in Cadence}
        self.last_tick_time: dict[Cadence, datetime] = {}
        self.last_results: dict[Cadence, dict] = {}
        self._tickers: list[Ticker] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def build_tickers(self) -> list[Ticker]:
        return [
            DailyTicker(
                "trigger-coarse",
                lambda now: self.tick(now, Cadence.COARSE),
                hour_minute=self.daily_time,
                timezone=self.timezone,
                clock=self.clock,
            ),
            IntervalTicker(
                "trigger-fine",
                lambda now: self.tick(now, Cadence.FINE),
                interval_seconds=self.fine_interval_seconds,
                clock=self.clock,
            ),
        ]

    def start(self, tickers: list[Ticker] | None = None) -> None:
        if self._tickers:
            logger.warning("Trigger scheduler already started")
            return
        self._tickers = tickers if tickers is not None else self.build_tickers()
        for ticker in self._tickers:
            ticker.start()
        logger.info(
            "Trigger scheduler started",
            timezone=self.timezone,
            daily_time=self.daily_time,
            fine_interval_seconds=self.fine_interval_seconds,
        )

    async def stop(self) -> None:
        for ticker in self._tickers:
            await ticker.stop()
        self._tickers = []
        logger.info("Trigger scheduler stopped")

    @property
    def started(self) -> bool:
        return bool(self._tickers)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self, now: datetime, cadence: Cadence) -> dict:
        """
        Run one evaluation pass for `cadence`.

        Returns:
            dict: Tick metrics, or {"skipped": True, ...} when a tick of the
            same cadence is still running

        Raises:
            TriggerSchedulerError: If rules or the audience snapshot cannot be loaded
        """
        guard = self.guards[cadence]
        if not await guard.try_acquire():
            logger.warning("Trigger scheduler tick already running, skipping", cadence=cadence.value)
            return {"skipped": True, "reason": "already_running", "cadence": cadence.value}

        metrics = TickMetrics(cadence)
        try:
            rules = await self._load_rules(cadence)
            metrics.rules_evaluated = len(rules)

            match_minute = cadence is Cadence.FINE
            due = [rule for rule in rules if should_fire(rule, now, match_minute=match_minute)]
            metrics.rules_due = len(due)

            if cadence is Cadence.COARSE:
                self._warn_ignored_send_times(due)

            if due:
                snapshot = await self._load_snapshot()
                semaphore = asyncio.Semaphore(self.max_concurrent_rules)
                await asyncio.gather(
                    *(self._process_rule_with_semaphore(semaphore, rule, now, snapshot, metrics) for rule in due)
                )

            metrics.finalize()
            result = metrics.to_dict()
            self.last_tick_time[cadence] = now
            self.last_results[cadence] = result

            if due:
                logger.info("Trigger scheduler tick completed", **{k: v for k, v in result.items() if k != "errors"})
            return result

        finally:
            await guard.release()

    def _warn_ignored_send_times(self, rules: list[TriggerRule]) -> None:
        """Daily-cadence rules go out at daily_time whatever their own send_time says."""
        for rule in rules:
            if rule.send_time != self.daily_time:
                logger.warning(
                    "Trigger rule send_time ignored on daily cadence",
                    rule_id=rule.id,
                    send_time=rule.send_time,
                    daily_time=self.daily_time,
                )

    async def run_now(self, cadence: Cadence) -> dict:
        """Trigger a tick on demand; honours the same overlap guard."""
        return await self.tick(self.clock(), cadence)

    async def _load_rules(self, cadence: Cadence) -> list[TriggerRule]:
        try:
            rules = await self.rule_repository.list_enabled(self.timezone)
        except Exception as e:
            logger.error("Failed to load trigger rules", error=str(e), error_type=type(e).__name__)
            raise TriggerSchedulerError(f"Failed to load trigger rules: {e}", operation="load_rules") from e
        return [rule for rule in rules if rule.cadence is cadence]

    async def _load_snapshot(self) -> DomainSnapshot:
        try:
            return await self.snapshot_repository.load_audience_snapshot()
        except Exception as e:
            logger.error("Failed to load audience snapshot", error=str(e), error_type=type(e).__name__)
            raise TriggerSchedulerError(f"Failed to load audience snapshot: {e}", operation="load_snapshot") from e

    async def _process_rule_with_semaphore(
        self,
        semaphore: asyncio.Semaphore,
        rule: TriggerRule,
        now: datetime,
        snapshot: DomainSnapshot,
        metrics: TickMetrics,
    ) -> None:
        async with semaphore:
            try:
                outcome = await self.process_rule(rule, now, snapshot)
                metrics.record_outcome(rule, outcome)
            except Exception as e:
                metrics.record_failure(rule, e)

    # ------------------------------------------------------------------
    # Rule processing
    # ------------------------------------------------------------------

    async def process_rule(self, rule: TriggerRule, now: datetime, snapshot: DomainSnapshot) -> FireOutcome:
        """Fire a due rule: gather records, dispatch, then record run-state."""
        today = rule.local_moment(now).today
        offset = 0 if rule.schedule_mode is ScheduleMode.SPECIFIC_DATE else rule.offset_days

        records: list = []
        if rule.kind in RECORD_KINDS:
            records = await self._matching_records(rule.kind, today, offset)
            if rule.kind.is_condition_bearing and not records:
                await self.rule_repository.mark_checked(rule.id, now)
                return FireOutcome(checked=True)

        audience = self._effective_audience(rule)
        outcome = FireOutcome(fired=True)

        if Channel.SMS in rule.channels:
            recipients, result = await self._dispatch_sms(rule, audience, records, today, offset, snapshot)
            outcome.recipients += recipients
            outcome.sent += result.successful
            outcome.failed += result.failed

        if Channel.REALTIME in rule.channels:
            outcome.recipients += await self._dispatch_realtime(rule, audience, today, offset, snapshot)

        await self.rule_repository.record_fire(rule.id, now, outcome.recipients)
        return outcome

    def _effective_audience(self, rule: TriggerRule) -> AudienceDescriptor:
        audience = canonicalize(rule.audience)
        if rule.kind in RECORD_KINDS and isinstance(audience, AllAudience):
            return RECORD_AUDIENCE
        return audience

    async def _matching_records(self, kind: RuleKind, today: date, offset: int) -> list:
        if kind is RuleKind.SUBSCRIPTION_EXPIRING:
            return await self.snapshot_repository.subscriptions_expiring_on(today + timedelta(days=offset))
        if kind is RuleKind.PAYMENT_OVERDUE:
            return await self.snapshot_repository.overdue_subscriptions(today - timedelta(days=offset))
        if kind is RuleKind.SESSION_REMINDER:
            return await self.snapshot_repository.sessions_on(today + timedelta(days=offset))
        return []

    def _record_contexts(
        self, rule: TriggerRule, groups: list[RecipientGroup], today: date, offset: int
    ) -> list[dict]:
        if rule.kind is RuleKind.SUBSCRIPTION_EXPIRING:
            return [subscription_expiring_context(group, offset) for group in groups]
        if rule.kind is RuleKind.PAYMENT_OVERDUE:
            return [
                payment_overdue_context(group, max((today - s.end_date).days for s in group.items))
                for group in groups
            ]
        return [session_reminder_context(group, today + timedelta(days=offset)) for group in groups]

    async def _dispatch_sms(
        self,
        rule: TriggerRule,
        audience: AudienceDescriptor,
        records: list,
        today: date,
        offset: int,
        snapshot: DomainSnapshot,
    ) -> tuple[int, BatchResult]:
        recipients = self.resolver.resolve(audience, snapshot, Channel.SMS)

        if rule.kind in RECORD_KINDS:
            # One message per parent phone, limited to parents the audience covers
            allowed = {recipient.address for recipient in recipients}
            groups = [
                group
                for group in group_by_parent(records, self.resolver.country_code)
                if group.address in allowed
            ]
            messages = compose_messages(
                rule.message_template, groups, self._record_contexts(rule, groups, today, offset)
            )
        else:
            messages = [
                OutboundMessage(
                    phone=recipient.address,
                    body=render_template(rule.message_template, recipient_context(recipient)),
                    name=recipient.name,
                )
                for recipient in recipients
            ]

        if not messages:
            return 0, BatchResult()

        result = await self.channel.send_bulk(messages)
        logger.info("Trigger rule SMS batch sent", rule_id=rule.id, batch=result.to_dict())

        await self.rule_repository.log_sms(
            sender_id=rule.created_by,
            recipients=[{"phone": m.phone, "name": m.name} for m in messages],
            message=messages[0].body if len({m.body for m in messages}) == 1 else rule.message_template,
            template_id=f"auto_{rule.kind.value}",
            result=result,
            branch_id=audience.single_branch_id() if isinstance(audience, ScopedAudience) else None,
        )
        return len(messages), result

    async def _dispatch_realtime(
        self,
        rule: TriggerRule,
        audience: AudienceDescriptor,
        today: date,
        offset: int,
        snapshot: DomainSnapshot,
    ) -> int:
        recipients = self.resolver.resolve(audience, snapshot, Channel.REALTIME)
        content = render_template(
            rule.message_template,
            {"date": today.isoformat(), "days": offset},
        )
        branch_id = audience.single_branch_id() if isinstance(audience, ScopedAudience) else None

        announcement = await self.rule_repository.create_announcement(
            title=rule.title or rule.kind.value.replace("_", " ").title(),
            content=content,
            announcement_type=rule.announcement_type,
            author_id=rule.created_by,
            audience=audience,
            target_branch_id=branch_id,
        )
        await self.hub.emit_announcement_created(announcement, audience)
        return len(recipients)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> dict:
        """Current scheduler state and cadence configuration."""

        def _cadence_status(cadence: Cadence) -> dict:
            last = self.last_tick_time.get(cadence)
            return {
                "is_running": self.guards[cadence].is_running,
                "last_tick_time": last.isoformat() if last else None,
                "last_result": self.last_results.get(cadence),
            }

        coarse = _cadence_status(Cadence.COARSE)
        coarse["daily_time"] = self.daily_time
        fine = _cadence_status(Cadence.FINE)
        fine["interval_seconds"] = self.fine_interval_seconds

        return {
            "job_name": "trigger_scheduler",
            "started": self.started,
            "timezone": self.timezone,
            "max_concurrent_rules": self.max_concurrent_rules,
            "cadences": {Cadence.COARSE.value: coarse, Cadence.FINE.value: fine},
        }

    def health_check(self) -> dict:
        """Unhealthy when the fine cadence has not ticked for three intervals."""
        now = self.clock()
        last_fine = self.last_tick_time.get(Cadence.FINE)
        overdue_threshold = timedelta(seconds=self.fine_interval_seconds * 3)
        is_overdue = self.started and last_fine is not None and (now - last_fine) > overdue_threshold

        health_status = {
            "healthy": not is_overdue,
            "service": "trigger_scheduler",
            "started": self.started,
            "last_fine_tick": last_fine.isoformat() if last_fine else None,
            "is_overdue": is_overdue,
        }
        if is_overdue:
            health_status["warning"] = f"Fine cadence overdue by {(now - last_fine).total_seconds():.0f} seconds"
        return health_status


# Singleton instance for application use
trigger_scheduler = TriggerScheduler()


async def start_trigger_scheduler():
    """
    Run the trigger scheduler headless until cancelled.

    Used by the worker entrypoint when the scheduler runs outside the API
    process.
    """
    from app.db.pool import db_pool

    if not db_pool.initialized:
        await db_pool.initialize()

    trigger_scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await trigger_scheduler.stop()
        await delivery_channel.close()
        await db_pool.close()
