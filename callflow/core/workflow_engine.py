"""
Workflow execution engine.

Executions are queued FIFO and started by a periodic tick
(``process_queue``, driven by an APScheduler interval job) while fewer than
``max_concurrent_executions`` are running. Each running execution is an
asyncio task that walks its actions strictly in order. A failing action with
retry budget left goes back to pending and the execution is re-entered after
``retry_delay * backoff_multiplier ** (retry_count - 1)`` seconds; it stays in
the active set while it waits. A failing action without budget fails the
execution and skips the rest.

Cancellation is cooperative: the status flips immediately and the execution
leaves the active set, and the action loop stops at the next action boundary.
"""

import asyncio
import logging
from collections import deque
from datetime import timedelta
from typing import Any, Deque, Dict, List, Optional, Union
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from callflow.config.constants import (
    FINISHED_EXECUTION_LIMIT,
    LOGGER_NAME,
    MAX_CONCURRENT_EXECUTIONS,
    WILDCARD,
    WORKFLOW_QUEUE_JOB_ID,
    WORKFLOW_TICK_SECONDS,
)
from callflow.core.context_cache import ContextCache
from callflow.core.workflow_actions import ActionExecutor
from callflow.core.workflow_templates import default_workflow_templates
from callflow.errors import (
    ExecutionNotFoundError,
    InvalidInputError,
    InvalidWorkflowError,
    WorkflowInactiveError,
    WorkflowNotFoundError,
)
from callflow.models.business import BusinessContext
from callflow.models.call import TIME_PATTERN
from callflow.models.conversation import utcnow
from callflow.models.workflow import (
    ActionStatus,
    ActionType,
    ConditionOperator,
    DataSource,
    ExecutionStatus,
    ScheduleFrequency,
    TriggerType,
    WorkflowActionResult,
    WorkflowCondition,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowExecutionRequest,
    WorkflowTrigger,
)
from callflow.services.business_data import BusinessDataProvider

logger = logging.getLogger(LOGGER_NAME)

# APScheduler cron weekday names, indexed with 0=Sunday
CRON_WEEKDAYS = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]


def _normalize(value: Any) -> Any:
    return getattr(value, "value", value)


def compare_values(actual: Any, operator: ConditionOperator, expected: Any) -> bool:
    """Apply a condition operator; type mismatches evaluate to False."""
    actual = _normalize(actual)
    if operator == ConditionOperator.EXISTS:
        return actual is not None
    if operator == ConditionOperator.NOT_EXISTS:
        return actual is None
    if operator == ConditionOperator.EQUALS:
        return actual == expected
    if operator == ConditionOperator.NOT_EQUALS:
        return actual != expected
    if operator in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        try:
            left, right = float(actual), float(expected)
        except (TypeError, ValueError):
            return False
        return left > right if operator == ConditionOperator.GREATER_THAN else left < right
    if operator in (ConditionOperator.CONTAINS, ConditionOperator.NOT_CONTAINS):
        if actual is None:
            found = False
        elif isinstance(actual, (list, tuple, set)):
            found = expected in actual
        else:
            found = str(expected).lower() in str(actual).lower()
        return found if operator == ConditionOperator.CONTAINS else not found
    return False


def _lookup(source: Any, path: str) -> Any:
    value = source
    for part in path.split("."):
        if value is None:
            return None
        if isinstance(value, dict):
            value = value.get(part)
        else:
            value = getattr(value, part, None)
    return value


class WorkflowEngine:
    """Registers workflow definitions and runs their executions.

    Args:
        context_cache: Source of the business context handed to every action
        action_executor: Runs individual actions
        data_provider: Resolves customer/invoice/communication condition values
        max_concurrent_executions: Hard cap on simultaneously running executions
        tick_seconds: Interval of the queue processing job
        register_templates: Whether to register the built-in templates
        max_finished_executions: Terminal executions kept for status lookups;
            the oldest are evicted first
    """

    def __init__(
        self,
        context_cache: ContextCache,
        action_executor: ActionExecutor,
        data_provider: Optional[BusinessDataProvider] = None,
        max_concurrent_executions: int = MAX_CONCURRENT_EXECUTIONS,
        tick_seconds: float = WORKFLOW_TICK_SECONDS,
        register_templates: bool = True,
        max_finished_executions: int = FINISHED_EXECUTION_LIMIT,
    ):
        if max_concurrent_executions < 1:
            raise ValueError("max_concurrent_executions must be at least 1")
        if max_finished_executions < 1:
            raise ValueError("max_finished_executions must be at least 1")
        self.context_cache = context_cache
        self.action_executor = action_executor
        self.data_provider = data_provider
        self.max_concurrent_executions = max_concurrent_executions
        self.tick_seconds = tick_seconds
        self.max_finished_executions = max_finished_executions

        self.workflows: Dict[str, WorkflowDefinition] = {}
        self.executions: Dict[str, WorkflowExecution] = {}
        self.queue: Deque[str] = deque()
        self.active: Dict[str, WorkflowExecution] = {}
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._waiting: Dict[str, asyncio.Task] = {}
        self._done: Dict[str, asyncio.Event] = {}
        self._finished: Deque[str] = deque()
        self._lock = asyncio.Lock()

        self.scheduler = AsyncIOScheduler()
        self.running = False

        if register_templates:
            for template in default_workflow_templates():
                self.workflows[template.id] = template

    # Scheduler lifecycle

    def start(self) -> None:
        """Start the queue tick and the time-based trigger jobs."""
        if self.running:
            logger.warning("Workflow scheduler already running")
            return
        self.scheduler.add_job(
            self.process_queue,
            trigger=IntervalTrigger(seconds=self.tick_seconds),
            id=WORKFLOW_QUEUE_JOB_ID,
            name="Process workflow execution queue",
            replace_existing=True,
        )
        for definition in self.workflows.values():
            self._schedule_time_trigger(definition)
        self.scheduler.start()
        self.running = True
        logger.info("Workflow scheduler started")

    def stop(self) -> None:
        if not self.running:
            return
        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("Workflow scheduler stopped")

    def _time_job_id(self, workflow_id: str) -> str:
        return f"workflow_trigger_{workflow_id}"

    def _schedule_time_trigger(self, definition: WorkflowDefinition) -> None:
        job_id = self._time_job_id(definition.id)
        if self.scheduler.get_job(job_id):
            self.scheduler.remove_job(job_id)

        schedule = definition.trigger.schedule
        if (
            not definition.is_active
            or definition.trigger.type != TriggerType.TIME_BASED
            or schedule is None
            or schedule.frequency == ScheduleFrequency.ONCE
            # Templates have no concrete business to run for
            or definition.business_id == WILDCARD
        ):
            return

        hour, minute = (schedule.time or "00:00").split(":")
        cron = {"hour": int(hour), "minute": int(minute), "timezone": schedule.timezone}
        if schedule.frequency == ScheduleFrequency.WEEKLY:
            cron["day_of_week"] = CRON_WEEKDAYS[schedule.day_of_week or 0]
        elif schedule.frequency == ScheduleFrequency.MONTHLY:
            cron["day"] = schedule.day_of_month or 1
        self.scheduler.add_job(
            self.fire_time_trigger,
            trigger=CronTrigger(**cron),
            args=[definition.id],
            id=job_id,
            name=f"Time trigger for {definition.name}",
            replace_existing=True,
        )
        logger.info(f"Scheduled time trigger for workflow {definition.id}")

    async def fire_time_trigger(self, workflow_id: str) -> Optional[str]:
        """Run a time-based workflow if its conditions hold."""
        definition = self.get_workflow(workflow_id)
        if not definition.is_active:
            return None
        if not await self.evaluate_trigger(definition.trigger, definition.business_id):
            logger.info(f"Time trigger for workflow {workflow_id} skipped: conditions not met")
            return None
        return await self.execute_workflow(
            WorkflowExecutionRequest(
                workflow_id=workflow_id,
                business_id=definition.business_id,
                triggered_by=f"schedule:{definition.trigger.id}",
            )
        )

    # Definitions

    def validate_workflow(self, definition: WorkflowDefinition) -> List[str]:
        """Check what the model alone cannot: schedule times and timezones."""
        errors = []
        schedule = definition.trigger.schedule
        if schedule is None:
            return errors
        if schedule.time is not None and not TIME_PATTERN.match(schedule.time):
            errors.append(f"Schedule time must be HH:MM in 24-hour format, got '{schedule.time}'")
        try:
            ZoneInfo(schedule.timezone)
        except (KeyError, ValueError):
            errors.append(f"Unknown timezone '{schedule.timezone}'")
        return errors

    def register_workflow(self, definition: Union[WorkflowDefinition, Dict[str, Any]]) -> WorkflowDefinition:
        if isinstance(definition, dict):
            definition = WorkflowDefinition(**definition)
        if definition.id in self.workflows:
            raise InvalidInputError(f"Workflow '{definition.id}' is already registered")
        errors = self.validate_workflow(definition)
        if errors:
            raise InvalidWorkflowError(errors)
        if self.running:
            self._schedule_time_trigger(definition)
        self.workflows[definition.id] = definition
        logger.info(f"Registered workflow {definition.id} '{definition.name}' for business {definition.business_id}")
        return definition

    def update_workflow(self, workflow_id: str, **changes) -> WorkflowDefinition:
        """Store a new version of a workflow; running executions keep their version."""
        current = self.get_workflow(workflow_id)
        data = {
            **current.model_dump(),
            **changes,
            "id": workflow_id,
            "version": current.version + 1,
            "created_at": current.created_at,
            "updated_at": utcnow(),
        }
        updated = WorkflowDefinition(**data)
        errors = self.validate_workflow(updated)
        if errors:
            raise InvalidWorkflowError(errors)
        if self.running:
            self._schedule_time_trigger(updated)
        self.workflows[workflow_id] = updated
        logger.info(f"Updated workflow {workflow_id} to version {updated.version}")
        return updated

    def deactivate_workflow(self, workflow_id: str) -> WorkflowDefinition:
        return self.update_workflow(workflow_id, is_active=False)

    def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        try:
            return self.workflows[workflow_id]
        except KeyError:
            raise WorkflowNotFoundError(workflow_id) from None

    def get_workflows(self, business_id: str) -> List[WorkflowDefinition]:
        return [w for w in self.workflows.values() if w.business_id in (business_id, WILDCARD)]

    # Triggers

    async def evaluate_trigger(
        self,
        trigger: WorkflowTrigger,
        business_id: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Check every trigger condition; manual triggers always fire."""
        if trigger.type == TriggerType.MANUAL:
            return True
        business_context: Optional[BusinessContext] = None
        for condition in trigger.conditions:
            if condition.data_source == DataSource.BUSINESS and business_context is None:
                business_context = await self.context_cache.get(business_id)
            actual = await self._condition_value(condition, business_id, context or {}, business_context)
            if not compare_values(actual, condition.operator, condition.value):
                return False
        return True

    async def _condition_value(
        self,
        condition: WorkflowCondition,
        business_id: str,
        context: Dict[str, Any],
        business_context: Optional[BusinessContext],
    ) -> Any:
        if condition.data_source in (DataSource.CONTEXT, DataSource.EVENT):
            return _lookup(context, condition.field)
        if condition.data_source == DataSource.BUSINESS:
            return _lookup(business_context, condition.field)
        if self.data_provider is None:
            return None
        return await self.data_provider.get_record_value(
            business_id, condition.data_source.value, condition.field
        )

    async def dispatch_event(
        self, event: str, business_id: str, context: Optional[Dict[str, Any]] = None
    ) -> List[str]:
        """Queue every active event-based workflow listening for ``event``."""
        execution_ids = []
        for definition in self.get_workflows(business_id):
            trigger = definition.trigger
            if not definition.is_active or trigger.type != TriggerType.EVENT_BASED or trigger.event != event:
                continue
            try:
                if not await self.evaluate_trigger(trigger, business_id, context):
                    continue
                execution_ids.append(
                    await self.execute_workflow(
                        WorkflowExecutionRequest(
                            workflow_id=definition.id,
                            business_id=business_id,
                            triggered_by=f"event:{event}",
                            context=dict(context or {}),
                        )
                    )
                )
            except Exception as e:
                logger.error(f"Could not trigger workflow {definition.id} for event {event}: {e}", exc_info=True)
        return execution_ids

    # Executions

    async def execute_workflow(self, request: WorkflowExecutionRequest) -> str:
        """Enqueue an execution and return its id.

        Raises:
            WorkflowNotFoundError: Unknown workflow id
            WorkflowInactiveError: The workflow is deactivated
            InvalidInputError: The workflow belongs to another business
        """
        definition = self.get_workflow(request.workflow_id)
        if not definition.is_active:
            raise WorkflowInactiveError(f"Workflow '{definition.id}' is not active")
        if definition.business_id not in (WILDCARD, request.business_id):
            raise InvalidInputError(
                f"Workflow '{definition.id}' does not belong to business '{request.business_id}'"
            )

        execution = WorkflowExecution(
            workflow_id=definition.id,
            workflow_version=definition.version,
            business_id=request.business_id,
            triggered_by=request.triggered_by,
            context=request.context,
        )
        execution.action_results = [
            WorkflowActionResult(action_id=action.id) for action in definition.actions
        ]
        async with self._lock:
            self.executions[execution.id] = execution
            self._definitions[execution.id] = definition
            self._done[execution.id] = asyncio.Event()
            self.queue.append(execution.id)
        logger.info(f"Queued execution {execution.id} of workflow {definition.id} ({request.triggered_by})")
        return execution.id

    def get_execution_status(self, execution_id: str) -> WorkflowExecution:
        try:
            return self.executions[execution_id]
        except KeyError:
            raise ExecutionNotFoundError(execution_id) from None

    def get_executions(self, business_id: Optional[str] = None) -> List[WorkflowExecution]:
        return [
            e for e in self.executions.values() if business_id is None or e.business_id == business_id
        ]

    async def process_queue(self) -> List[str]:
        """Start pending executions while the concurrency cap allows."""
        started = []
        async with self._lock:
            while self.queue and len(self.active) < self.max_concurrent_executions:
                execution_id = self.queue.popleft()
                execution = self.executions[execution_id]
                if execution.status != ExecutionStatus.PENDING:
                    continue
                execution.status = ExecutionStatus.RUNNING
                execution.started_at = utcnow()
                self.active[execution_id] = execution
                self._tasks[execution_id] = asyncio.create_task(self._advance(execution_id))
                started.append(execution_id)
        if started:
            logger.info(f"Started {len(started)} execution(s); {len(self.queue)} still queued")
        return started

    async def _advance(self, execution_id: str) -> None:
        execution = self.executions.get(execution_id)
        if execution is None or execution.status != ExecutionStatus.RUNNING:
            return
        definition = self._definitions[execution_id]
        try:
            context = await self.context_cache.get(execution.business_id)
            await self._run_actions(execution, definition, context)
        except Exception as e:
            logger.error(f"Execution {execution_id} failed: {e}", exc_info=True)
            await self._finish(execution, ExecutionStatus.FAILED, str(e))

    async def _resume_after(self, execution_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self._waiting.pop(execution_id, None)
        await self._advance(execution_id)

    def _schedule_resume(self, execution: WorkflowExecution, delay: float) -> None:
        task = asyncio.create_task(self._resume_after(execution.id, delay))
        self._tasks[execution.id] = task
        self._waiting[execution.id] = task

    async def _run_actions(
        self,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        context: BusinessContext,
    ) -> None:
        pairs = list(zip(definition.actions, execution.action_results))
        for index, (action, result) in enumerate(pairs):
            if execution.status != ExecutionStatus.RUNNING:
                return
            if result.status in (ActionStatus.COMPLETED, ActionStatus.SKIPPED):
                continue

            result.status = ActionStatus.RUNNING
            result.started_at = utcnow()
            result.next_attempt_at = None
            try:
                output = await self.action_executor.execute(action, execution, context)
            except Exception as e:
                result.error = str(e)
                policy = action.retry_policy
                if execution.status == ExecutionStatus.RUNNING and policy and result.retry_count < policy.max_retries:
                    result.retry_count += 1
                    result.status = ActionStatus.PENDING
                    delay = policy.delay_for(result.retry_count)
                    result.next_attempt_at = utcnow() + timedelta(seconds=delay)
                    logger.warning(
                        f"Action {action.id} of execution {execution.id} failed "
                        f"(retry {result.retry_count}/{policy.max_retries} in {delay}s): {e}"
                    )
                    self._schedule_resume(execution, delay)
                    return

                result.status = ActionStatus.FAILED
                result.completed_at = utcnow()
                if execution.status != ExecutionStatus.RUNNING:
                    return
                for _, remaining in pairs[index + 1:]:
                    remaining.status = ActionStatus.SKIPPED
                logger.error(f"Action {action.id} of execution {execution.id} failed: {e}")
                await self._finish(execution, ExecutionStatus.FAILED, f"Action '{action.id}' failed: {e}")
                return

            result.status = ActionStatus.COMPLETED
            result.completed_at = utcnow()
            result.result = output
            result.error = None

            if action.type == ActionType.DELAY and index < len(pairs) - 1:
                delay = float(output.get("delay_seconds", 0))
                if delay > 0 and execution.status == ExecutionStatus.RUNNING:
                    pairs[index + 1][1].next_attempt_at = utcnow() + timedelta(seconds=delay)
                    self._schedule_resume(execution, delay)
                    return

        if execution.status == ExecutionStatus.RUNNING:
            await self._finish(execution, ExecutionStatus.COMPLETED)

    async def _finish(
        self, execution: WorkflowExecution, status: ExecutionStatus, error: Optional[str] = None
    ) -> None:
        async with self._lock:
            if execution.is_terminal:
                return
            execution.status = status
            execution.completed_at = utcnow()
            execution.error = error
            if status == ExecutionStatus.FAILED:
                for result in execution.action_results:
                    if result.status == ActionStatus.PENDING:
                        result.status = ActionStatus.SKIPPED
            self.active.pop(execution.id, None)
            self._tasks.pop(execution.id, None)
            self._retire(execution.id)
        self._done[execution.id].set()
        logger.info(f"Execution {execution.id} finished with status {status.value}")

    def _retire(self, execution_id: str) -> None:
        # Caller holds self._lock
        self._definitions.pop(execution_id, None)
        self._finished.append(execution_id)
        while len(self._finished) > self.max_finished_executions:
            evicted = self._finished.popleft()
            self.executions.pop(evicted, None)
            self._done.pop(evicted, None)

    async def cancel_execution(self, execution_id: str) -> bool:
        """Cancel a running execution.

        Returns:
            True if the execution was running and is now cancelled, False otherwise
        """
        execution = self.get_execution_status(execution_id)
        async with self._lock:
            if execution.status != ExecutionStatus.RUNNING:
                return False
            execution.status = ExecutionStatus.CANCELLED
            execution.completed_at = utcnow()
            for result in execution.action_results:
                if result.status == ActionStatus.PENDING:
                    result.status = ActionStatus.SKIPPED
            self.active.pop(execution_id, None)
            self._tasks.pop(execution_id, None)
            waiting = self._waiting.pop(execution_id, None)
            self._retire(execution_id)
        # Only a sleeping retry or delay is interrupted; a running action finishes
        if waiting is not None:
            waiting.cancel()
        self._done[execution_id].set()
        logger.info(f"Cancelled execution {execution_id}")
        return True

    async def wait_for_execution(
        self, execution_id: str, timeout: Optional[float] = None
    ) -> WorkflowExecution:
        """Block until the execution reaches a terminal status."""
        execution = self.get_execution_status(execution_id)
        await asyncio.wait_for(self._done[execution_id].wait(), timeout)
        return execution

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Tick until the queue and active set are empty."""
        async def _loop():
            while self.queue or self.active:
                await self.process_queue()
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_loop(), timeout)
