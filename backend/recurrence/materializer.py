"""
Occurrence materialization for recurring task definitions.

Turns due occurrences (computed by the evaluator) into concrete tasks through
a task-creation collaborator, and advances each definition's persisted cursor.

Processing discipline:
- Definitions are visited sequentially; occurrences within a definition are
  handled strictly in ascending order.
- Each occurrence is its own unit of work: idempotency check, then creation.
  There is no transaction spanning a definition or a batch, so a crash leaves
  a resumable cursor.
- The cursor only moves forward, and never past an occurrence that failed,
  so a re-run retries failed occurrences and skips materialized ones.
- A failed occurrence holds the cursor back but not the pass: later
  occurrences in the window are still attempted. The per-pass cap counts
  new creations only, so existing instances never use up a pass.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Iterator, List, Optional, Protocol, Sequence, Union

from time_utils import ensure_utc
from recurrence.errors import DefinitionError, InfrastructureError
from recurrence.evaluator import RecurrenceRule, occurrences_in_range

logger = logging.getLogger(__name__)

DEFAULT_MAX_OCCURRENCES_PER_PASS = 100
DEFAULT_MAX_TASKS = 1000
CURSOR_RESOLUTION = timedelta(microseconds=1)
EVALUATION_PAGE_SIZE = 500


class TaskCreator(Protocol):
    def create_task(self, definition: Any, occurrence: datetime) -> Any:
        """Create a task for one occurrence; returns an object with id and title."""


class DefinitionStore(Protocol):
    def list_active_definitions(self, definition_ids: Optional[Sequence[int]] = None) -> Sequence[Any]: ...

    def load_cursor(self, definition_id: int) -> Optional[datetime]: ...

    def save_cursor(self, definition_id: int, instant: datetime) -> None: ...

    def instance_exists(self, definition_id: int, occurrence: datetime) -> bool: ...


@dataclass
class MaterializationOptions:
    dry_run: bool = False
    process_until: Optional[datetime] = None
    # Counts new creations (or previews); existing instances are free
    max_occurrences: int = DEFAULT_MAX_OCCURRENCES_PER_PASS
    # Failed attempts tolerated before deferring; defaults to max_occurrences
    max_failures: Optional[int] = None


@dataclass
class BatchOptions:
    dry_run: bool = False
    max_tasks: int = DEFAULT_MAX_TASKS
    definition_ids: Optional[Sequence[int]] = None
    process_until: Optional[datetime] = None
    max_occurrences_per_definition: int = DEFAULT_MAX_OCCURRENCES_PER_PASS


@dataclass
class GeneratedTask:
    definition_id: int
    occurrence: datetime
    title: Optional[str] = None
    # None for dry-run previews
    task_id: Optional[int] = None


@dataclass
class MaterializationError:
    definition_id: Optional[int]
    message: str
    occurrence: Optional[datetime] = None
    # "occurrence" or "definition"
    kind: str = "occurrence"


@dataclass
class DefinitionResult:
    definition_id: Optional[int]
    created: List[GeneratedTask] = field(default_factory=list)
    errors: List[MaterializationError] = field(default_factory=list)
    skipped_existing: int = 0
    cursor: Optional[datetime] = None
    deferred: bool = False


@dataclass
class BatchResult:
    dry_run: bool = False
    created: List[GeneratedTask] = field(default_factory=list)
    errors: List[MaterializationError] = field(default_factory=list)
    definitions_processed: int = 0
    cancelled: bool = False

    @property
    def tasks_created(self) -> int:
        return len(self.created)


StopSignal = Union[Callable[[], bool], threading.Event, None]


def _stop_requested(signal: StopSignal) -> bool:
    if signal is None:
        return False
    if isinstance(signal, threading.Event):
        return signal.is_set()
    return bool(signal())


def template_title(definition: Any) -> str:
    template = getattr(definition, "task_template", None) or {}
    return template.get("title") or getattr(definition, "title", "")


class OccurrenceMaterializer:
    """
    Materializes due occurrences of recurring task definitions.

    Args:
        store: Persistence collaborator for definitions, cursors and
            generated-instance lookups
        task_creator: Collaborator that creates one task per occurrence
    """

    def __init__(self, store: DefinitionStore, task_creator: TaskCreator) -> None:
        self._store = store
        self._task_creator = task_creator

    def process_definition(
        self,
        definition: Any,
        now: datetime,
        options: Optional[MaterializationOptions] = None,
    ) -> DefinitionResult:
        """
        Materialize the due occurrences of a single definition.

        Args:
            definition: Recurring task definition
            now: Reference instant for this pass
            options: Dry-run flag, optional process_until bound, per-pass cap

        Returns:
            DefinitionResult with created tasks (or previews) and recorded errors

        Raises:
            InfrastructureError: if the store or task collaborator is unreachable
        """
        options = options or MaterializationOptions()
        now = ensure_utc(now)
        definition_id = getattr(definition, "id", None)
        result = DefinitionResult(definition_id=definition_id)

        try:
            rule = RecurrenceRule.from_definition(definition)
        except DefinitionError as e:
            logger.warning(f"Skipping recurring task {definition_id}: {e}")
            result.errors.append(MaterializationError(definition_id, str(e), kind="definition"))
            return result

        if not rule.active:
            logger.debug(f"Recurring task {definition_id} is inactive, skipping")
            return result
        if rule.end_date is not None and rule.end_date < now:
            logger.debug(f"Recurring task {definition_id} ended at {rule.end_date.isoformat()}, skipping")
            return result

        cursor = ensure_utc(self._store.load_cursor(definition_id))
        window_end = now
        if options.process_until is not None:
            window_end = min(now, ensure_utc(options.process_until))
        window_start = rule.start_date if cursor is None else cursor + CURSOR_RESOLUTION

        cap = options.max_occurrences
        if window_start > window_end or cap <= 0:
            logger.debug(f"Recurring task {definition_id} has an empty window, skipping")
            return result
        failure_budget = max(options.max_failures or cap, 1)

        advance_to: Optional[datetime] = None
        blocked = False
        failures = 0
        for occurrence in self._due_occurrences(rule, window_start, window_end):
            if len(result.created) >= cap or failures >= failure_budget:
                result.deferred = True
                logger.info(f"Recurring task {definition_id}: deferring remaining occurrences to the next pass")
                break

            if self._store.instance_exists(definition_id, occurrence):
                result.skipped_existing += 1
                if not blocked:
                    advance_to = occurrence
                continue

            if options.dry_run:
                result.created.append(GeneratedTask(definition_id, occurrence, template_title(definition)))
                continue

            try:
                task = self._task_creator.create_task(definition, occurrence)
            except InfrastructureError:
                raise
            except Exception as e:
                logger.error(
                    f"Failed to create task for recurring task {definition_id} "
                    f"at {occurrence.isoformat()}: {e}"
                )
                result.errors.append(MaterializationError(definition_id, str(e), occurrence))
                failures += 1
                blocked = True
                continue

            result.created.append(
                GeneratedTask(definition_id, occurrence, getattr(task, "title", None), getattr(task, "id", None))
            )
            if not blocked:
                advance_to = occurrence

        if not options.dry_run and advance_to is not None and (cursor is None or advance_to > cursor):
            self._store.save_cursor(definition_id, advance_to)
            result.cursor = advance_to
            logger.debug(f"Recurring task {definition_id}: cursor advanced to {advance_to.isoformat()}")

        if result.created:
            logger.info(
                f"Recurring task {definition_id}: "
                f"{'previewed' if options.dry_run else 'created'} {len(result.created)} task(s)"
            )
        return result

    @staticmethod
    def _due_occurrences(rule: RecurrenceRule, window_start: datetime, window_end: datetime) -> Iterator[datetime]:
        """Occurrences in the window, evaluated one page at a time."""
        lower = window_start
        while True:
            page = occurrences_in_range(rule, lower, window_end, EVALUATION_PAGE_SIZE)
            yield from page
            if len(page) < EVALUATION_PAGE_SIZE:
                return
            lower = page[-1] + CURSOR_RESOLUTION

    def process_all(
        self,
        now: datetime,
        options: Optional[BatchOptions] = None,
        definitions: Optional[Iterable[Any]] = None,
        should_stop: StopSignal = None,
    ) -> BatchResult:
        """
        Materialize due occurrences across many definitions.

        Definitions are visited in order until max_tasks creations have been
        issued; remaining definitions are left for the next pass. The stop
        signal is checked between definitions, never mid-definition.

        Args:
            now: Reference instant for this pass (reuse it when retrying)
            options: Batch options (dry run, max_tasks, id filter, process_until)
            definitions: Candidate definitions; loaded from the store when omitted
            should_stop: Callable or threading.Event signalling cancellation

        Returns:
            BatchResult aggregating created tasks and all recorded errors

        Raises:
            InfrastructureError: the pass did not complete and should be retried
        """
        options = options or BatchOptions()
        now = ensure_utc(now)
        batch = BatchResult(dry_run=options.dry_run)

        wanted = None if options.definition_ids is None else set(options.definition_ids)
        if definitions is None:
            definitions = self._store.list_active_definitions(options.definition_ids)

        logger.info(f"Processing recurring tasks (dry_run={options.dry_run}, max_tasks={options.max_tasks})")

        for definition in definitions:
            if _stop_requested(should_stop):
                logger.info("Recurring task processing cancelled before completion")
                batch.cancelled = True
                break

            definition_id = getattr(definition, "id", None)
            if wanted is not None and definition_id not in wanted:
                continue

            remaining = options.max_tasks - len(batch.created)
            if remaining <= 0:
                logger.info(f"Reached max_tasks={options.max_tasks}, leaving remaining definitions for next pass")
                break

            per_definition = MaterializationOptions(
                dry_run=options.dry_run,
                process_until=options.process_until,
                max_occurrences=min(options.max_occurrences_per_definition, remaining),
                max_failures=options.max_occurrences_per_definition,
            )
            try:
                outcome = self.process_definition(definition, now, per_definition)
            except DefinitionError as e:
                logger.warning(f"Recurring task {definition_id} failed: {e}")
                batch.errors.append(MaterializationError(definition_id, str(e), kind="definition"))
                continue

            batch.definitions_processed += 1
            batch.created.extend(outcome.created)
            batch.errors.extend(outcome.errors)

        logger.info(
            f"Recurring task processing finished: {batch.tasks_created} task(s), "
            f"{len(batch.errors)} error(s), {batch.definitions_processed} definition(s)"
        )
        return batch
