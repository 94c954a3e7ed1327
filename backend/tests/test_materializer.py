"""
Tests for occurrence materialization against in-memory collaborators.

Tests cover:
- Creating due occurrences and advancing the cursor
- Idempotency on re-runs and pre-existing instances
- Partial failure isolation and cursor stopping before the failure
- Dry run, inactive/ended definitions, per-pass cap and failure budget
- Progress past a permanently failing occurrence
- Batch limits, definition filtering, cancellation, error propagation
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Dict, List, Optional, Sequence, Set, Tuple

import pytest

from recurrence.errors import InfrastructureError, TaskCreationError
from recurrence.materializer import BatchOptions, MaterializationOptions, OccurrenceMaterializer

logger = logging.getLogger(__name__)

UTC = timezone.utc


def at(day: int, hour: int = 9) -> datetime:
    return datetime(2024, 1, day, hour, 0, tzinfo=UTC)


class FakeStore:
    def __init__(self, definitions=()):
        self.definitions = list(definitions)
        self.cursors: Dict[int, datetime] = {}
        self.instances: Set[Tuple[int, datetime]] = set()
        self.saved: List[Tuple[int, datetime]] = []

    def list_active_definitions(self, definition_ids: Optional[Sequence[int]] = None):
        return [
            d for d in self.definitions
            if d.active and (definition_ids is None or d.id in definition_ids)
        ]

    def load_cursor(self, definition_id):
        return self.cursors.get(definition_id)

    def save_cursor(self, definition_id, instant):
        current = self.cursors.get(definition_id)
        if current is None or instant > current:
            self.cursors[definition_id] = instant
        self.saved.append((definition_id, instant))

    def instance_exists(self, definition_id, occurrence):
        return (definition_id, occurrence) in self.instances


class FakeTaskCreator:
    def __init__(self, store: FakeStore, fail_on=(), unreachable=False):
        self.store = store
        self.fail_on = set(fail_on)
        self.unreachable = unreachable
        self.created: List[Tuple[int, datetime]] = []

    def create_task(self, definition, occurrence):
        if self.unreachable:
            raise InfrastructureError("task store offline")
        if occurrence in self.fail_on:
            raise TaskCreationError(f"boom at {occurrence.isoformat()}")
        self.created.append((definition.id, occurrence))
        self.store.instances.add((definition.id, occurrence))
        return SimpleNamespace(id=len(self.created), title=definition.task_template["title"])


def make_definition(definition_id=1, **overrides):
    values = dict(
        id=definition_id,
        title=f"Definition {definition_id}",
        frequency="daily",
        interval=1,
        days_of_week=[],
        days_of_month=[],
        months_of_year=[],
        start_date=at(1),
        end_date=None,
        active=True,
        task_template={"title": f"Task {definition_id}"},
    )
    values.update(overrides)
    return SimpleNamespace(**values)


@pytest.fixture
def store():
    return FakeStore()


# ============== Single definition ==============


def test_creates_due_occurrences_and_advances_cursor(store):
    creator = FakeTaskCreator(store)
    materializer = OccurrenceMaterializer(store, creator)

    result = materializer.process_definition(make_definition(), now=at(5, 12))

    assert [g.occurrence for g in result.created] == [at(d) for d in range(1, 6)]
    assert all(g.task_id is not None for g in result.created)
    assert result.errors == []
    assert store.cursors[1] == at(5)
    logger.info("✓ Due occurrences created and cursor advanced")


def test_second_pass_with_same_now_creates_nothing(store):
    creator = FakeTaskCreator(store)
    materializer = OccurrenceMaterializer(store, creator)
    definition = make_definition()

    materializer.process_definition(definition, now=at(5, 12))
    second = materializer.process_definition(definition, now=at(5, 12))

    assert second.created == []
    assert len(creator.created) == 5, "Re-running with the same now must not duplicate tasks"


def test_existing_instances_are_skipped(store):
    store.instances.add((1, at(3)))
    creator = FakeTaskCreator(store)

    result = OccurrenceMaterializer(store, creator).process_definition(make_definition(), now=at(5, 12))

    assert [occurrence for _, occurrence in creator.created] == [at(1), at(2), at(4), at(5)]
    assert result.skipped_existing == 1
    assert store.cursors[1] == at(5)


def test_cursor_resumes_after_last_processed(store):
    store.cursors[1] = at(3)
    creator = FakeTaskCreator(store)

    OccurrenceMaterializer(store, creator).process_definition(make_definition(), now=at(5, 12))

    assert [occurrence for _, occurrence in creator.created] == [at(4), at(5)]


def test_failed_occurrence_is_isolated_and_retried(store):
    """A failing occurrence does not stop siblings, and the cursor stops before it."""
    creator = FakeTaskCreator(store, fail_on={at(3)})
    materializer = OccurrenceMaterializer(store, creator)
    definition = make_definition()

    first = materializer.process_definition(definition, now=at(5, 12))

    assert [g.occurrence for g in first.created] == [at(1), at(2), at(4), at(5)]
    assert len(first.errors) == 1
    assert first.errors[0].occurrence == at(3)
    assert first.errors[0].kind == "occurrence"
    assert store.cursors[1] == at(2), "Cursor must not move past a failed occurrence"

    creator.fail_on.clear()
    retry = materializer.process_definition(definition, now=at(5, 12))

    assert [g.occurrence for g in retry.created] == [at(3)]
    assert retry.skipped_existing == 2
    assert store.cursors[1] == at(5)
    assert sorted(occurrence for _, occurrence in creator.created) == [at(d) for d in range(1, 6)]
    logger.info("✓ Failed occurrence retried without duplicating siblings")


def test_dry_run_previews_without_side_effects(store):
    creator = FakeTaskCreator(store)

    result = OccurrenceMaterializer(store, creator).process_definition(
        make_definition(), now=at(3, 12), options=MaterializationOptions(dry_run=True)
    )

    assert [g.occurrence for g in result.created] == [at(1), at(2), at(3)]
    assert all(g.task_id is None and g.title == "Task 1" for g in result.created)
    assert creator.created == []
    assert store.saved == []


@pytest.mark.parametrize(
    "overrides",
    [{"active": False}, {"end_date": at(2)}],
    ids=["inactive", "ended"],
)
def test_inactive_or_ended_definitions_are_skipped(store, overrides):
    creator = FakeTaskCreator(store)

    result = OccurrenceMaterializer(store, creator).process_definition(
        make_definition(**overrides), now=at(5, 12)
    )

    assert result.created == []
    assert result.errors == []
    assert creator.created == []


def test_end_date_in_future_bounds_window(store):
    creator = FakeTaskCreator(store)

    OccurrenceMaterializer(store, creator).process_definition(
        make_definition(end_date=at(10)), now=at(3, 12)
    )

    assert [occurrence for _, occurrence in creator.created] == [at(1), at(2), at(3)]


def test_per_pass_cap_defers_remaining(store):
    creator = FakeTaskCreator(store)
    materializer = OccurrenceMaterializer(store, creator)
    definition = make_definition()

    first = materializer.process_definition(definition, now=at(5, 12), options=MaterializationOptions(max_occurrences=3))

    assert first.deferred is True
    assert [g.occurrence for g in first.created] == [at(1), at(2), at(3)]
    assert store.cursors[1] == at(3)

    second = materializer.process_definition(definition, now=at(5, 12), options=MaterializationOptions(max_occurrences=3))

    assert second.deferred is False
    assert [g.occurrence for g in second.created] == [at(4), at(5)]


def test_permanently_failing_occurrence_does_not_starve_later_ones(store):
    """The cursor stays before the failure, yet each capped pass still reaches new occurrences."""
    creator = FakeTaskCreator(store, fail_on={at(1)})
    materializer = OccurrenceMaterializer(store, creator)
    definition = make_definition()
    options = MaterializationOptions(max_occurrences=2)

    passes = [materializer.process_definition(definition, now=at(5, 12), options=options) for _ in range(3)]

    assert [g.occurrence for g in passes[0].created] == [at(2), at(3)]
    assert passes[0].deferred is True
    assert [g.occurrence for g in passes[1].created] == [at(4), at(5)]
    assert passes[1].deferred is False
    assert passes[2].created == []
    assert all([e.occurrence for e in result.errors] == [at(1)] for result in passes)
    assert sorted(occurrence for _, occurrence in creator.created) == [at(d) for d in range(2, 6)]
    assert 1 not in store.cursors, "Cursor must stay before the failing occurrence"
    logger.info("✓ Failing occurrence retried each pass without blocking later ones")


def test_failure_budget_defers_remaining(store):
    creator = FakeTaskCreator(store, fail_on={at(1), at(2), at(3)})

    result = OccurrenceMaterializer(store, creator).process_definition(
        make_definition(), now=at(5, 12), options=MaterializationOptions(max_failures=2)
    )

    assert result.deferred is True
    assert [e.occurrence for e in result.errors] == [at(1), at(2)]
    assert result.created == []


def test_existing_instances_do_not_use_up_the_cap(store):
    store.instances.update({(1, at(1)), (1, at(2)), (1, at(3))})
    creator = FakeTaskCreator(store)

    result = OccurrenceMaterializer(store, creator).process_definition(
        make_definition(), now=at(5, 12), options=MaterializationOptions(max_occurrences=2)
    )

    assert [g.occurrence for g in result.created] == [at(4), at(5)]
    assert result.skipped_existing == 3
    assert result.deferred is False
    assert store.cursors[1] == at(5)


def test_long_backlog_is_evaluated_across_pages(store, monkeypatch):
    monkeypatch.setattr("recurrence.materializer.EVALUATION_PAGE_SIZE", 4)
    creator = FakeTaskCreator(store)

    result = OccurrenceMaterializer(store, creator).process_definition(make_definition(), now=at(10, 12))

    assert [g.occurrence for g in result.created] == [at(d) for d in range(1, 11)]
    assert store.cursors[1] == at(10)


def test_process_until_limits_window(store):
    creator = FakeTaskCreator(store)

    OccurrenceMaterializer(store, creator).process_definition(
        make_definition(), now=at(10, 12), options=MaterializationOptions(process_until=at(2, 12))
    )

    assert [occurrence for _, occurrence in creator.created] == [at(1), at(2)]


def test_invalid_rule_is_a_definition_error(store):
    creator = FakeTaskCreator(store)

    result = OccurrenceMaterializer(store, creator).process_definition(
        make_definition(frequency="weekly", days_of_week=[]), now=at(5, 12)
    )

    assert result.created == []
    assert len(result.errors) == 1
    assert result.errors[0].kind == "definition"


def test_start_date_in_future_creates_nothing(store):
    creator = FakeTaskCreator(store)

    result = OccurrenceMaterializer(store, creator).process_definition(
        make_definition(start_date=at(20)), now=at(5, 12)
    )

    assert result.created == []
    assert store.saved == []


# ============== Batches ==============


def test_batch_aggregates_and_isolates_bad_definitions():
    good = make_definition(1)
    bad = make_definition(2, frequency="monthly", days_of_month=[])
    other = make_definition(3, start_date=at(4))
    store = FakeStore([good, bad, other])
    creator = FakeTaskCreator(store)

    batch = OccurrenceMaterializer(store, creator).process_all(now=at(5, 12))

    assert batch.tasks_created == 7
    assert [(e.definition_id, e.kind) for e in batch.errors] == [(2, "definition")]
    assert batch.definitions_processed == 3
    assert batch.cancelled is False


def test_batch_stops_at_max_tasks():
    store = FakeStore([make_definition(1), make_definition(2)])
    creator = FakeTaskCreator(store)

    batch = OccurrenceMaterializer(store, creator).process_all(now=at(5, 12), options=BatchOptions(max_tasks=7))

    assert batch.tasks_created == 7
    assert [definition_id for definition_id, _ in creator.created] == [1] * 5 + [2] * 2
    assert store.cursors[2] == at(2)
    logger.info("✓ Batch honours max_tasks and leaves the rest for next pass")


def test_batch_filters_by_definition_ids():
    store = FakeStore([make_definition(1), make_definition(2)])
    creator = FakeTaskCreator(store)

    batch = OccurrenceMaterializer(store, creator).process_all(
        now=at(2, 12), options=BatchOptions(definition_ids=[2])
    )

    assert {g.definition_id for g in batch.created} == {2}


@pytest.mark.parametrize("explicit_definitions", [False, True], ids=["from-store", "explicit"])
def test_batch_with_empty_definition_selection_processes_nothing(explicit_definitions):
    definitions = [make_definition(1), make_definition(2)]
    store = FakeStore(definitions)
    creator = FakeTaskCreator(store)

    batch = OccurrenceMaterializer(store, creator).process_all(
        now=at(2, 12),
        options=BatchOptions(definition_ids=[]),
        definitions=definitions if explicit_definitions else None,
    )

    assert batch.tasks_created == 0
    assert batch.definitions_processed == 0
    assert creator.created == []


def test_batch_with_single_task_budget_progresses_past_failure():
    store = FakeStore([make_definition(1)])
    creator = FakeTaskCreator(store, fail_on={at(1)})
    materializer = OccurrenceMaterializer(store, creator)

    batches = [materializer.process_all(now=at(5, 12), options=BatchOptions(max_tasks=1)) for _ in range(5)]

    assert [batch.tasks_created for batch in batches] == [1, 1, 1, 1, 0]
    assert [occurrence for _, occurrence in creator.created] == [at(d) for d in range(2, 6)]
    assert all(batch.errors[0].occurrence == at(1) for batch in batches)


def test_batch_dry_run_has_no_side_effects():
    store = FakeStore([make_definition(1)])
    creator = FakeTaskCreator(store)

    batch = OccurrenceMaterializer(store, creator).process_all(now=at(3, 12), options=BatchOptions(dry_run=True))

    assert batch.dry_run is True
    assert batch.tasks_created == 3
    assert creator.created == []
    assert store.cursors == {}


def test_batch_cancellation_is_checked_between_definitions():
    store = FakeStore([make_definition(1), make_definition(2)])
    creator = FakeTaskCreator(store)
    stop = threading.Event()
    calls = []

    def should_stop():
        calls.append(True)
        # Allow the first definition, then request cancellation
        return len(calls) > 1

    batch = OccurrenceMaterializer(store, creator).process_all(now=at(3, 12), should_stop=should_stop)

    assert batch.cancelled is True
    assert {definition_id for definition_id, _ in creator.created} == {1}

    stop.set()
    cancelled = OccurrenceMaterializer(store, creator).process_all(now=at(3, 12), should_stop=stop)
    assert cancelled.cancelled is True
    assert cancelled.definitions_processed == 0


def test_infrastructure_error_propagates():
    store = FakeStore([make_definition(1)])
    creator = FakeTaskCreator(store, unreachable=True)

    with pytest.raises(InfrastructureError):
        OccurrenceMaterializer(store, creator).process_all(now=at(3, 12))

    assert store.saved == []


def test_retry_with_same_now_after_outage_creates_no_duplicates():
    store = FakeStore([make_definition(1)])
    creator = FakeTaskCreator(store)
    materializer = OccurrenceMaterializer(store, creator)
    now = at(4, 12)

    first = materializer.process_all(now)
    # Cursor lost, e.g. crash before save
    store.cursors.clear()
    second = materializer.process_all(now)

    assert first.tasks_created == 4
    assert second.tasks_created == 0
    assert len(creator.created) == 4
    assert store.cursors[1] == at(4)


def test_occurrences_are_whole_days_apart():
    store = FakeStore()
    creator = FakeTaskCreator(store)

    result = OccurrenceMaterializer(store, creator).process_definition(make_definition(interval=2), now=at(9, 12))

    gaps = {b.occurrence - a.occurrence for a, b in zip(result.created, result.created[1:])}
    assert gaps == {timedelta(days=2)}
