"""
Rule engine.

Holds the ordered rule set, evaluates every enabled rule against each settled
event and runs the actions of all matching rules, in order.

Concurrency model:
- The rule set is an immutable tuple replaced wholesale on every write, so a
  pass reads one consistent snapshot taken when it starts.
- Writers (CRUD, reload) serialize on a single asyncio lock.
- Passes for different paths run concurrently; passes for the same path
  serialize on a per-path lock.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from loguru import logger
from pydantic import ValidationError

from autosort.exceptions import RuleInvalid, format_rule_not_found
from autosort.models.schemas import (
    Action,
    ExecutionOutcome,
    OutcomeStatus,
    Rule,
)
from domains.rules.actions import ABORTED_REASON, ActionExecutor, wait_finished
from domains.rules.conditions import matches
from domains.rules.metadata import FileMetadata, read_metadata
from domains.watching.events import EventKind, SettledEvent

OutcomeListener = Callable[[ExecutionOutcome], None]
ChangeListener = Callable[[], None]

# Actions whose destination becomes the path for the rest of the rule
_RETARGETING = {"move", "rename"}
# Actions whose destination is a file this engine just produced
_PRODUCING = {"move", "copy", "rename", "archive"}
# Actions that remove their source path
_CONSUMING = {"move", "rename", "trash", "delete"}


class _PathLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class RuleEngine:
    """Evaluates settled events against the rule set and records outcomes."""

    def __init__(
        self,
        rules: Iterable[Rule] = (),
        executor: Optional[ActionExecutor] = None,
        metadata_provider: Callable[[Path], FileMetadata] = read_metadata,
        log_size: int = 500,
        self_event_ttl: float = 2.0,
    ):
        """
        Initialize rule engine.

        Args:
            rules: Initial ordered rule set
            executor: Action executor (default settings when omitted)
            metadata_provider: Synchronous metadata lookup for a path
            log_size: Bound on the in-memory outcome log (oldest evicted)
            self_event_ttl: Seconds during which events for paths this engine
                just produced are ignored
        """
        self._rules: Tuple[Rule, ...] = tuple(rules)
        self._check_unique(self._rules)
        self.executor = executor or ActionExecutor()
        self._metadata_provider = metadata_provider
        self._outcomes: Deque[ExecutionOutcome] = deque(maxlen=max(1, log_size))
        self._self_event_ttl = self_event_ttl
        self._own_creations: Dict[Path, float] = {}
        self._own_removals: Dict[Path, float] = {}

        self._write_lock = asyncio.Lock()
        self._path_locks: Dict[Path, _PathLock] = {}
        self._inflight: Set[asyncio.Task] = set()
        self._accepting = asyncio.Event()
        self._accepting.set()

        self._outcome_listeners: List[OutcomeListener] = []
        self._change_listeners: List[ChangeListener] = []

    # Listeners ----------------------------------------------------------------------

    def add_outcome_listener(self, listener: OutcomeListener) -> None:
        self._outcome_listeners.append(listener)

    def add_change_listener(self, listener: ChangeListener) -> None:
        self._change_listeners.append(listener)

    # Read side ----------------------------------------------------------------------

    @property
    def rule_count(self) -> int:
        return len(self._rules)

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    def list_rules(self) -> List[Rule]:
        """Copy-on-read snapshot of the rule set."""
        return [rule.model_copy(deep=True) for rule in self._rules]

    def tail(self, n: int) -> List[ExecutionOutcome]:
        """At most the last ``n`` outcomes, oldest first."""
        if n <= 0:
            return []
        return list(self._outcomes)[-n:]

    # Write side ---------------------------------------------------------------------

    async def add_rule(self, rule: Any) -> Rule:
        """
        Append a rule.

        Args:
            rule: Rule or mapping; needs a non-empty name and at least one action

        Raises:
            RuleInvalid: If validation fails or the id is taken
        """
        new_rule = _validate(rule)
        async with self._write_lock:
            if any(existing.id == new_rule.id for existing in self._rules):
                raise RuleInvalid(f"Rule id '{new_rule.id}' already exists")
            self._rules = self._rules + (new_rule,)
        logger.info(f"Rule added: {new_rule.name} ({new_rule.id})")
        self._notify_change()
        return new_rule.model_copy(deep=True)

    async def edit_rule(self, rule_id: str, changes: Dict[str, Any]) -> Rule:
        """Merge ``changes`` into a rule and revalidate it. The id is immutable."""
        async with self._write_lock:
            index, current = self._find(rule_id)
            merged = current.model_dump(mode="json")
            merged.update({k: v for k, v in changes.items() if k != "id"})
            updated = _validate(merged)
            self._rules = self._rules[:index] + (updated,) + self._rules[index + 1:]
        logger.info(f"Rule edited: {updated.name} ({rule_id})")
        self._notify_change()
        return updated.model_copy(deep=True)

    async def delete_rule(self, rule_id: str) -> bool:
        """Remove a rule. Returns False (no-op) when the id is absent."""
        async with self._write_lock:
            remaining = tuple(rule for rule in self._rules if rule.id != rule_id)
            if len(remaining) == len(self._rules):
                logger.info(f"Delete ignored, no rule with id {rule_id}")
                return False
            self._rules = remaining
        logger.info(f"Rule deleted: {rule_id}")
        self._notify_change()
        return True

    async def toggle_rule(self, rule_id: str, enabled: Optional[bool] = None) -> Rule:
        """
        Flip a rule's enabled flag, or set it when ``enabled`` is given.

        Setting an explicit value is idempotent.
        """
        async with self._write_lock:
            index, current = self._find(rule_id)
            target = (not current.enabled) if enabled is None else enabled
            updated = current.model_copy(update={"enabled": target})
            self._rules = self._rules[:index] + (updated,) + self._rules[index + 1:]
        logger.info(f"Rule {'enabled' if target else 'disabled'}: {updated.name}")
        self._notify_change()
        return updated.model_copy(deep=True)

    async def replace_rules(self, rules: Iterable[Rule]) -> None:
        """Atomically swap the whole rule set (used by reload)."""
        new_rules = tuple(rules)
        self._check_unique(new_rules)
        async with self._write_lock:
            self._rules = new_rules
        logger.info(f"Rule set replaced ({len(new_rules)} rules)")
        self._notify_change()

    # Evaluation ---------------------------------------------------------------------

    async def run(self, queue: "asyncio.Queue[SettledEvent]") -> None:
        """Consume settled events and start one pass per event, until cancelled."""
        while True:
            event = await queue.get()
            try:
                await self._accepting.wait()
                self.submit(event)
            finally:
                queue.task_done()

    def submit(self, event: SettledEvent) -> asyncio.Task:
        """Start an evaluation pass for ``event`` as a tracked task."""
        task = asyncio.create_task(self.on_settled(event), name=f"pass:{event.path}")
        self._inflight.add(task)
        task.add_done_callback(self._pass_done)
        return task

    def pause(self) -> None:
        """Stop starting new passes; queued events wait."""
        self._accepting.clear()

    def resume(self) -> None:
        self._accepting.set()

    async def drain(self, timeout: float) -> int:
        """
        Wait for in-flight passes; abort those still running after ``timeout``.

        Returns:
            Number of passes that were aborted
        """
        pending = set(self._inflight)
        if not pending:
            return 0

        _, still_running = await asyncio.wait(pending, timeout=timeout)
        if not still_running:
            return 0

        logger.warning(f"Aborting {len(still_running)} evaluation passes after {timeout}s")
        for task in still_running:
            task.cancel()
        await asyncio.gather(*still_running, return_exceptions=True)
        return len(still_running)

    async def on_settled(self, event: SettledEvent) -> List[ExecutionOutcome]:
        """
        Run one evaluation pass for a settled event.

        Every enabled rule whose condition matches runs its full action list
        before the next rule is considered. A failed action skips the rest of
        that rule only.
        """
        if self._is_own_event(event):
            logger.debug(f"Ignoring {event.kind.value} caused by autosort: {event.path}")
            return []

        rules = self._rules
        entry = self._path_locks.setdefault(event.path, _PathLock())
        entry.users += 1
        try:
            try:
                await entry.lock.acquire()
            except asyncio.CancelledError:
                logger.warning(f"Pass for {event.path} cancelled before it started")
                raise
            try:
                return await self._evaluate(event, rules)
            finally:
                entry.lock.release()
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._path_locks.pop(event.path, None)

    async def _evaluate(self, event: SettledEvent, rules: Tuple[Rule, ...]) -> List[ExecutionOutcome]:
        metadata = self._metadata_provider(event.path)
        outcomes: List[ExecutionOutcome] = []

        for rule in rules:
            if not rule.enabled:
                continue
            if not matches(rule.condition, metadata):
                continue

            logger.info(f"Rule '{rule.name}' matched {event.kind.value} {event.path}")
            outcomes.extend(await self._execute_rule(rule, event.path))

        return outcomes

    async def _execute_rule(self, rule: Rule, path: Path) -> List[ExecutionOutcome]:
        outcomes: List[ExecutionOutcome] = []
        current = path
        actions = list(rule.actions)

        for index, action in enumerate(actions):
            # A cancelled pass keeps the path lock until its action has stopped
            work = asyncio.ensure_future(self.executor.apply(action, current, rule))
            try:
                outcome = await asyncio.shield(work)
            except asyncio.CancelledError:
                work.cancel()
                try:
                    outcome = await wait_finished(work)
                except asyncio.CancelledError:
                    outcome = self._outcome(rule, current, action, OutcomeStatus.ABORTED, ABORTED_REASON)
                outcomes.append(self._record(outcome))
                for remaining in actions[index + 1:]:
                    outcomes.append(self._record(self._outcome(
                        rule, current, remaining, OutcomeStatus.ABORTED, ABORTED_REASON,
                    )))
                raise

            outcomes.append(self._record(outcome))
            current = self._follow(action, current, outcome)

            if outcome.status is OutcomeStatus.FAILED:
                for remaining in actions[index + 1:]:
                    outcomes.append(self._record(self._outcome(
                        rule, current, remaining, OutcomeStatus.SKIPPED,
                        f"previous action failed: {outcome.reason}",
                    )))
                break

        return outcomes

    def _follow(self, action: Action, current: Path, outcome: ExecutionOutcome) -> Path:
        """Remember paths this action created or removed; return where the file now is."""
        if outcome.status is not OutcomeStatus.SUCCESS:
            return current
        if action.type in _CONSUMING:
            self._remember(self._own_removals, current)
        if outcome.destination and action.type in _PRODUCING:
            self._remember(self._own_creations, Path(outcome.destination))
        if outcome.destination and action.type in _RETARGETING:
            return Path(outcome.destination)
        return current

    # Internals ----------------------------------------------------------------------

    def _find(self, rule_id: str) -> Tuple[int, Rule]:
        for index, rule in enumerate(self._rules):
            if rule.id == rule_id:
                return index, rule
        raise format_rule_not_found(rule_id)

    def _record(self, outcome: ExecutionOutcome) -> ExecutionOutcome:
        self._outcomes.append(outcome)
        log = logger.error if outcome.status is OutcomeStatus.FAILED else logger.info
        log(
            f"[{outcome.rule_name}] {outcome.action.type} {outcome.path}: {outcome.status.value}"
            + (f" ({outcome.reason})" if outcome.reason else "")
        )
        for listener in self._outcome_listeners:
            try:
                listener(outcome)
            except Exception as e:
                logger.error(f"Outcome listener failed: {e}")
        return outcome

    def _notify_change(self) -> None:
        for listener in self._change_listeners:
            try:
                listener()
            except Exception as e:
                logger.error(f"Change listener failed: {e}")

    def _pass_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"Evaluation pass {task.get_name()} crashed: {exc}")

    def _remember(self, registry: Dict[Path, float], path: Path) -> None:
        if self._self_event_ttl <= 0:
            return
        now = time.monotonic()
        for stale in [p for p, expires in registry.items() if expires <= now]:
            del registry[stale]
        registry[path] = now + self._self_event_ttl

    def _is_own_event(self, event: SettledEvent) -> bool:
        """Removals of sources and creations of destinations this engine caused."""
        registry = self._own_removals if event.kind is EventKind.REMOVED else self._own_creations
        expires = registry.get(event.path)
        if expires is None:
            return False
        if expires <= time.monotonic():
            registry.pop(event.path, None)
            return False
        return True

    @staticmethod
    def _outcome(rule: Rule, path: Path, action: Action, status: OutcomeStatus, reason: str) -> ExecutionOutcome:
        return ExecutionOutcome(
            rule_id=rule.id,
            rule_name=rule.name,
            path=str(path),
            action=action,
            status=status,
            reason=reason,
        )

    @staticmethod
    def _check_unique(rules: Tuple[Rule, ...]) -> None:
        seen = set()
        for rule in rules:
            if rule.id in seen:
                raise RuleInvalid(f"Duplicate rule id '{rule.id}'")
            seen.add(rule.id)


def _validate(rule: Any) -> Rule:
    try:
        if isinstance(rule, Rule):
            return Rule.model_validate(rule.model_dump())
        return Rule.model_validate(rule)
    except ValidationError as e:
        raise RuleInvalid(f"Invalid rule: {e}") from e
