import asyncio
import os
import shutil
import threading
from pathlib import Path

import pytest

from autosort.exceptions import RuleInvalid, RuleNotFound
from autosort.models.schemas import OutcomeStatus
from domains.rules.actions import ActionExecutor
from domains.rules.engine import RuleEngine
from domains.watching.events import EventKind, SettledEvent

posix_only = pytest.mark.skipif(os.name != "posix", reason="POSIX shell required")

PDF = {"type": "extension", "extensions": ["pdf"]}


def event(path: Path) -> SettledEvent:
    return SettledEvent(path=path, kind=EventKind.CREATED)


def engine_for(tmp_path, *rules, **kwargs) -> RuleEngine:
    kwargs.setdefault("self_event_ttl", 0)
    executor = ActionExecutor(io_timeout=5, command_timeout=10, trash_dir=tmp_path / "trash")
    return RuleEngine(rules, executor, **kwargs)


@pytest.fixture
def downloads(tmp_path):
    path = tmp_path / "Downloads"
    path.mkdir()
    return path


@pytest.mark.asyncio
async def test_matching_rule_moves_file(make_rule, tmp_path, downloads):
    engine = engine_for(tmp_path, make_rule("Sort PDFs", PDF, {"type": "move", "destination": str(tmp_path / "PDFs")}))
    src = downloads / "report.pdf"
    src.write_text("x")

    outcomes = await engine.on_settled(event(src))

    assert [o.status for o in outcomes] == [OutcomeStatus.SUCCESS]
    assert (tmp_path / "PDFs" / "report.pdf").exists()
    assert engine.tail(10) == outcomes


@pytest.mark.asyncio
async def test_non_matching_file_untouched(make_rule, tmp_path, downloads):
    engine = engine_for(tmp_path, make_rule("Sort PDFs", PDF, {"type": "move", "destination": str(tmp_path / "PDFs")}))
    src = downloads / "notes.txt"
    src.write_text("x")

    assert await engine.on_settled(event(src)) == []
    assert src.exists()


@pytest.mark.asyncio
async def test_every_matching_rule_runs_in_order(make_rule, tmp_path, downloads):
    engine = engine_for(
        tmp_path,
        make_rule("Backup", PDF, {"type": "copy", "destination": str(tmp_path / "backup")}),
        make_rule("Anything", {"type": "hidden", "value": False}, {"type": "copy", "destination": str(tmp_path / "all")}),
        make_rule("Sort", PDF, {"type": "move", "destination": str(tmp_path / "PDFs")}),
    )
    src = downloads / "a.pdf"
    src.write_text("x")

    outcomes = await engine.on_settled(event(src))

    assert [o.rule_name for o in outcomes] == ["Backup", "Anything", "Sort"]
    assert all(o.status is OutcomeStatus.SUCCESS for o in outcomes)
    assert (tmp_path / "backup" / "a.pdf").exists()
    assert (tmp_path / "all" / "a.pdf").exists()
    assert (tmp_path / "PDFs" / "a.pdf").exists()


@pytest.mark.asyncio
async def test_disabled_rule_is_skipped(make_rule, tmp_path, downloads):
    engine = engine_for(tmp_path, make_rule("Off", PDF, {"type": "delete"}, enabled=False))
    src = downloads / "a.pdf"
    src.write_text("x")

    assert await engine.on_settled(event(src)) == []
    assert src.exists()


@pytest.mark.asyncio
async def test_later_rule_sees_moved_file_as_missing(make_rule, tmp_path, downloads):
    engine = engine_for(
        tmp_path,
        make_rule("Move", PDF, {"type": "move", "destination": str(tmp_path / "PDFs")}),
        make_rule("Delete", PDF, {"type": "delete"}),
    )
    src = downloads / "a.pdf"
    src.write_text("x")

    outcomes = await engine.on_settled(event(src))

    assert [(o.rule_name, o.status) for o in outcomes] == [
        ("Move", OutcomeStatus.SUCCESS),
        ("Delete", OutcomeStatus.SKIPPED),
    ]
    assert outcomes[1].reason == "source missing"
    assert (tmp_path / "PDFs" / "a.pdf").exists()


@pytest.mark.asyncio
async def test_actions_follow_a_move(make_rule, tmp_path, downloads):
    engine = engine_for(tmp_path, make_rule(
        "Move and rename", PDF,
        {"type": "move", "destination": str(tmp_path / "PDFs")},
        {"type": "rename", "pattern": "{name}-sorted.{ext}"},
    ))
    src = downloads / "a.pdf"
    src.write_text("x")

    outcomes = await engine.on_settled(event(src))

    assert [o.status for o in outcomes] == [OutcomeStatus.SUCCESS, OutcomeStatus.SUCCESS]
    assert outcomes[1].path == str(tmp_path / "PDFs" / "a.pdf")
    assert (tmp_path / "PDFs" / "a-sorted.pdf").exists()


@pytest.mark.asyncio
async def test_repeated_event_after_move_is_idempotent(make_rule, tmp_path, downloads):
    engine = engine_for(tmp_path, make_rule("Sort", PDF, {"type": "move", "destination": str(tmp_path / "PDFs")}))
    src = downloads / "a.pdf"
    src.write_text("x")

    await engine.on_settled(event(src))
    second = await engine.on_settled(event(src))

    assert [o.status for o in second] == [OutcomeStatus.SKIPPED]
    assert list((tmp_path / "PDFs").iterdir()) == [tmp_path / "PDFs" / "a.pdf"]


@posix_only
@pytest.mark.asyncio
async def test_failed_action_skips_rest_of_rule_only(make_rule, tmp_path, downloads):
    engine = engine_for(
        tmp_path,
        make_rule("Broken", PDF,
                  {"type": "run_command", "command": "exit 1"},
                  {"type": "delete"}),
        make_rule("Copy", PDF, {"type": "copy", "destination": str(tmp_path / "backup")}),
    )
    src = downloads / "a.pdf"
    src.write_text("x")

    outcomes = await engine.on_settled(event(src))

    assert [(o.rule_name, o.action.type, o.status) for o in outcomes] == [
        ("Broken", "run_command", OutcomeStatus.FAILED),
        ("Broken", "delete", OutcomeStatus.SKIPPED),
        ("Copy", "copy", OutcomeStatus.SUCCESS),
    ]
    assert outcomes[1].reason.startswith("previous action failed")
    assert src.exists()


@pytest.mark.asyncio
async def test_destination_collision(make_rule, tmp_path, downloads):
    pdfs = tmp_path / "PDFs"
    pdfs.mkdir()
    (pdfs / "file.pdf").write_text("existing")
    engine = engine_for(tmp_path, make_rule("Sort", PDF, {"type": "move", "destination": str(pdfs)}))
    src = downloads / "file.pdf"
    src.write_text("new")

    outcomes = await engine.on_settled(event(src))

    assert outcomes[0].destination == str(pdfs / "file (1).pdf")
    assert (pdfs / "file.pdf").read_text() == "existing"


@posix_only
@pytest.mark.asyncio
async def test_pass_uses_rule_snapshot(make_rule, tmp_path, downloads):
    slow = make_rule("Slow", PDF, {"type": "run_command", "command": "sleep 0.5"})
    later = make_rule("Later", PDF, {"type": "copy", "destination": str(tmp_path / "backup")})
    engine = engine_for(tmp_path, slow, later)
    src = downloads / "a.pdf"
    src.write_text("x")

    task = asyncio.create_task(engine.on_settled(event(src)))
    await asyncio.sleep(0.2)
    assert await engine.delete_rule(later.id)
    outcomes = await task

    assert [o.rule_name for o in outcomes] == ["Slow", "Later"]
    assert engine.rule_count == 1


@posix_only
@pytest.mark.asyncio
async def test_drain_timeout_aborts_running_pass(make_rule, tmp_path, downloads):
    engine = engine_for(tmp_path, make_rule(
        "Hang", PDF,
        {"type": "run_command", "command": "sleep 30"},
        {"type": "delete"},
    ))
    src = downloads / "a.pdf"
    src.write_text("x")

    engine.submit(event(src))
    await asyncio.sleep(0.3)
    assert engine.inflight_count == 1

    aborted = await engine.drain(0.2)

    assert aborted == 1
    assert engine.inflight_count == 0
    assert [(o.action.type, o.status) for o in engine.tail(10)] == [
        ("run_command", OutcomeStatus.ABORTED),
        ("delete", OutcomeStatus.ABORTED),
    ]
    assert src.exists()


@pytest.mark.asyncio
async def test_drain_waits_for_quick_passes(make_rule, tmp_path, downloads):
    engine = engine_for(tmp_path, make_rule("Sort", PDF, {"type": "move", "destination": str(tmp_path / "PDFs")}))
    src = downloads / "a.pdf"
    src.write_text("x")

    engine.submit(event(src))
    assert await engine.drain(5) == 0
    assert engine.tail(1)[0].status is OutcomeStatus.SUCCESS


class TrackingExecutor(ActionExecutor):
    """Counts how many actions run at the same time."""

    def __init__(self, tmp_path):
        super().__init__(io_timeout=5, command_timeout=10, trash_dir=tmp_path / "trash")
        self.active = 0
        self.peak = 0

    async def apply(self, action, path, rule):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(0.05)
            return await super().apply(action, path, rule)
        finally:
            self.active -= 1


@pytest.mark.asyncio
async def test_passes_for_same_path_are_serialized(make_rule, tmp_path, downloads):
    executor = TrackingExecutor(tmp_path)
    engine = RuleEngine(
        [
            make_rule("Sort", PDF, {"type": "move", "destination": str(tmp_path / "PDFs")}),
            make_rule("Purge", PDF, {"type": "delete"}),
        ],
        executor,
        self_event_ttl=0,
    )
    src = downloads / "a.pdf"
    src.write_text("x")

    first, second = await asyncio.gather(engine.submit(event(src)), engine.submit(event(src)))

    assert executor.peak == 1
    moves = [o for o in first + second if o.action.type == "move"]
    assert sorted(o.status.value for o in moves) == ["skipped", "success"]
    assert [o.reason for o in moves if o.status is OutcomeStatus.SKIPPED] == ["source missing"]
    assert all(o.status is OutcomeStatus.SKIPPED for o in first + second if o.action.type == "delete")
    assert list((tmp_path / "PDFs").iterdir()) == [tmp_path / "PDFs" / "a.pdf"]


@pytest.mark.asyncio
async def test_passes_for_different_paths_run_concurrently(make_rule, tmp_path, downloads):
    executor = TrackingExecutor(tmp_path)
    engine = RuleEngine(
        [make_rule("Sort", PDF, {"type": "move", "destination": str(tmp_path / "PDFs")})],
        executor,
        self_event_ttl=0,
    )
    paths = [downloads / "a.pdf", downloads / "b.pdf"]
    for path in paths:
        path.write_text("x")

    await asyncio.gather(*(engine.submit(event(path)) for path in paths))

    assert executor.peak == 2
    assert sorted(p.name for p in (tmp_path / "PDFs").iterdir()) == ["a.pdf", "b.pdf"]


@pytest.mark.asyncio
async def test_drain_waits_for_interrupted_copy(make_rule, tmp_path, downloads, monkeypatch):
    release = threading.Event()
    real_copy2 = shutil.copy2

    def blocking_copy2(*args, **kwargs):
        release.wait(5)
        return real_copy2(*args, **kwargs)

    monkeypatch.setattr(shutil, "copy2", blocking_copy2)
    backup = tmp_path / "backup"
    engine = engine_for(tmp_path, make_rule("Backup", PDF, {"type": "copy", "destination": str(backup)}))
    src = downloads / "a.pdf"
    src.write_text("x")

    engine.submit(event(src))
    await asyncio.sleep(0.2)
    asyncio.get_running_loop().call_later(0.3, release.set)

    assert await engine.drain(0.1) == 1

    assert release.is_set()
    assert engine.inflight_count == 0
    assert [o.status for o in engine.tail(10)] == [OutcomeStatus.ABORTED]
    assert list(backup.iterdir()) == []
    assert src.exists()


@pytest.mark.asyncio
async def test_own_output_is_not_reprocessed(make_rule, tmp_path, downloads):
    engine = engine_for(
        tmp_path,
        make_rule("Rename", PDF, {"type": "rename", "pattern": "{name}-x.{ext}"}),
        self_event_ttl=5,
    )
    src = downloads / "a.pdf"
    src.write_text("x")

    first = await engine.on_settled(event(src))
    produced = Path(first[0].destination)

    assert await engine.on_settled(event(produced)) == []
    assert produced.exists()


@pytest.mark.asyncio
async def test_own_removal_is_ignored_but_new_file_is_not(make_rule, tmp_path, downloads):
    engine = engine_for(
        tmp_path,
        make_rule("Sort", PDF, {"type": "move", "destination": str(tmp_path / "PDFs")}),
        self_event_ttl=5,
    )
    src = downloads / "a.pdf"
    src.write_text("x")
    await engine.on_settled(event(src))

    assert await engine.on_settled(SettledEvent(path=src, kind=EventKind.REMOVED)) == []

    src.write_text("again")
    outcomes = await engine.on_settled(event(src))
    assert [o.status for o in outcomes] == [OutcomeStatus.SUCCESS]
    assert (tmp_path / "PDFs" / "a (1).pdf").read_text() == "again"


@pytest.mark.asyncio
async def test_run_pauses_and_resumes(make_rule, tmp_path, downloads):
    engine = engine_for(tmp_path, make_rule("Sort", PDF, {"type": "move", "destination": str(tmp_path / "PDFs")}))
    src = downloads / "a.pdf"
    src.write_text("x")
    queue: asyncio.Queue = asyncio.Queue()
    runner = asyncio.create_task(engine.run(queue))

    engine.pause()
    await queue.put(event(src))
    await asyncio.sleep(0.1)
    assert src.exists()

    engine.resume()
    await queue.join()
    await engine.drain(5)
    assert not src.exists()

    runner.cancel()
    await asyncio.gather(runner, return_exceptions=True)


@pytest.mark.asyncio
async def test_rule_crud(make_rule, tmp_path):
    changes = []
    engine = engine_for(tmp_path)
    engine.add_change_listener(lambda: changes.append(engine.rule_count))

    rule = await engine.add_rule({"name": "Sort", "condition": PDF, "actions": [{"type": "trash"}]})
    assert [r.id for r in engine.list_rules()] == [rule.id]

    edited = await engine.edit_rule(rule.id, {"name": "Renamed", "id": "ignored"})
    assert edited.id == rule.id
    assert edited.name == "Renamed"

    toggled = await engine.toggle_rule(rule.id)
    assert toggled.enabled is False
    assert (await engine.toggle_rule(rule.id, enabled=False)).enabled is False
    assert (await engine.toggle_rule(rule.id)).enabled is True

    assert await engine.delete_rule(rule.id) is True
    assert await engine.delete_rule(rule.id) is False
    assert engine.rule_count == 0
    assert changes == [1, 1, 1, 1, 1, 0]


@pytest.mark.asyncio
async def test_rule_crud_validation(make_rule, tmp_path):
    engine = engine_for(tmp_path)

    with pytest.raises(RuleInvalid):
        await engine.add_rule({"name": "", "condition": PDF, "actions": [{"type": "trash"}]})
    with pytest.raises(RuleInvalid):
        await engine.add_rule({"name": "No actions", "condition": PDF, "actions": []})

    rule = await engine.add_rule(make_rule("Sort", PDF, {"type": "trash"}))
    with pytest.raises(RuleInvalid):
        await engine.add_rule(rule)
    with pytest.raises(RuleInvalid):
        await engine.edit_rule(rule.id, {"actions": []})
    with pytest.raises(RuleNotFound):
        await engine.toggle_rule("missing")
    with pytest.raises(RuleNotFound):
        await engine.edit_rule("missing", {"name": "x"})


@pytest.mark.asyncio
async def test_list_rules_is_a_copy(make_rule, tmp_path):
    engine = engine_for(tmp_path, make_rule("Sort", PDF, {"type": "trash"}))

    listed = engine.list_rules()
    listed[0].name = "mutated"

    assert engine.list_rules()[0].name == "Sort"


@pytest.mark.asyncio
async def test_outcome_log_is_bounded(make_rule, tmp_path, downloads):
    engine = engine_for(tmp_path, make_rule("Copy", {"type": "hidden", "value": False},
                                            {"type": "copy", "destination": str(tmp_path / "out")}), log_size=3)
    seen = []
    engine.add_outcome_listener(seen.append)

    for i in range(5):
        src = downloads / f"{i}.txt"
        src.write_text("x")
        await engine.on_settled(event(src))

    assert len(seen) == 5
    assert [Path(o.path).name for o in engine.tail(10)] == ["2.txt", "3.txt", "4.txt"]
    assert [Path(o.path).name for o in engine.tail(2)] == ["3.txt", "4.txt"]
    assert engine.tail(0) == []


@pytest.mark.asyncio
async def test_duplicate_initial_ids_rejected(make_rule, tmp_path):
    rule = make_rule("Sort", PDF, {"type": "trash"})
    with pytest.raises(RuleInvalid):
        engine_for(tmp_path, rule, rule)
