"""
Action execution.

Applies one action to one path and reports a typed outcome. This is the only
filesystem-mutating code in the engine. Every transfer is either a
same-filesystem rename or copy-to-temporary followed by an atomic replace, so
a failure never leaves the source deleted and the destination absent.
"""

from __future__ import annotations

import asyncio
import contextlib
import errno
import os
import re
import shlex
import shutil
import signal
import sys
import threading
import zipfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, Optional, Set
from urllib.parse import quote

from loguru import logger

from autosort.exceptions import ActionFailed, format_action_timeout
from autosort.models.schemas import (
    Action,
    ArchiveAction,
    CopyAction,
    DeleteAction,
    ExecutionOutcome,
    MoveAction,
    OutcomeStatus,
    RenameAction,
    Rule,
    RunCommandAction,
    TrashAction,
)
from autosort.utils.helpers import expand_path, normalise_path

PARTIAL_SUFFIX = ".autosort-partial"
ABORTED_REASON = "aborted by shutdown or reload"
TIMEOUT = "timeout"

_COMMAND_PLACEHOLDER = re.compile(r"\{(path|name|stem|ext|dir)\}")
_RENAME_PLACEHOLDER = re.compile(r"\{(name|date|ext)\}")


@dataclass
class _Result:
    status: OutcomeStatus
    reason: Optional[str] = None
    destination: Optional[str] = None
    output: Optional[str] = None
    exit_code: Optional[int] = None


class _Interrupted(Exception):
    """Raised inside a worker thread at a safe point once it was interrupted."""


class _Interrupt:
    """Cross-thread stop request checked by filesystem workers between steps."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def set(self, reason: str) -> None:
        self.reason = reason
        self._event.set()

    def check(self) -> None:
        if self._event.is_set():
            raise _Interrupted(self.reason)


async def wait_finished(future: "asyncio.Future"):
    """Await ``future`` to completion even if the caller is cancelled meanwhile."""
    while not future.done():
        try:
            await asyncio.wait({future})
        except asyncio.CancelledError:
            continue
    return future.result()


def unique_destination(target: Path, taken: Optional[Set[Path]] = None) -> Path:
    """
    Return ``target`` or the first free ``name (N).ext`` sibling.

    Args:
        target: Desired destination
        taken: Names already claimed by in-flight operations
    """
    taken = taken or set()
    if not os.path.lexists(target) and target not in taken:
        return target

    stem, suffix = target.stem, target.suffix
    counter = 1
    while True:
        candidate = target.with_name(f"{stem} ({counter}){suffix}")
        if not os.path.lexists(candidate) and candidate not in taken:
            return candidate
        counter += 1


def expand_command(template: str, path: Path) -> str:
    """Substitute shell-quoted path placeholders into a command template."""
    values = {
        "path": str(path),
        "name": path.name,
        "stem": path.stem,
        "ext": path.suffix.lstrip("."),
        "dir": str(path.parent),
    }
    return _COMMAND_PLACEHOLDER.sub(lambda m: shlex.quote(values[m.group(1)]), template)


def expand_rename(pattern: str, path: Path, modified: Optional[datetime] = None) -> str:
    """
    Expand ``{name}``, ``{date}`` and ``{ext}`` against the file itself.

    ``{date}`` is the modification date (YYYY-MM-DD); for files without an
    extension a ``.{ext}`` in the pattern disappears entirely.
    """
    ext = path.suffix.lstrip(".")
    if not ext:
        pattern = pattern.replace(".{ext}", "{ext}")
    if modified is None:
        try:
            modified = datetime.fromtimestamp(path.stat().st_mtime)
        except OSError:
            modified = datetime.now()
    values = {
        "name": path.stem,
        "date": modified.strftime("%Y-%m-%d"),
        "ext": ext,
    }
    return _RENAME_PLACEHOLDER.sub(lambda m: values[m.group(1)], pattern)


def default_trash_dir() -> Path:
    """Platform trash location."""
    if sys.platform == "darwin":
        return Path.home() / ".Trash"
    if sys.platform == "win32":
        raise ActionFailed("trash is not supported on this platform", reason="unsupported")
    data_home = os.environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return Path(data_home) / "Trash"


class ActionExecutor:
    """Applies actions to paths with bounded time and collision safety."""

    def __init__(
        self,
        io_timeout: float = 30.0,
        command_timeout: float = 60.0,
        overwrite: bool = False,
        output_limit: int = 4096,
        trash_dir: Optional[Path] = None,
    ):
        """
        Initialize executor.

        Args:
            io_timeout: Bound for filesystem operations, seconds
            command_timeout: Bound for run_command, seconds
            overwrite: Default collision policy when an action does not set one
            output_limit: Bytes of command output kept in the outcome
            trash_dir: Trash root override (XDG layout)
        """
        self.io_timeout = io_timeout
        self.command_timeout = command_timeout
        self.overwrite = overwrite
        self.output_limit = output_limit
        self.trash_dir = trash_dir

        self._reserve_lock = threading.Lock()
        self._reserved: Set[Path] = set()
        self._archive_locks: Dict[Path, threading.Lock] = {}

    async def apply(self, action: Action, path: Path, rule: Rule) -> ExecutionOutcome:
        """
        Apply ``action`` to ``path``.

        Never raises for action failures; they are reported in the outcome.
        If the calling task is cancelled the action is interrupted at its next
        safe point and reported as aborted, unless it had already completed.
        The call returns only once no work for the action is still running.
        """
        try:
            if isinstance(action, RunCommandAction):
                result = await self._run_command(action, path)
            else:
                result = await self._run_fs(action, path)
        except ActionFailed as e:
            logger.error(f"{action.type} on {path} failed: {e.message}")
            result = _Result(OutcomeStatus.FAILED, reason=e.reason)
        except OSError as e:
            logger.error(f"{action.type} on {path} failed: {e}")
            result = _Result(OutcomeStatus.FAILED, reason=str(e))

        return ExecutionOutcome(
            rule_id=rule.id,
            rule_name=rule.name,
            path=str(path),
            action=action,
            status=result.status,
            reason=result.reason,
            destination=result.destination,
            output=result.output,
            exit_code=result.exit_code,
        )

    async def _run_fs(self, action: Action, path: Path) -> _Result:
        interrupt = _Interrupt()
        worker = asyncio.ensure_future(asyncio.to_thread(self._apply_fs, action, path, interrupt))
        try:
            return await asyncio.wait_for(asyncio.shield(worker), timeout=self.io_timeout)
        except asyncio.TimeoutError:
            interrupt.set(TIMEOUT)
        except asyncio.CancelledError:
            interrupt.set(ABORTED_REASON)

        try:
            result = await wait_finished(worker)
        except _Interrupted:
            if interrupt.reason == TIMEOUT:
                raise format_action_timeout(f"{action.type} {path}", self.io_timeout) from None
            logger.warning(f"{action.type} on {path} interrupted")
            return _Result(OutcomeStatus.ABORTED, reason=ABORTED_REASON)

        logger.warning(f"{action.type} on {path} completed after being interrupted ({interrupt.reason})")
        return result

    # Filesystem actions -------------------------------------------------------------

    def _apply_fs(self, action: Action, path: Path, interrupt: "_Interrupt") -> _Result:
        interrupt.check()
        if not os.path.lexists(path):
            return _Result(OutcomeStatus.SKIPPED, reason="source missing")

        if isinstance(action, MoveAction):
            return self._transfer(path, action.destination, self._overwrite(action), False, interrupt)
        if isinstance(action, CopyAction):
            return self._transfer(path, action.destination, self._overwrite(action), True, interrupt)
        if isinstance(action, RenameAction):
            return self._rename(path, action, interrupt)
        if isinstance(action, TrashAction):
            return self._trash(path, interrupt)
        if isinstance(action, DeleteAction):
            return self._delete(path, interrupt)
        if isinstance(action, ArchiveAction):
            return self._archive(path, action.destination, interrupt)

        raise ActionFailed(f"Unsupported action type: {action.type}")

    def _overwrite(self, action: Action) -> bool:
        value = getattr(action, "overwrite", None)
        return self.overwrite if value is None else value

    def _transfer(
        self, src: Path, destination: Path, overwrite: bool, keep_source: bool, interrupt: "_Interrupt",
    ) -> _Result:
        dest_dir = expand_path(destination)
        dest_dir.mkdir(parents=True, exist_ok=True)

        if not keep_source and normalise_path(src.parent) == normalise_path(dest_dir):
            return _Result(OutcomeStatus.SKIPPED, reason="already in destination")

        with self._reserve(dest_dir / src.name, overwrite) as target:
            if keep_source:
                _copy_into(src, target, overwrite, interrupt)
                logger.info(f"Copied {src} -> {target}")
            else:
                _move_into(src, target, overwrite, interrupt)
                logger.info(f"Moved {src} -> {target}")

        return _Result(OutcomeStatus.SUCCESS, destination=str(target))

    def _rename(self, path: Path, action: RenameAction, interrupt: "_Interrupt") -> _Result:
        new_name = expand_rename(action.pattern, path)
        if not new_name or new_name in (".", "..") or "/" in new_name or os.sep in new_name:
            raise ActionFailed(f"Invalid rename result {new_name!r}", reason="invalid name")
        if new_name == path.name:
            return _Result(OutcomeStatus.SKIPPED, reason="name unchanged")

        with self._reserve(path.with_name(new_name), self._overwrite(action)) as target:
            _move_into(path, target, self._overwrite(action), interrupt)
            logger.info(f"Renamed {path} -> {target.name}")

        return _Result(OutcomeStatus.SUCCESS, destination=str(target))

    def _trash(self, path: Path, interrupt: "_Interrupt") -> _Result:
        if self.trash_dir is not None:
            root, xdg = expand_path(self.trash_dir), True
        else:
            root = default_trash_dir()
            xdg = sys.platform != "darwin"

        files_dir = root / "files" if xdg else root
        files_dir.mkdir(parents=True, exist_ok=True)

        with self._reserve(files_dir / path.name, overwrite=False) as target:
            interrupt.check()
            info_file = None
            if xdg:
                info_dir = root / "info"
                info_dir.mkdir(parents=True, exist_ok=True)
                info_file = info_dir / f"{target.name}.trashinfo"
                info_file.write_text(
                    "[Trash Info]\n"
                    f"Path={quote(str(normalise_path(path)))}\n"
                    f"DeletionDate={datetime.now().strftime('%Y-%m-%dT%H:%M:%S')}\n",
                    encoding="utf-8",
                )
            try:
                _move_into(path, target, False, interrupt)
            except BaseException:
                if info_file is not None:
                    info_file.unlink(missing_ok=True)
                raise

        logger.info(f"Trashed {path} -> {target}")
        return _Result(OutcomeStatus.SUCCESS, reason="moved to trash", destination=str(target))

    def _delete(self, path: Path, interrupt: "_Interrupt") -> _Result:
        interrupt.check()
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
        logger.warning(f"Permanently deleted {path}")
        return _Result(OutcomeStatus.SUCCESS, reason="deleted permanently")

    def _archive(self, path: Path, destination: Path, interrupt: "_Interrupt") -> _Result:
        dest = expand_path(destination)

        if dest.suffix.lower() == ".zip":
            dest.parent.mkdir(parents=True, exist_ok=True)
            with self._archive_lock(normalise_path(dest)):
                _write_zip(path, dest, True, interrupt)
            zip_path = dest
        else:
            dest.mkdir(parents=True, exist_ok=True)
            with self._reserve(dest / f"{path.name}.zip", overwrite=False) as zip_path:
                _write_zip(path, zip_path, False, interrupt)

        logger.info(f"Archived {path} -> {zip_path}")
        return _Result(OutcomeStatus.SUCCESS, destination=str(zip_path))

    @contextlib.contextmanager
    def _reserve(self, desired: Path, overwrite: bool) -> Iterator[Path]:
        """Claim a destination name so concurrent passes never pick the same one."""
        with self._reserve_lock:
            if overwrite:
                target = desired
            else:
                target = unique_destination(desired, self._reserved)
            self._reserved.add(target)
        try:
            yield target
        finally:
            with self._reserve_lock:
                self._reserved.discard(target)

    def _archive_lock(self, zip_path: Path) -> threading.Lock:
        with self._reserve_lock:
            return self._archive_locks.setdefault(zip_path, threading.Lock())

    # Commands -----------------------------------------------------------------------

    async def _run_command(self, action: RunCommandAction, path: Path) -> _Result:
        command = expand_command(action.command, path)
        logger.info(f"Running command for {path}: {command}")

        kwargs = {"start_new_session": True} if os.name == "posix" else {}
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            **kwargs,
        )
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.command_timeout)
        except asyncio.TimeoutError:
            raise format_action_timeout(command, self.command_timeout)
        except asyncio.CancelledError:
            logger.warning(f"Command interrupted: {command}")
            return _Result(OutcomeStatus.ABORTED, reason=ABORTED_REASON)
        finally:
            if proc.returncode is None:
                _kill(proc)
                await proc.wait()

        output = self._tail(stdout)
        if proc.returncode != 0:
            return _Result(
                OutcomeStatus.FAILED,
                reason=f"exit status {proc.returncode}",
                output=output,
                exit_code=proc.returncode,
            )
        return _Result(OutcomeStatus.SUCCESS, output=output, exit_code=0)

    def _tail(self, data: Optional[bytes]) -> Optional[str]:
        if not data:
            return None
        return data[-self.output_limit:].decode(errors="replace")


def _kill(proc: asyncio.subprocess.Process) -> None:
    """Kill a command and everything it spawned."""
    with contextlib.suppress(ProcessLookupError):
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()


def _partial_path(target: Path) -> Path:
    return target.with_name(f".{target.name}{PARTIAL_SUFFIX}")


def _move_into(src: Path, target: Path, overwrite: bool, interrupt: _Interrupt) -> None:
    interrupt.check()
    if overwrite and target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    try:
        os.replace(src, target)
        return
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise

    # Different filesystem: copy first, publish atomically, then drop the source
    _copy_into(src, target, overwrite, interrupt)
    if src.is_dir() and not src.is_symlink():
        shutil.rmtree(src)
    else:
        src.unlink()


def _copy_into(src: Path, target: Path, overwrite: bool, interrupt: _Interrupt) -> None:
    def copy_file(source, destination, *, follow_symlinks=True):
        interrupt.check()
        return shutil.copy2(source, destination, follow_symlinks=follow_symlinks)

    partial = _partial_path(target)
    try:
        if src.is_dir() and not src.is_symlink():
            shutil.copytree(src, partial, symlinks=True, copy_function=copy_file)
        else:
            copy_file(src, partial, follow_symlinks=False)
        # Last point at which the transfer can still be abandoned
        interrupt.check()
        if overwrite and target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
        os.replace(partial, target)
    except BaseException:
        _remove_partial(partial)
        raise


def _remove_partial(partial: Path) -> None:
    try:
        if partial.is_dir() and not partial.is_symlink():
            shutil.rmtree(partial)
        else:
            partial.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Could not remove partial file {partial}: {e}")


def _write_zip(path: Path, zip_path: Path, append: bool, interrupt: _Interrupt) -> None:
    partial = _partial_path(zip_path)
    try:
        if append and zip_path.exists():
            shutil.copy2(zip_path, partial)
            mode = "a"
        else:
            mode = "w"
        with zipfile.ZipFile(partial, mode, compression=zipfile.ZIP_DEFLATED) as archive:
            existing = set(archive.namelist())
            root_name = _unique_member(path.name, existing)
            archive.write(path, root_name)
            if path.is_dir():
                for child in sorted(path.rglob("*")):
                    interrupt.check()
                    arcname = f"{root_name}/{child.relative_to(path).as_posix()}"
                    archive.write(child, arcname)
        interrupt.check()
        os.replace(partial, zip_path)
    except BaseException:
        _remove_partial(partial)
        raise


def _unique_member(name: str, existing: Set[str]) -> str:
    if name not in existing and f"{name}/" not in existing:
        return name
    stem, suffix = Path(name).stem, Path(name).suffix
    counter = 1
    while True:
        candidate = f"{stem} ({counter}){suffix}"
        if candidate not in existing and f"{candidate}/" not in existing:
            return candidate
        counter += 1
