"""
Publishes task outputs into the sample keyed output tree

Only the publisher writes into ``outdir``. Files of one sample go to
``outdir/<sample>/`` (or the stage's ``publish.dir`` template). Each
file is first written under a temporary name and then renamed into
place, so readers never observe partial files. Re-publishing identical
outputs leaves the tree unchanged.
"""

import asyncio
import errno
import filecmp
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Set, Tuple, Union

from sampleflow.exceptions import PublishError
from sampleflow.stage.stage import PublishMode
from sampleflow.task import TaskInstance, TaskStatus

log = logging.getLogger(__name__)  # pylint: disable=invalid-name


def _same(src: Path, dest: Path, mode: PublishMode) -> bool:
    """Check if ``dest`` already is the published form of ``src``"""
    if mode == PublishMode.SYMLINK:
        return dest.is_symlink() and os.readlink(dest) == str(src.absolute())
    if dest.is_symlink() or not dest.is_file():
        return False
    if mode == PublishMode.LINK:
        return os.path.samefile(src, dest)
    return filecmp.cmp(src, dest, shallow=False)


def _tmpname(dest: Path) -> str:
    fdes, tmp = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.", suffix=".tmp")
    os.close(fdes)
    os.unlink(tmp)
    return tmp


def _copy(src: Path, dest: Path) -> None:
    fdes, tmp = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.", suffix=".tmp")
    os.close(fdes)
    try:
        shutil.copyfile(src, tmp)
        shutil.copymode(src, tmp)
        os.replace(tmp, dest)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def _link(src: Path, dest: Path) -> None:
    tmp = _tmpname(dest)
    try:
        os.link(src, tmp)
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            raise
        log.warning("Cannot hard link %s across devices, copying instead", src)
        _copy(src, dest)
        return
    try:
        os.replace(tmp, dest)
    except BaseException:
        os.unlink(tmp)
        raise


def _symlink(src: Path, dest: Path) -> None:
    tmp = _tmpname(dest)
    os.symlink(src.absolute(), tmp)
    try:
        os.replace(tmp, dest)
    except BaseException:
        os.unlink(tmp)
        raise


_PLACE = {
    PublishMode.COPY: _copy,
    PublishMode.LINK: _link,
    PublishMode.SYMLINK: _symlink,
}


class Publisher:
    """Places outputs of succeeded tasks into ``outdir``

    Publishing is serialized per sample id. When the same sample id
    reaches a stage several times (e.g. after `concat`), the outputs
    are published in order of arrival, so the file of the later
    arrival wins regardless of which task finishes first.

    Args:
      outdir: Root of the output tree
    """
    def __init__(self, outdir: Union[str, Path]) -> None:
        self.outdir = Path(outdir).absolute()
        #: `PublishError` events
        self.errors: List[PublishError] = []
        #: Files placed (or found already in place), by task name
        self.published: Dict[str, List[Path]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._conditions: Dict[Tuple[str, str], asyncio.Condition] = {}
        self._done: Dict[Tuple[str, str], Set[int]] = {}

    def _lock(self, sample: str) -> asyncio.Lock:
        if sample not in self._locks:
            self._locks[sample] = asyncio.Lock()
        return self._locks[sample]

    def _condition(self, key: Tuple[str, str]) -> asyncio.Condition:
        if key not in self._conditions:
            self._conditions[key] = asyncio.Condition()
        return self._conditions[key]

    async def _wait_turn(self, task: TaskInstance) -> None:
        key = (task.stage.name, task.sample)
        done = self._done.setdefault(key, set())
        cond = self._condition(key)
        async with cond:
            await cond.wait_for(lambda: all(i in done for i in range(task.occurrence)))

    async def _end_turn(self, task: TaskInstance) -> None:
        key = (task.stage.name, task.sample)
        cond = self._condition(key)
        async with cond:
            self._done.setdefault(key, set()).add(task.occurrence)
            cond.notify_all()

    def finish(self) -> None:
        """Forget per sample turn state once all publish steps are done

        Occurrences are numbered per run, so a publisher used for
        another run must start without the turns of the previous one.
        `errors` and `published` are kept.
        """
        self._locks.clear()
        self._conditions.clear()
        self._done.clear()

    async def skip(self, task: TaskInstance) -> None:
        """Note that ``task`` (finally failed) will not publish"""
        await self._end_turn(task)

    async def publish(self, task: TaskInstance) -> List[Path]:
        """Publish outputs of ``task``

        Errors are logged and collected in `errors`. They never
        change the task status.

        Returns:
          Paths of published files
        """
        if task.status != TaskStatus.SUCCEEDED:
            raise ValueError(f"Cannot publish {task.status.value} task {task.name}")
        try:
            rule = task.stage.publish
            if not rule.enabled:
                return []
            await self._wait_turn(task)
            async with self._lock(task.sample):
                loop = asyncio.get_running_loop()
                paths, errors = await loop.run_in_executor(None, self.publish_files, task)
        finally:
            await self._end_turn(task)
        for error in errors:
            log.error("Publishing failed: %s", error)
        self.errors.extend(errors)
        self.published[task.name] = paths
        return paths

    def publish_files(self, task: TaskInstance) -> Tuple[List[Path], List[PublishError]]:
        """Place the files of ``task`` synchronously"""
        rule = task.stage.publish
        mode = PublishMode(getattr(rule.mode, "value", rule.mode))
        target = rule.target_dir(self.outdir, task.sample, task.stage.name)
        paths: List[Path] = []
        errors: List[PublishError] = []
        files = [path for path in task.output.files if rule.selects(path)]
        if not files:
            return paths, errors
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            errors.append(PublishError(task, target, f"Cannot create {target}: {exc}"))
            return paths, errors
        for src in files:
            dest = target / src.name
            try:
                if os.path.lexists(dest):
                    if dest.is_dir() and not dest.is_symlink():
                        raise PublishError(task, dest, f"{dest} is a directory")
                    if _same(src, dest, mode):
                        log.debug("Already published: %s", dest)
                        paths.append(dest)
                        continue
                    if not rule.overwrite:
                        raise PublishError(
                            task, dest,
                            f"{dest} exists with different content and overwrite is disabled"
                        )
                    log.info("Replacing %s with output of %s", dest, task.name)
                _PLACE[mode](src, dest)
                paths.append(dest)
            except PublishError as exc:
                errors.append(exc)
            except OSError as exc:
                errors.append(PublishError(task, dest, f"Cannot publish {src} to {dest}: {exc}"))
        return paths, errors
