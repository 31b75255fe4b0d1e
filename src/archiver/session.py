"""Wires scanners, executors and the reconciler into one running session."""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Coroutine, Dict, List, Optional, Sequence

from loguru import logger

from archiver import events as ev
from archiver.config import ArchiverConfig
from archiver.exceptions import ArchiverError
from archiver.executor import FileExecutor
from archiver.presentation import Presentation, Snapshot
from archiver.reconciler import Reconciler
from archiver.scanner import ScanResult

Renderer = Callable[[Snapshot], None]


def validate_roots(roots: Sequence[Path]) -> List[Path]:
    """Resolve roots and make sure they are distinct, existing, non-nested directories."""
    if not roots:
        raise ArchiverError("at least one root is required")
    resolved = [Path(root).expanduser().resolve() for root in roots]
    for root in resolved:
        if not root.is_dir():
            raise ArchiverError(f"not a directory: {root}")
    for i, root in enumerate(resolved):
        for other in resolved[i + 1 :]:
            if root == other:
                raise ArchiverError(f"root given twice: {root}")
            if root in other.parents or other in root.parents:
                raise ArchiverError(f"roots are nested: {root} and {other}")
    return resolved


class ArchiveSession:
    """
    One reconciliation session over an origin and its copies.

    Each root gets one worker task that first scans the root and then executes
    file commands. All workers report on a single bounded event queue,
    consumed by the reconciler loop in run(), which is the only code touching
    the index.
    """

    def __init__(
        self,
        roots: Sequence[Path],
        config: ArchiverConfig,
        render: Optional[Renderer] = None,
    ):
        self.roots = validate_roots(roots)
        self.config = config
        self.render = render
        self.events: "asyncio.Queue[ev.Event]" = asyncio.Queue(maxsize=config.event_queue_size)
        self.stop = asyncio.Event()
        self.executors = {
            root: FileExecutor(root, self.events, config, self.stop) for root in self.roots
        }
        self.reconciler = Reconciler(self.roots, self.executors, auto_resolve=config.auto_resolve)
        self.presentation = Presentation(self.reconciler)
        self.idle = asyncio.Event()
        self.ready = asyncio.Event()
        self.failure: Optional[BaseException] = None
        self.done = asyncio.Event()
        self.tasks: List[asyncio.Task] = []

    @property
    def origin(self) -> Path:
        return self.roots[0]

    @property
    def scan_results(self) -> Dict[Path, ScanResult]:
        return {
            root: executor.scan_result
            for root, executor in self.executors.items()
            if executor.scan_result is not None
        }

    async def send(self, intent: ev.Intent) -> None:
        """Inject a UI intent; wait_idle() afterwards waits for its effects."""
        self.idle.clear()
        await self.events.put(intent)

    async def wait_ready(self) -> None:
        await self.wait_for(self.ready)

    async def wait_idle(self) -> None:
        """Wait until every root is scanned and no command is outstanding."""
        await self.wait_for(self.idle)

    async def wait_for(self, condition: asyncio.Event) -> None:
        """Wait for condition, or raise if the session ends before it is set."""
        waiters = [asyncio.create_task(condition.wait()), asyncio.create_task(self.done.wait())]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
        if not condition.is_set():
            if self.failure is not None:
                raise self.failure
            raise ArchiverError("session ended")

    async def tick(self) -> None:
        while True:
            await asyncio.sleep(self.config.tick_interval)
            await self.events.put(ev.Tick(time=datetime.now(timezone.utc)))

    async def guard(self, name: str, coro: Coroutine) -> None:
        """Run a worker; an unexpected exception ends the session."""
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"{name} failed: {e}")
            self.failure = e
            await self.events.put(ev.Quit())

    def dispatch(self, event: ev.Event) -> None:
        if isinstance(event, ev.INTENTS) and not isinstance(event, (ev.AutoResolve, ev.Quit)):
            self.presentation.handle_intent(event)
        else:
            self.reconciler.handle_event(event)

    def render_frame(self) -> None:
        self.reconciler.frames += 1
        if self.render is not None:
            self.render(self.presentation.snapshot())

    def update_flags(self) -> None:
        r = self.reconciler
        if r.ready:
            self.ready.set()
        if r.ready and not r.pending and not r.deferred and self.events.empty():
            self.idle.set()
        else:
            self.idle.clear()

    async def run(self) -> Reconciler:
        """Run until a Quit event. Returns the reconciler for inspection."""
        logger.info(f"Starting session: origin {self.origin}, {len(self.roots) - 1} copies")
        for root, executor in self.executors.items():
            self.tasks.append(asyncio.create_task(self.guard(f"worker {root}", executor.run())))
        self.tasks.append(asyncio.create_task(self.tick()))
        self.reconciler.start()

        try:
            while not self.reconciler.quit:
                self.dispatch(await self.events.get())
                # Apply everything already queued before rendering once
                while not self.reconciler.quit and not self.events.empty():
                    self.dispatch(self.events.get_nowait())
                self.render_frame()
                self.update_flags()
        except Exception as e:
            self.failure = self.failure or e
            raise
        finally:
            self.stop.set()
            for task in self.tasks:
                task.cancel()
            await asyncio.gather(*self.tasks, return_exceptions=True)
            self.tasks.clear()
            await self.finish_scans()
            self.done.set()
            logger.info("Session ended")

        if self.failure is not None:
            raise self.failure
        return self.reconciler

    async def finish_scans(self) -> None:
        """Let interrupted scans reach their next stop check and store their cache."""
        scans = [e.scan_task for e in self.executors.values() if e.scanning]
        if not scans:
            return
        logger.info(f"Waiting for {len(scans)} interrupted scans to store their cache")
        # Nobody applies events any more, but the scanners must not block on a full queue
        drain = asyncio.create_task(self.discard_events())
        try:
            await asyncio.gather(*scans, return_exceptions=True)
        finally:
            drain.cancel()

    async def discard_events(self) -> None:
        while True:
            await self.events.get()

    async def run_until(self, condition: asyncio.Event) -> Reconciler:
        """Run until condition is set, then quit. Errors from the session propagate."""
        task = asyncio.create_task(self.run())
        waiter = asyncio.create_task(condition.wait())
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        if task in done:
            waiter.cancel()
            return task.result()
        await self.send(ev.Quit())
        return await task
