import asyncio
import concurrent.futures
import itertools
import threading
from typing import Coroutine, List, Set

from ..utils.logger import get_logger

logger = get_logger("wsecho.Runtime")


class SerializationContext:
    """Binds coroutines to one worker loop, so nothing bound here ever runs concurrently"""
    def __init__(self, runtime: "Runtime", loop: asyncio.AbstractEventLoop):
        self.runtime = runtime
        self.loop = loop

    def spawn(self, coro: Coroutine) -> concurrent.futures.Future:
        """Schedule coro on this context from any thread"""
        try:
            future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        except RuntimeError:
            # loop already closed
            coro.close()
            raise
        self.runtime._track(future)
        return future


class Runtime:
    """Fixed pool of worker threads, each driving its own asyncio event loop"""
    def __init__(self, threads: int):
        if threads < 1:
            raise ValueError(f"Runtime needs at least one worker thread, got {threads}")

        self.threads = threads
        self._loops: List[asyncio.AbstractEventLoop] = [asyncio.new_event_loop() for _ in range(threads)]
        self._round_robin = itertools.cycle(range(threads))
        self._pending: Set[concurrent.futures.Future] = set()
        self._workers: List[threading.Thread] = []
        self._stop_requested = threading.Event()
        self._lock = threading.Lock()

    @property
    def pending(self) -> int:
        """Spawned coroutines that have not finished yet"""
        return len(self._pending)

    def _track(self, future: concurrent.futures.Future):
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)

    def make_serialization_context(self) -> SerializationContext:
        with self._lock:
            index = next(self._round_robin)
        return SerializationContext(self, self._loops[index])

    def run_until_stopped(self):
        """Run worker 0 on the calling thread and the rest on new threads, until stop()"""
        for index, loop in enumerate(self._loops[1:], start=1):
            worker = threading.Thread(
                target=self._run_worker, args=(loop,), name=f"wsecho-worker-{index}", daemon=True
            )
            worker.start()
            self._workers.append(worker)

        logger.debug(f"Runtime started with {self.threads} worker(s)")

        try:
            self._run_worker(self._loops[0])

        finally:
            self.stop()
            for worker in self._workers:
                worker.join()
            self._workers.clear()
            logger.debug("Runtime stopped")

    def stop(self):
        """Ask every worker loop to stop; safe from any thread, repeated calls are ignored"""
        if self._stop_requested.is_set():
            return
        self._stop_requested.set()

        for loop in self._loops:
            try:
                loop.call_soon_threadsafe(loop.stop)
            except RuntimeError:
                # already closed
                pass

    @staticmethod
    def _run_worker(loop: asyncio.AbstractEventLoop):
        asyncio.set_event_loop(loop)
        try:
            loop.run_forever()

        finally:
            try:
                _cancel_all_tasks(loop)
                loop.run_until_complete(loop.shutdown_asyncgens())
            finally:
                asyncio.set_event_loop(None)
                loop.close()


def _cancel_all_tasks(loop: asyncio.AbstractEventLoop):
    """Cancel what is left on a stopped loop and let it unwind, like asyncio.run does"""
    to_cancel = asyncio.all_tasks(loop)
    if not to_cancel:
        return

    for task in to_cancel:
        task.cancel()

    loop.run_until_complete(asyncio.gather(*to_cancel, return_exceptions=True))

    for task in to_cancel:
        if task.cancelled():
            continue
        if task.exception() is not None:
            logger.error(f"Unhandled error in {task.get_name()} during shutdown: {task.exception()}")
