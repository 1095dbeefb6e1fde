"""Registry of externally managed processes (browser drivers, workers)."""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from typing import Any, Dict

logger = logging.getLogger(__name__)


class ManagedInstances:
    """
    Track processes the run started so they can be stopped on abort.

    Handles only need ``terminate()``, ``kill()`` and ``wait()``; both
    ``subprocess.Popen`` and ``asyncio.subprocess.Process`` qualify.
    """

    def __init__(self, grace_period: float = 5.0) -> None:
        self._grace_period = grace_period
        self._instances: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def register(self, name: str, handle: Any) -> None:
        with self._lock:
            self._instances[name] = handle

    def unregister(self, name: str) -> None:
        with self._lock:
            self._instances.pop(name, None)

    def names(self) -> list[str]:
        with self._lock:
            return list(self._instances)

    async def stop_instances(self) -> None:
        """Terminate every registered instance; failures are logged, not raised."""
        with self._lock:
            instances = list(self._instances.items())
            self._instances.clear()
        if not instances:
            return
        logger.info("Stopping %d managed instance(s)", len(instances))
        await asyncio.gather(*(self._stop_one(name, handle) for name, handle in instances))

    async def _stop_one(self, name: str, handle: Any) -> None:
        if getattr(handle, "returncode", None) is not None:
            return
        try:
            handle.terminate()
        except ProcessLookupError:
            return
        except Exception as exc:
            logger.warning("Failed to terminate %s: %s", name, exc)
            return
        try:
            await asyncio.wait_for(_wait(handle), timeout=self._grace_period)
        except asyncio.TimeoutError:
            logger.warning("%s did not exit after %.1fs; killing", name, self._grace_period)
            try:
                handle.kill()
            except ProcessLookupError:
                pass
            except Exception as exc:
                logger.warning("Failed to kill %s: %s", name, exc)
        except Exception as exc:
            logger.warning("Failed waiting for %s to exit: %s", name, exc)


async def _wait(handle: Any) -> None:
    if inspect.iscoroutinefunction(handle.wait):
        await handle.wait()
        return
    await asyncio.to_thread(handle.wait)
