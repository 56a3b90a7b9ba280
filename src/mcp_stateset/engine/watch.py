"""Watch loop: push a state-set directory whenever its fingerprint changes.

The loop polls `read_fingerprint` every `interval` seconds. The first poll
(unless seeded with a previous fingerprint) and every poll whose fingerprint
differs from the last one count as a change and trigger a push. Push and
fingerprint errors are reported and the loop keeps going; a source that is
missing at start, or stops being a directory, ends it.

`stop()` wakes the loop out of its sleep so it exits promptly.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from ..bundle.schema import utc_now_iso
from ..bundle.stateset_dir import NOT_A_DIRECTORY, read_fingerprint
from ..errors import WatchSourceError

logger = logging.getLogger(__name__)


@dataclass
class WatchEvent:
    """Structured notification emitted by the watcher."""
    event: str  # watch.start, watch.change, watch.error, watch.stop
    source: str
    timestamp: str = field(default_factory=utc_now_iso)
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.event, "source": self.source, "timestamp": self.timestamp, **self.detail}


@dataclass
class WatchStats:
    iterations: int = 0
    changes: int = 0
    pushes: int = 0
    failures: int = 0
    last_fingerprint: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "iterations": self.iterations,
            "changes": self.changes,
            "pushes": self.pushes,
            "failures": self.failures,
        }


class StateSetWatcher:
    """Poll a state-set directory and push it on change."""

    def __init__(
        self,
        source_dir: Path,
        push: Callable[[], Awaitable[Any]],
        interval: float = 5.0,
        once: bool = False,
        on_event: Optional[Callable[[WatchEvent], None]] = None,
        previous_fingerprint: Optional[str] = None,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.source_dir = Path(source_dir).expanduser().resolve()
        self.push = push
        self.interval = interval
        self.once = once
        self.on_event = on_event
        self.previous_fingerprint = previous_fingerprint
        self._stop = asyncio.Event()

    def stop(self) -> None:
        """Ask the loop to exit after the current step."""
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def _emit(self, event: str, **detail: Any) -> None:
        if self.on_event is not None:
            self.on_event(WatchEvent(event=event, source=str(self.source_dir), detail=detail))

    async def _sleep(self) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            pass

    def _check_source(self) -> None:
        if not self.source_dir.exists():
            raise WatchSourceError(f"StateSet source not found: {self.source_dir}")
        if not self.source_dir.is_dir():
            raise WatchSourceError(f"StateSet watch requires a directory: {self.source_dir}")

    async def run(self) -> WatchStats:
        """
        Run until stopped, until the single pass in `once` mode, or until
        the source stops being a directory.

        Raises:
            WatchSourceError: Source missing at start or no longer a directory
        """
        self._check_source()
        stats = WatchStats()
        previous = self.previous_fingerprint
        first = previous is None

        logger.info(
            f"Starting watch {self.source_dir} every {self.interval}s "
            f"({'once' if self.once else 'continuous'} mode)"
        )
        self._emit("watch.start", intervalSeconds=self.interval, once=self.once)

        try:
            while not self._stop.is_set():
                stats.iterations += 1
                try:
                    fingerprint = read_fingerprint(self.source_dir)
                except OSError as e:
                    stats.failures += 1
                    logger.warning(f"Failed to read state-set fingerprint: {e}")
                    self._emit("watch.error", stage="fingerprint", error=str(e))
                    if self.once:
                        break
                    await self._sleep()
                    continue

                if fingerprint == NOT_A_DIRECTORY:
                    self._emit("watch.error", stage="fingerprint", error="not a directory")
                    raise WatchSourceError(
                        f"StateSet watch requires a directory: {self.source_dir}"
                    )

                changed = first or fingerprint != previous
                first = False
                previous = fingerprint
                stats.last_fingerprint = fingerprint

                if changed:
                    stats.changes += 1
                    logger.info(f"Detected change in {self.source_dir}")
                    self._emit("watch.change", changed=True)
                    try:
                        await self.push()
                        stats.pushes += 1
                    except Exception as e:
                        stats.failures += 1
                        logger.error(f"Watch sync failed: {e}")
                        self._emit("watch.error", stage="push", error=str(e))
                elif self.once:
                    logger.info("No changes detected.")

                if self.once:
                    break
                await self._sleep()
        finally:
            self._emit("watch.stop", **stats.to_dict())
            logger.info(f"Watch stopped after {stats.iterations} iteration(s)")

        return stats
