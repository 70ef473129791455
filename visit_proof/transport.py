"""Relay transport: publish envelopes to several endpoints and read them back.

Delivery is at-least-once and unordered. Endpoint fan-out and de-duplication
happen once, in ``RelayPool``; a single relay only knows how to talk to itself.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Final, Protocol, Sequence

from visit_proof.errors import TransportFailure, ValidationError
from visit_proof.events import Envelope, EventFilter, dumps_envelope, loads_envelope

logger = logging.getLogger(__name__)

DEFAULT_RELAYS: Final[tuple[str, ...]] = ("events.jsonl",)
DEFAULT_TIMEOUT_SECONDS: Final[float] = 10.0


class Relay(Protocol):
    """One broadcast endpoint."""

    url: str

    async def publish(self, envelope: Envelope) -> None: ...

    async def query(self, flt: EventFilter) -> list[Envelope]: ...

    def subscribe(self, flt: EventFilter) -> AsyncIterator[Envelope]: ...


@dataclass(frozen=True, slots=True)
class RelayConfig:
    """Which endpoints to use and how long to wait for each."""

    urls: tuple[str, ...] = DEFAULT_RELAYS
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS


class MemoryRelay:
    """In-process relay with live subscriptions. Can be switched offline to simulate outages."""

    def __init__(self, url: str = "memory://relay") -> None:
        self.url = url
        self.online = True
        self._events: dict[str, Envelope] = {}
        self._queues: list[tuple[EventFilter, asyncio.Queue[Envelope | None]]] = []

    def __len__(self) -> int:
        return len(self._events)

    def _check_online(self) -> None:
        if not self.online:
            raise TransportFailure(self.url, "relay offline")

    async def publish(self, envelope: Envelope) -> None:
        self._check_online()
        self._events.setdefault(envelope.id, envelope)
        for flt, queue in self._queues:
            if flt.matches(envelope):
                queue.put_nowait(envelope)

    async def query(self, flt: EventFilter) -> list[Envelope]:
        self._check_online()
        return [env for env in self._events.values() if flt.matches(env)]

    async def subscribe(self, flt: EventFilter) -> AsyncIterator[Envelope]:
        """Stored matches first, then live events until ``close`` is called."""

        self._check_online()
        queue: asyncio.Queue[Envelope | None] = asyncio.Queue()
        entry = (flt, queue)
        self._queues.append(entry)
        # no await between registering and snapshotting, so nothing slips through
        backlog = [env for env in self._events.values() if flt.matches(env)]
        try:
            for env in backlog:
                yield env
            while True:
                env = await queue.get()
                if env is None:
                    return
                yield env
        finally:
            self._queues.remove(entry)

    def close(self) -> None:
        """End all live subscriptions."""

        for _, queue in self._queues:
            queue.put_nowait(None)


class JsonlRelay:
    """Relay backed by an append-only JSON-lines journal file.

    Broken lines (e.g. a torn write at the tail) are skipped on read. A file
    relay has no live feed: ``subscribe`` yields what is stored and ends.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self.url = str(self._path)

    async def publish(self, envelope: Envelope) -> None:
        await asyncio.to_thread(self.append, envelope)

    def append(self, envelope: Envelope) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8", newline="\n") as f:
                f.write(dumps_envelope(envelope) + "\n")
        except OSError as exc:
            raise TransportFailure(self.url, str(exc)) from exc

    def read_all(self) -> list[Envelope]:
        if not self._path.exists():
            return []
        out: list[Envelope] = []
        skipped = 0
        try:
            with self._path.open("r", encoding="utf-8") as f:
                for line in f:
                    s = line.strip()
                    if not s:
                        continue
                    try:
                        out.append(loads_envelope(s))
                    except ValidationError:
                        skipped += 1
        except OSError as exc:
            raise TransportFailure(self.url, str(exc)) from exc
        if skipped:
            logger.warning("%s: skipped %s unreadable lines", self.url, skipped)
        return out

    async def query(self, flt: EventFilter) -> list[Envelope]:
        return [env for env in await asyncio.to_thread(self.read_all) if flt.matches(env)]

    async def subscribe(self, flt: EventFilter) -> AsyncIterator[Envelope]:
        for env in await self.query(flt):
            yield env


def relay_from_url(url: str) -> Relay:
    """Build a relay for an endpoint string. Only file and memory endpoints are built in."""

    if url.startswith("memory://"):
        return MemoryRelay(url)
    return JsonlRelay(url)


@dataclass(frozen=True, slots=True)
class EndpointResult:
    endpoint: str
    ok: bool
    error: str | None = None


@dataclass(frozen=True, slots=True)
class PublishReport:
    envelope_id: str
    results: tuple[EndpointResult, ...] = field(default_factory=tuple)

    @property
    def succeeded(self) -> list[str]:
        return [r.endpoint for r in self.results if r.ok]

    @property
    def failed(self) -> list[str]:
        return [r.endpoint for r in self.results if not r.ok]


class RelayPool:
    """Fan-out publisher and merging, de-duplicating reader over several relays.

    A failing endpoint is logged and skipped; it never aborts the operation
    for the others. Retrying later is up to the caller.
    """

    def __init__(self, relays: Sequence[Relay], timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        if not relays:
            raise ValueError("RelayPool needs at least one relay")
        self._relays = list(relays)
        self._timeout = timeout_seconds

    @classmethod
    def from_config(cls, config: RelayConfig) -> RelayPool:
        return cls([relay_from_url(u) for u in config.urls], timeout_seconds=config.timeout_seconds)

    @property
    def endpoints(self) -> list[str]:
        return [r.url for r in self._relays]

    async def _publish_one(self, relay: Relay, envelope: Envelope) -> EndpointResult:
        try:
            await asyncio.wait_for(relay.publish(envelope), timeout=self._timeout)
        except (TransportFailure, OSError, TimeoutError) as exc:
            logger.warning("Publish of %s to %s failed: %s", envelope.id[:12], relay.url, exc)
            return EndpointResult(endpoint=relay.url, ok=False, error=str(exc) or type(exc).__name__)
        return EndpointResult(endpoint=relay.url, ok=True)

    async def publish(self, envelope: Envelope) -> PublishReport:
        """Publish to every endpoint concurrently.

        Raises:
            TransportFailure: Only if no endpoint accepted the envelope.
        """

        results = await asyncio.gather(*(self._publish_one(r, envelope) for r in self._relays))
        report = PublishReport(envelope_id=envelope.id, results=tuple(results))
        if not report.succeeded:
            raise TransportFailure(",".join(self.endpoints), "no endpoint accepted the envelope")
        return report

    async def _query_one(self, relay: Relay, flt: EventFilter) -> list[Envelope]:
        try:
            return await asyncio.wait_for(relay.query(flt), timeout=self._timeout)
        except (TransportFailure, OSError, TimeoutError) as exc:
            logger.warning("Query on %s failed: %s", relay.url, exc)
            return []

    async def query(self, flt: EventFilter) -> list[Envelope]:
        """Union of all endpoints' matches, de-duplicated, ordered by (created_at, id)."""

        batches = await asyncio.gather(*(self._query_one(r, flt) for r in self._relays))
        merged: dict[str, Envelope] = {}
        for batch in batches:
            for env in batch:
                merged.setdefault(env.id, env)
        return sorted(merged.values(), key=lambda e: (e.created_at_ms, e.id))

    async def subscribe(self, flt: EventFilter) -> AsyncIterator[Envelope]:
        """Merge all endpoint streams; each envelope id is yielded once.

        Ends when every endpoint stream has ended (or failed).
        """

        queue: asyncio.Queue[Envelope | None] = asyncio.Queue()

        async def pump(relay: Relay) -> None:
            try:
                async for env in relay.subscribe(flt):
                    await queue.put(env)
            except TransportFailure as exc:
                logger.warning("Subscription on %s failed: %s", relay.url, exc)
            finally:
                queue.put_nowait(None)

        tasks = [asyncio.create_task(pump(r)) for r in self._relays]
        seen: set[str] = set()
        running = len(tasks)
        try:
            while running:
                env = await queue.get()
                if env is None:
                    running -= 1
                    continue
                if env.id in seen:
                    continue
                seen.add(env.id)
                yield env
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
