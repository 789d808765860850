import asyncio
import sys
import time
from pathlib import Path

FAKE_FFMPEG = [sys.executable, str(Path(__file__).resolve().with_name("fake_ffmpeg.py"))]


class EventRecorder:
    def __init__(self, publisher):
        self.received = []
        self.token = publisher.subscribe(None, self.received.append)

    def kinds(self, item_id=None) -> list:
        return [e.kind.value for e in self.received if item_id is None or e.item_id == item_id]

    def of(self, kind: str, item_id=None) -> list:
        return [e for e in self.received if e.kind.value == kind and (item_id is None or e.item_id == item_id)]

    async def wait_for(self, kind: str, item_id=None, timeout: float = 10.0):
        deadline = time.monotonic() + timeout
        while not self.of(kind, item_id):
            if time.monotonic() > deadline:
                raise AssertionError(f"Timed out waiting for '{kind}' (item {item_id}); got {self.kinds()}")
            await asyncio.sleep(0.02)
        return self.of(kind, item_id)[-1]


async def wait_until(predicate, timeout: float = 10.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.02)
