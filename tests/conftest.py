import asyncio

import pytest

from text_correction import CorrectionService


class FakeCorrectionService(CorrectionService):
    """Yields canned fragments; optionally fails or never finishes."""

    model = "fake-model"

    def __init__(self, fragments, error=None, delay=0.0, hang=False):
        self.fragments = list(fragments)
        self.error = error
        self.delay = delay
        self.hang = hang
        self.calls = []
        self.yielded = 0
        self.closed = False

    async def stream(self, original):
        self.calls.append(original)
        try:
            for fragment in self.fragments:
                if self.delay:
                    await asyncio.sleep(self.delay)
                self.yielded += 1
                yield fragment
            if self.error is not None:
                raise self.error
            if self.hang:
                await asyncio.sleep(3600)
        finally:
            self.closed = True


class Recorder:
    """Collects RewriteSession events in order."""

    def __init__(self):
        self.events = []

    def on_diff_update(self, segments):
        self.events.append(("diff", list(segments)))

    def on_stats_update(self, stats):
        self.events.append(("stats", stats))

    def on_error(self, kind, message):
        self.events.append(("error", kind, message))

    def on_settled(self):
        self.events.append(("settled",))

    def callbacks(self):
        return {
            "on_diff_update": self.on_diff_update,
            "on_stats_update": self.on_stats_update,
            "on_error": self.on_error,
            "on_settled": self.on_settled,
        }

    def of(self, name):
        return [e for e in self.events if e[0] == name]


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def fake_service():
    return FakeCorrectionService
