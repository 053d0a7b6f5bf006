from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

DEFAULT_SAMPLE_INTERVAL = 0.2
DEFAULT_STABLE_SAMPLES = 3


class SampleFetchError(RuntimeError):
    """The renderer failed to produce a sample."""


class ConvergenceDetector:
    """Fixed-window plateau detector over opaque render samples.

    A render is considered settled once ``stable_samples`` consecutive samples
    are bit-for-bit identical. Only the previous sample and the current run
    length are retained.
    """

    def __init__(self, stable_samples: int = DEFAULT_STABLE_SAMPLES) -> None:
        if stable_samples < 1:
            raise ValueError("stable_samples must be >= 1")
        self.stable_samples = stable_samples
        self.reset()

    def reset(self) -> None:
        self._previous: bytes | None = None
        self.stable_count = 0
        self.sample_count = 0
        self.final_sample: bytes | None = None

    @property
    def settled(self) -> bool:
        return self.final_sample is not None

    def observe(self, sample: bytes) -> bool:
        if self.settled:
            return True
        self.sample_count += 1
        if self._previous is not None and sample == self._previous:
            self.stable_count += 1
        else:
            self.stable_count = 1
        if self.stable_count >= self.stable_samples:
            self.final_sample = sample
            return True
        self._previous = sample
        return False

    def observe_failure(self) -> None:
        # a failed fetch never matches, before or after
        self.sample_count += 1
        self.stable_count = 0
        self._previous = None


@dataclass(slots=True, frozen=True)
class SettleResult:
    settled: bool
    image: bytes | None
    samples: int
    errors: int


def sample_until_settled(
    fetch: Callable[[], bytes],
    *,
    interval: float = DEFAULT_SAMPLE_INTERVAL,
    stable_samples: int = DEFAULT_STABLE_SAMPLES,
    max_samples: int = 0,
    on_error: Callable[[SampleFetchError], None] | None = None,
    stop: threading.Event | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> SettleResult:
    """Sample ``fetch`` every ``interval`` seconds until the output settles.

    Failed fetches are passed to ``on_error`` and sampling carries on. The loop
    also ends after ``max_samples`` samples (0 means no cap) or once ``stop``
    is set; in both cases the result is not settled.
    """
    detector = ConvergenceDetector(stable_samples)
    errors = 0
    while True:
        if stop is not None and stop.is_set():
            break
        try:
            sample = fetch()
        except SampleFetchError as exc:
            errors += 1
            detector.observe_failure()
            if on_error is not None:
                on_error(exc)
        else:
            if detector.observe(sample):
                return SettleResult(True, detector.final_sample, detector.sample_count, errors)

        if max_samples and detector.sample_count >= max_samples:
            break
        if stop is not None:
            if stop.wait(interval):
                break
        else:
            sleep(interval)
    return SettleResult(False, None, detector.sample_count, errors)
