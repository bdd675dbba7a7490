from __future__ import annotations

import psutil


_MB = 1024.0 * 1024.0


class ProcessSampler:
    """Reads process-wide resource counters through psutil.

    Every reading except memory is cumulative since process start. None of
    them is attributable to a single request; callers record the latest
    value as a coarse signal. Methods raise whatever psutil raises (e.g.
    ``AttributeError`` for ``io_counters`` on macOS); stages handle that.
    """

    def __init__(self, process: psutil.Process | None = None) -> None:
        self._process = process or psutil.Process()

    def memory_mb(self) -> float:
        return self._process.memory_info().rss / _MB

    def cpu_seconds(self) -> tuple[float, float]:
        times = self._process.cpu_times()
        return times.user, times.system

    def cpu_time_ms(self) -> float:
        user, system = self.cpu_seconds()
        return (user + system) * 1000.0

    def fs_operations(self) -> int:
        counters = self._process.io_counters()
        return counters.read_count + counters.write_count

    def voluntary_context_switches(self) -> int:
        return self._process.num_ctx_switches().voluntary
