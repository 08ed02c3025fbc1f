from typing import Optional
import logging
import time

from tqdm import tqdm


class ProgressMonitor:
    """Counts finished walk-forward steps, failed ones separately"""

    def __init__(self, total: int, desc: str = "Steps",
                 logger: Optional[logging.Logger] = None,
                 log_every: int = 100,
                 show_bar: bool = True):
        self.logger = logger or logging.getLogger('progress')
        self.pbar = tqdm(total=total, desc=desc, unit='step', disable=not show_bar)
        self.total = total
        self.done = 0
        self.failed = 0
        self.log_every = log_every
        self.description = desc
        self.start_time = time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.start_time

    def update(self, n: int = 1, failed: bool = False):
        """Mark n steps finished; failed steps still advance the bar"""
        self.done += n
        if failed:
            self.failed += n
            self.pbar.set_postfix(failed=self.failed, refresh=False)
        self.pbar.update(n)

        if self.log_every and self.done % self.log_every == 0:
            rate = self.done / self.elapsed if self.elapsed > 0 else float('inf')
            remaining = (self.total - self.done) / rate if rate > 0 else 0.0
            self.logger.info(
                f"{self.description}: {self.done}/{self.total} steps, "
                f"{self.failed} failed, {rate:.1f} steps/s, ~{remaining:.0f}s left"
            )

    def close(self):
        self.pbar.close()
        self.logger.info(
            f"{self.description}: finished {self.done}/{self.total} steps "
            f"({self.failed} failed) in {self.elapsed:.1f}s"
        )
