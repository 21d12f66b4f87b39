from __future__ import annotations

import threading
from typing import Callable, Optional, Sequence

SCAN_STAGES = ("role_assignments", "verify_principals", "resource_groups")


class ScanProgress:
    """
    Thread-safe progress for the parallel subscription phase.

    One overall tqdm bar; each subscription advances it by a fraction per
    stage reached and always contributes a full unit once finished (even on
    failure). The postfix shows how many subscriptions sit in each stage.
    """

    def __init__(
        self,
        *,
        total: int,
        tqdm_factory: Optional[Callable] = None,
        stages: Sequence[str] = SCAN_STAGES,
        desc: str = "Scanning subscriptions",
    ) -> None:
        self._lock = threading.Lock()
        self._bar = tqdm_factory(total=total, desc=desc, unit="subscription", leave=False) if tqdm_factory else None
        self._stage_index = {name: i for i, name in enumerate(stages)}
        self._weight = 1.0 / (len(stages) + 1)
        self._reached: dict[str, int] = {}
        self._current: dict[str, str] = {}

    def callback(self, subscription_id: str) -> Callable[[str], None]:
        def cb(stage: str) -> None:
            self.set_stage(subscription_id, stage)

        return cb

    def set_stage(self, subscription_id: str, stage: str) -> None:
        with self._lock:
            idx = self._stage_index.get(stage)
            if idx is None:
                return
            prev = self._reached.get(subscription_id, -1)
            if idx > prev:
                self._reached[subscription_id] = idx
                if self._bar is not None:
                    self._bar.update((idx - prev) * self._weight)
            self._current[subscription_id] = stage
            self._render_locked()

    def finish(self, subscription_id: str, *, failed: bool = False) -> None:
        with self._lock:
            prev = self._reached.get(subscription_id, -1)
            self._reached[subscription_id] = len(self._stage_index)
            self._current[subscription_id] = "failed" if failed else "done"
            if self._bar is not None:
                remaining = 1.0 - (prev + 1) * self._weight
                if remaining > 0:
                    self._bar.update(remaining)
            self._render_locked()

    def close(self) -> None:
        with self._lock:
            if self._bar is not None:
                self._bar.close()
                self._bar = None

    def _render_locked(self) -> None:
        if self._bar is None:
            return
        counts: dict[str, int] = {}
        for st in self._current.values():
            counts[st] = counts.get(st, 0) + 1
        tail = [k for k in ("done", "failed") if k in counts]
        parts = [f"{k}:{counts[k]}" for k in sorted(counts) if k not in tail]
        parts += [f"{k}:{counts[k]}" for k in tail]
        self._bar.set_postfix_str(" ".join(parts), refresh=True)
