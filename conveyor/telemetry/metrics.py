from __future__ import annotations

import math
import threading
from collections import Counter, defaultdict
from dataclasses import dataclass, field, fields
from typing import Dict, Iterable, List, Optional, Tuple

import orjson

_PERCENTILES = (50, 95, 99)


def _percentile(sorted_values: List[float], p: float) -> float:
    """Linear interpolation between closest ranks; NaN for no data."""
    if not sorted_values:
        return float("nan")
    rank = (len(sorted_values) - 1) * p / 100.0
    lo, hi = math.floor(rank), math.ceil(rank)
    if lo == hi:
        return sorted_values[lo]
    return sorted_values[lo] + (sorted_values[hi] - sorted_values[lo]) * (rank - lo)


def pct_summary(values: Iterable[Optional[float]]) -> Dict[str, float]:
    vals = sorted(v for v in values if v is not None)
    out: Dict[str, float] = {
        "count": len(vals),
        "min": vals[0] if vals else float("nan"),
        "max": vals[-1] if vals else float("nan"),
    }
    for p in _PERCENTILES:
        out[f"p{p}"] = _percentile(vals, p)
    return out


@dataclass
class Metrics:
    """Process-wide counters shared by every stage of a pipeline run.

    Plain ``int`` fields are bumped through :meth:`inc`; collections have
    dedicated observers. Every mutation takes ``lock`` so handlers running in
    executor threads can report too.
    """

    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    # per item, summed over all worker stages
    items_total: int = 0
    items_succeeded: int = 0
    items_failed: int = 0
    items_dropped: int = 0
    items_requeued: int = 0

    batches_emitted: int = 0
    batch_items_total: int = 0
    rate_limit_waits: int = 0

    # frontier admission
    keys_admitted: int = 0
    keys_rejected: int = 0

    stage_durations: Dict[str, List[float]] = field(
        default_factory=lambda: defaultdict(list))
    batches_by_reason: Counter[str] = field(default_factory=Counter)
    errors_by_type: Counter[str] = field(default_factory=Counter)

    def inc(self, attr: str, value: int = 1) -> None:
        with self.lock:
            setattr(self, attr, getattr(self, attr) + value)

    def observe_stage(self, stage: str, duration: float) -> None:
        with self.lock:
            self.stage_durations[stage].append(duration)

    def observe_batch(self, size: int, reason: str) -> None:
        with self.lock:
            self.batches_emitted += 1
            self.batch_items_total += size
            self.batches_by_reason[reason] += 1

    def record_error(self, exc: BaseException) -> None:
        with self.lock:
            self.errors_by_type[type(exc).__name__] += 1

    def _counters(self) -> Dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self) if f.type == "int"}

    def snapshot(self) -> Dict:
        with self.lock:
            res: Dict = self._counters()
            res["batches_by_reason"] = dict(self.batches_by_reason)
            res["errors_by_type"] = dict(self.errors_by_type)
            res["stage_stats"] = {
                stage: pct_summary(vals) for stage, vals in self.stage_durations.items()
            }
        return res

    def to_json(self) -> bytes:
        # orjson writes the NaN of an empty stage as null
        return orjson.dumps(self.snapshot(), option=orjson.OPT_SORT_KEYS)

    def summary(self) -> Tuple[str, Dict]:
        """Render a human readable report; returns ``(text, snapshot)``."""
        res = self.snapshot()
        out = ["===== METRICS SUMMARY ====="]
        out.append(
            "Items      : total={items_total}  ok={items_succeeded}  fail={items_failed}  "
            "dropped={items_dropped}  requeued={items_requeued}".format(**res)
        )
        if res["batches_emitted"]:
            out.append("Batches    : emitted={batches_emitted}  items={batch_items_total:,}".format(**res))
            out.extend(f"  {r}: {n}" for r, n in sorted(res["batches_by_reason"].items()))
        if res["rate_limit_waits"]:
            out.append(f"Rate limit : waits={res['rate_limit_waits']}")
        if res["keys_admitted"] or res["keys_rejected"]:
            out.append("Frontier   : admitted={keys_admitted}  rejected={keys_rejected}".format(**res))

        if res["stage_stats"]:
            out += ["", "Stage timings (s):"]
            for stage, st in sorted(res["stage_stats"].items()):
                out.append(
                    f"  {stage:20s} n={st['count']:<6d} min={st['min']:.4f} "
                    f"p50={st['p50']:.4f} p95={st['p95']:.4f} p99={st['p99']:.4f} max={st['max']:.4f}"
                )
        if res["errors_by_type"]:
            out += ["", "Errors by type:"]
            out.extend(f"  {k}: {v}" for k, v in Counter(res["errors_by_type"]).most_common())
        return "\n".join(out), res

    def stage_percentile(self, stage: str, p: float) -> float:
        with self.lock:
            vals = sorted(self.stage_durations.get(stage, ()))
        return _percentile(vals, p)
