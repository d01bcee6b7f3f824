"""
运行时指标：统计事件摄取、策略性抑制与推送投递，供 /api/overview 展示。
策略性抑制（重复、冷却、免打扰等）与真正的失败分开计数。
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field


@dataclass
class RuntimeMetrics:
    events_ingested: int = 0
    events_notified: int = 0
    events_duplicate: int = 0
    events_cooldown: int = 0
    events_noise: int = 0
    events_bundled: int = 0
    events_rejected: int = 0
    events_queued: int = 0
    deliveries_ok: int = 0
    delivery_failures: int = 0
    delivery_total_latency_ms: float = 0.0
    policy_deferrals: dict[str, int] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)
    last_delivery_at: float | None = None

    def record_outcome(self, reason: str) -> None:
        self.events_ingested += 1
        if reason == "notify":
            self.events_notified += 1
        elif reason == "duplicate":
            self.events_duplicate += 1
        elif reason == "cooldown":
            self.events_cooldown += 1
        elif reason == "implausible":
            self.events_noise += 1
        elif reason == "bundled":
            self.events_bundled += 1

    def record_rejected(self) -> None:
        self.events_ingested += 1
        self.events_rejected += 1

    def record_queued(self) -> None:
        self.events_queued += 1

    def record_delivery(self, latency_ms: float, ok: bool) -> None:
        self.delivery_total_latency_ms += max(0.0, latency_ms)
        self.last_delivery_at = time.time()
        if ok:
            self.deliveries_ok += 1
        else:
            self.delivery_failures += 1

    def record_deferral(self, reason: str) -> None:
        self.policy_deferrals[reason] = self.policy_deferrals.get(reason, 0) + 1

    def snapshot(self) -> dict:
        attempts = self.deliveries_ok + self.delivery_failures
        avg_latency_ms = self.delivery_total_latency_ms / attempts if attempts else 0.0

        return {
            "events_ingested": self.events_ingested,
            "events_notified": self.events_notified,
            "events_duplicate": self.events_duplicate,
            "events_cooldown": self.events_cooldown,
            "events_noise": self.events_noise,
            "events_bundled": self.events_bundled,
            "events_rejected": self.events_rejected,
            "events_queued": self.events_queued,
            "deliveries_ok": self.deliveries_ok,
            "delivery_failures": self.delivery_failures,
            "delivery_avg_latency_ms": round(avg_latency_ms, 2),
            "policy_deferrals": dict(self.policy_deferrals),
            "uptime_seconds": round(time.time() - self.started_at, 1),
            "last_delivery_at_utc": (
                time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.last_delivery_at))
                if self.last_delivery_at is not None
                else None
            ),
        }


runtime_metrics = RuntimeMetrics()


__all__ = ["RuntimeMetrics", "runtime_metrics"]
