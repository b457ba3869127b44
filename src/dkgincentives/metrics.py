"""
dkgincentives/metrics.py

Prometheus metrics collection for dkgincentives.

Exposes the market aggregates, sharding table size, epoch pools and the
commit/proof counters of an IncentivesEngine.
"""

import time
import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from .engine import IncentivesEngine
    from .service import IncentivesService

logger = logging.getLogger("dkgincentives.metrics")


class MetricsCollector:
    """
    Prometheus metrics collector for dkgincentives.

    Counters are read from the engine components, so reset_counters()
    resets those components' counters too.

    Usage:
        from dkgincentives.metrics import MetricsCollector

        metrics = MetricsCollector(engine)
        prometheus_output = metrics.collect()
    """

    # Metric definitions
    METRICS = {
        "dkg_total_active_stake": {
            "type": "gauge",
            "help": "Sum of stake over active nodes",
        },
        "dkg_weighted_active_ask_sum": {
            "type": "gauge",
            "help": "Sum of ask * stake over active nodes",
        },
        "dkg_average_ask": {
            "type": "gauge",
            "help": "Stake-weighted average ask",
        },
        "dkg_active_nodes": {
            "type": "gauge",
            "help": "Number of nodes with at least the minimum stake and a non-zero ask",
        },
        "dkg_sharding_table_size": {
            "type": "gauge",
            "help": "Number of nodes in the sharding table",
        },
        "dkg_agreements": {
            "type": "gauge",
            "help": "Number of live service agreements",
        },
        "dkg_current_epoch": {
            "type": "gauge",
            "help": "Current Chronos epoch",
        },
        "dkg_epoch_pool": {
            "type": "gauge",
            "help": "Pool of the current epoch per shard",
        },
        "dkg_accumulated_remainder": {
            "type": "gauge",
            "help": "Undistributed remainder carry per shard",
        },
        "dkg_commits_total": {
            "type": "counter",
            "help": "Total accepted commits",
        },
        "dkg_commits_evicted_total": {
            "type": "counter",
            "help": "Total commits evicted from ranked lists",
        },
        "dkg_proofs_total": {
            "type": "counter",
            "help": "Total accepted proofs",
        },
        "dkg_proofs_rejected_total": {
            "type": "counter",
            "help": "Total rejected proofs",
        },
        "dkg_rewards_paid_total": {
            "type": "counter",
            "help": "Total reward tokens paid to nodes",
        },
        "dkg_events_published_total": {
            "type": "counter",
            "help": "Total events published by the service",
        },
        "dkg_uptime_seconds": {
            "type": "counter",
            "help": "Collector uptime in seconds",
        },
    }

    def __init__(self, engine: "IncentivesEngine", service: Optional["IncentivesService"] = None):
        """
        Initialize metrics collector.

        Args:
            engine: Engine to collect metrics from
            service: Optional async service (event counters)
        """
        self.engine = engine
        self.service = service
        self._start_time = time.time()

    def collect(self) -> str:
        """
        Collect all metrics and return in Prometheus format.

        Returns:
            Prometheus-formatted metrics string
        """
        lines = []
        emitted = set()

        def add_metric(name: str, value: float, labels: Dict[str, str] = None):
            metric_def = self.METRICS.get(name, {})

            # HELP and TYPE once per metric family
            if name not in emitted:
                lines.append(f"# HELP {name} {metric_def.get('help', '')}")
                lines.append(f"# TYPE {name} {metric_def.get('type', 'gauge')}")
                emitted.add(name)

            if labels:
                label_str = ",".join(f'{k}="{v}"' for k, v in labels.items())
                lines.append(f"{name}{{{label_str}}} {value}")
            else:
                lines.append(f"{name} {value}")

        engine = self.engine
        try:
            with engine.lock:
                aggregate = engine.market.aggregate
                add_metric("dkg_total_active_stake", aggregate.total_active_stake)
                add_metric("dkg_weighted_active_ask_sum", aggregate.weighted_active_ask_sum)
                add_metric("dkg_average_ask", aggregate.average_ask())
                add_metric("dkg_active_nodes", len(engine.market.active_node_ids()))
                add_metric("dkg_sharding_table_size", len(engine.sharding))
                add_metric("dkg_agreements", len(engine.agreements))

                epoch = engine.chronos.get_current_epoch()
                add_metric("dkg_current_epoch", epoch)
                for shard_id in engine.pools.shard_ids():
                    labels = {"shard": str(shard_id)}
                    add_metric("dkg_epoch_pool", engine.pools.get_epoch_pool(shard_id, epoch), labels)
                for shard_id in engine.pools.shard_ids():
                    labels = {"shard": str(shard_id)}
                    add_metric("dkg_accumulated_remainder", engine.pools.get_accumulated_remainder(shard_id), labels)

                add_metric("dkg_commits_total", engine.commits.commits_accepted)
                add_metric("dkg_commits_evicted_total", engine.commits.commits_evicted)
                add_metric("dkg_proofs_total", engine.proofs.proofs_accepted)
                add_metric("dkg_proofs_rejected_total", engine.proofs.proofs_rejected)
                add_metric("dkg_rewards_paid_total", engine.proofs.rewards_paid)

            if self.service is not None:
                add_metric("dkg_events_published_total", self.service.events_published)

            add_metric("dkg_uptime_seconds", time.time() - self._start_time)

        except Exception as e:
            logger.error(f"Error collecting metrics: {e}")
            lines.append(f"# Error collecting metrics: {e}")

        return "\n".join(lines) + "\n"

    def get_stats(self) -> Dict[str, Any]:
        """
        Get metrics as a dictionary (for JSON API).

        Returns:
            Dictionary of metric values
        """
        engine = self.engine
        try:
            with engine.lock:
                epoch = engine.chronos.get_current_epoch()
                return {
                    "current_epoch": epoch,
                    "total_active_stake": engine.market.total_active_stake,
                    "weighted_active_ask_sum": engine.market.weighted_active_ask_sum,
                    "average_ask": engine.market.get_stake_weighted_average_ask(),
                    "active_nodes": len(engine.market.active_node_ids()),
                    "sharding_table_size": len(engine.sharding),
                    "agreements": len(engine.agreements),
                    "shards": {
                        shard_id: {
                            "epoch_pool": engine.pools.get_epoch_pool(shard_id, epoch),
                            "accumulated_remainder": engine.pools.get_accumulated_remainder(shard_id),
                            "total_funded": engine.pools.get_total_funded(shard_id),
                        }
                        for shard_id in engine.pools.shard_ids()
                    },
                    "commits_accepted": engine.commits.commits_accepted,
                    "commits_evicted": engine.commits.commits_evicted,
                    "proofs_accepted": engine.proofs.proofs_accepted,
                    "proofs_rejected": engine.proofs.proofs_rejected,
                    "rewards_paid": engine.proofs.rewards_paid,
                    "events_published": self.service.events_published if self.service else 0,
                    "uptime_seconds": time.time() - self._start_time,
                }
        except Exception as e:
            logger.error(f"Error getting stats: {e}")
            return {"error": str(e)}

    def reset_counters(self) -> None:
        """Reset all counters (useful for testing)."""
        engine = self.engine
        with engine.lock:
            engine.commits.commits_accepted = 0
            engine.commits.commits_evicted = 0
            engine.proofs.proofs_accepted = 0
            engine.proofs.proofs_rejected = 0
            engine.proofs.rewards_paid = 0
        if self.service is not None:
            self.service.events_published = 0
            self.service.publish_failures = 0
        self._start_time = time.time()
