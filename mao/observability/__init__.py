"""
MAO Observability — Metrics collection over the orchestrator's event stream.

This package provides the instrumentation layer for MAO, enabling:
- Per-agent-type task throughput, latency and success rates
- Consensus outcome counts
- Message and knowledge activity counts
"""

from mao.observability.metrics import MetricsCollector

__all__ = ["MetricsCollector"]
