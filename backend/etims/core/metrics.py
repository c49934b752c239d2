"""Prometheus-compatible counters for eTIMS traffic."""

import logging
import threading
from typing import Dict, List, Tuple

logger = logging.getLogger(__name__)


class FiscalMetrics:
    """Collects authority call metrics in Prometheus exposition format."""

    def __init__(self):
        self._lock = threading.Lock()
        self.attempts: Dict[Tuple[str, str], int] = {}
        self.attempt_duration: Dict[str, List[float]] = {}
        self.outcomes: Dict[Tuple[str, str], int] = {}

    def record_attempt(self, operation: str, result: str, duration: float) -> None:
        """result is one of ok, rejected, transport_error."""
        with self._lock:
            key = (operation, result)
            self.attempts[key] = self.attempts.get(key, 0) + 1
            durations = self.attempt_duration.setdefault(operation, [])
            durations.append(duration)
            if len(durations) > 1000:
                self.attempt_duration[operation] = durations[-1000:]

    def record_outcome(self, kind: str, outcome: str) -> None:
        with self._lock:
            key = (kind, outcome)
            self.outcomes[key] = self.outcomes.get(key, 0) + 1

    def reset(self) -> None:
        with self._lock:
            self.attempts.clear()
            self.attempt_duration.clear()
            self.outcomes.clear()

    def get_prometheus_metrics(self) -> str:
        lines: List[str] = []
        with self._lock:
            lines.append("# HELP etims_attempts_total HTTP attempts against the authority")
            lines.append("# TYPE etims_attempts_total counter")
            for (operation, result), count in sorted(self.attempts.items()):
                lines.append(f'etims_attempts_total{{operation="{operation}",result="{result}"}} {count}')

            lines.append("# HELP etims_operations_total Fiscal operations by outcome")
            lines.append("# TYPE etims_operations_total counter")
            for (kind, outcome), count in sorted(self.outcomes.items()):
                lines.append(f'etims_operations_total{{kind="{kind}",outcome="{outcome}"}} {count}')

            lines.append("# HELP etims_attempt_duration_seconds Attempt duration")
            lines.append("# TYPE etims_attempt_duration_seconds summary")
            for operation, durations in sorted(self.attempt_duration.items()):
                if durations:
                    ordered = sorted(durations)
                    p99 = ordered[int(len(ordered) * 0.99)] if len(ordered) > 1 else ordered[0]
                    avg = sum(ordered) / len(ordered)
                    lines.append(f'etims_attempt_duration_seconds{{operation="{operation}",quantile="0.99"}} {p99:.4f}')
                    lines.append(f'etims_attempt_duration_seconds{{operation="{operation}",quantile="0.5"}} {avg:.4f}')

        return "\n".join(lines) + "\n"


metrics = FiscalMetrics()
