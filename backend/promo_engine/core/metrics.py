from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str) -> None:
    with _lock:
        _metrics[key] += 1


def record_redemption_accepted() -> None:
    _inc("redemptions_accepted")


def record_redemption_replayed() -> None:
    _inc("redemptions_replayed")


def record_redemption_rejected(reason: str) -> None:
    _inc("redemptions_rejected")
    _inc(f"redemptions_rejected:{reason}")


def record_promotion_created() -> None:
    _inc("promotions_created")


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()
