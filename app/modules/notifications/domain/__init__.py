from .alerts import AlertResult, ThresholdAlertEngine, TriggeredMetric
from .webhook import WebhookNotifier

__all__ = [
    "AlertResult",
    "ThresholdAlertEngine",
    "TriggeredMetric",
    "WebhookNotifier",
]
