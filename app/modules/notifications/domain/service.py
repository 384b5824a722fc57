from app.modules.notifications.domain.alerts import ThresholdAlertEngine
from app.shared.core.cache import CacheService
from app.shared.core.store import get_store


def get_alert_engine() -> ThresholdAlertEngine:
    return ThresholdAlertEngine.from_settings(CacheService(get_store()))
