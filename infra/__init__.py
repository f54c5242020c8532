"""Infrastructure modules for scanpilot"""

from .healthcheck import HealthServer  # noqa: F401
from .metrics import MetricsRecorder  # noqa: F401
from .notifier import LoggingNotifier, Notifier, TelegramNotifier, create_notifier  # noqa: F401
from .state_store import StateStore  # noqa: F401

__all__ = [
	"HealthServer",
	"MetricsRecorder",
	"Notifier",
	"LoggingNotifier",
	"TelegramNotifier",
	"create_notifier",
	"StateStore",
]
