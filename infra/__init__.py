"""Infrastructure modules for the warrant rotator"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder, RunStats  # noqa: F401
from .instance_lock import SingleInstanceLock, check_single_instance  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"MetricsRecorder",
	"RunStats",
	"SingleInstanceLock",
	"check_single_instance",
]
