from .config import ConfigurationError, Settings, load_settings
from .delivery import DeliveryCoordinator, DeliveryCycle, DeliveryError, DeliveryOutcome, DeliveryResponse
from .formatting import LogFormat
from .log_buffer import LogBuffer
from .logger import DeviceLogger, get_logger, initialize, shutdown
from .models import LogLevel, LogRecord
from .store import BATCH_LIMIT, SqliteRecordStore, StorageError

__all__ = [
    "BATCH_LIMIT",
    "ConfigurationError",
    "DeliveryCoordinator",
    "DeliveryCycle",
    "DeliveryError",
    "DeliveryOutcome",
    "DeliveryResponse",
    "DeviceLogger",
    "LogBuffer",
    "LogFormat",
    "LogLevel",
    "LogRecord",
    "Settings",
    "SqliteRecordStore",
    "StorageError",
    "get_logger",
    "initialize",
    "load_settings",
    "shutdown",
]
