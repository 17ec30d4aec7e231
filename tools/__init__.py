from .analytics_tools import AnalyticsTools
from .inspection_data import InspectionDataClient, InspectionDataError
from .inspection_tools import InspectionTools
from .media_tools import MediaDownloadError, MediaTools
from .notification_tools import NotificationError, NotificationTools
from .registry import TOOL_DEFINITIONS, ToolRegistry
from .results import ToolResult

__all__ = [
    "AnalyticsTools",
    "InspectionDataClient",
    "InspectionDataError",
    "InspectionTools",
    "MediaDownloadError",
    "MediaTools",
    "NotificationError",
    "NotificationTools",
    "TOOL_DEFINITIONS",
    "ToolRegistry",
    "ToolResult",
]
