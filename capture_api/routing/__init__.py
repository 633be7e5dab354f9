from .models import ALL_SENSORS_ID, DeviceFilter, catch_all_filter, parse_filters
from .router import MessageRouter, match_filters

__all__ = [
    "ALL_SENSORS_ID",
    "DeviceFilter",
    "catch_all_filter",
    "parse_filters",
    "MessageRouter",
    "match_filters",
]
