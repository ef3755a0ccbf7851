"""Activity classification for nodes, gateways and routers."""

import time
from enum import Enum


class ActivityLevel(str, Enum):
    RECENT = "recent"
    ACTIVE = "active"
    INACTIVE = "inactive"


class NodeType(str, Enum):
    NODE = "node"
    GATEWAY = "gateway"
    ROUTER = "router"


# (recent, active) thresholds in seconds
TIME_THRESHOLDS: dict[NodeType, tuple[int, int]] = {
    NodeType.NODE: (600, 3600),
    NodeType.GATEWAY: (600, 1800),
    NodeType.ROUTER: (600, 43200),
}

STATUS_TEXT = {
    ActivityLevel.RECENT: "Active",
    ActivityLevel.ACTIVE: "Recent",
    ActivityLevel.INACTIVE: "Inactive",
}


def get_activity_level(
    last_heard: int | None,
    is_gateway: bool = False,
    is_router: bool = False,
    now: float | None = None,
) -> ActivityLevel:
    """Classify how recently something was heard.

    Args:
        last_heard: Unix timestamp in seconds, or None if never heard
        is_gateway: Use gateway thresholds
        is_router: Use router thresholds (ignored for gateways)
        now: Reference time; defaults to the current time

    Returns:
        The activity level
    """
    if not last_heard:
        return ActivityLevel.INACTIVE

    if is_gateway:
        node_type = NodeType.GATEWAY
    elif is_router:
        node_type = NodeType.ROUTER
    else:
        node_type = NodeType.NODE

    if now is None:
        now = time.time()
    seconds_since = int(now) - last_heard
    recent, active = TIME_THRESHOLDS[node_type]

    if seconds_since < recent:
        return ActivityLevel.RECENT
    if seconds_since < active:
        return ActivityLevel.ACTIVE
    return ActivityLevel.INACTIVE


def format_last_seen(seconds_ago: int) -> str:
    """Human-readable age, e.g. ``"2 minutes ago"``."""
    if seconds_ago < 60:
        return f"{seconds_ago} seconds ago"
    if seconds_ago < 3600:
        minutes = seconds_ago // 60
        return f"{minutes} minute{'s' if minutes > 1 else ''} ago"
    if seconds_ago < 86400:
        hours = seconds_ago // 3600
        return f"{hours} hour{'s' if hours > 1 else ''} ago"
    days = seconds_ago // 86400
    return f"{days} day{'s' if days > 1 else ''} ago"
