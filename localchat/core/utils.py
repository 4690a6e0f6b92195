from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_aware(value: datetime) -> datetime:
    """SQLite drops tzinfo; stored timestamps are UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def format_relative_time(value: datetime, now: datetime | None = None) -> str:
    """Sidebar style timestamp: "Now", "5m ago", "3h ago", "Yesterday", "4d ago", "Mar 02"."""
    now = as_aware(now or utcnow())
    value = as_aware(value)

    seconds = int((now - value).total_seconds())
    if seconds < 60:
        return "Now"

    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m ago"

    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"

    days = hours // 24
    if days == 1:
        return "Yesterday"
    if days < 7:
        return f"{days}d ago"

    return value.strftime("%b %d")


def derive_title(content: str, max_length: int = 30) -> str:
    text = " ".join(content.split())
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text
