from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple


def split_extension(name: str) -> Tuple[str, str]:
    """'Model.v2.rvt' -> ('Model.v2', '.rvt'). Names without a dot keep an empty extension."""
    base_name, dot, extension = name.rpartition(".")
    if not dot or not base_name:
        return name, ""
    return base_name, f".{extension}"


def file_extension(name: str) -> str:
    return split_extension(name)[1].lstrip(".").lower()


def timestamp_token(now: Optional[datetime] = None) -> str:
    moment = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return moment.strftime("_%Y%m%dT%H%M%SZ")


def disambiguate_name(name: str, now: Optional[datetime] = None) -> str:
    """'Model.rvt' -> 'Model_20240131T101500Z.rvt'."""
    base_name, extension = split_extension(name)
    return f"{base_name}{timestamp_token(now)}{extension}"


def normalize_extensions(extensions: Iterable[str]) -> List[str]:
    """Lower-cases and strips leading dots: ['.RVT', 'rfa'] -> ['rvt', 'rfa']."""
    normalized = []
    for extension in extensions:
        value = extension.strip().lstrip(".").lower()
        if value and value not in normalized:
            normalized.append(value)
    return normalized
