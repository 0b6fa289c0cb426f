"""Data models for the API key pool."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

RESET_NEVER = "never"
RESET_HOURLY = "hourly"
RESET_DAILY = "daily"
RESET_WEEKLY = "weekly"
RESET_MONTHLY = "monthly"

RESET_FREQUENCIES = (
    RESET_NEVER,
    RESET_HOURLY,
    RESET_DAILY,
    RESET_WEEKLY,
    RESET_MONTHLY,
)

DEFAULT_MAX_USAGE = 100


def _check_quota(max_usage: int, reset_frequency: str) -> None:
    if max_usage < 1:
        raise ValueError(f"maxUsage must be at least 1, got {max_usage}")
    if reset_frequency not in RESET_FREQUENCIES:
        raise ValueError(f"Unknown reset frequency: {reset_frequency!r}")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    # fromisoformat only accepts the "Z" designator from 3.11 on
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


@dataclass
class ApiKey:
    """A single upstream credential with its usage counter."""

    key: str
    usage_count: int = 0
    last_reset_time: Optional[datetime] = None
    last_used_time: Optional[datetime] = None

    def key_prefix(self) -> str:
        return f"{self.key[:8]}..."

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "usageCount": self.usage_count,
            "lastResetTime": format_timestamp(self.last_reset_time),
            "lastUsedTime": format_timestamp(self.last_used_time),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApiKey":
        if not isinstance(data["key"], str):
            raise TypeError(f"API key must be a string, got {data['key']!r}")
        return cls(
            key=data["key"],
            usage_count=max(0, int(data.get("usageCount") or 0)),
            last_reset_time=parse_timestamp(data.get("lastResetTime")),
            last_used_time=parse_timestamp(data.get("lastUsedTime")),
        )


@dataclass
class ServiceDefaults:
    """Fallback quota settings for services that do not declare their own."""

    max_usage: int = DEFAULT_MAX_USAGE
    reset_frequency: str = RESET_NEVER

    def to_dict(self) -> Dict[str, Any]:
        return {"maxUsage": self.max_usage, "resetFrequency": self.reset_frequency}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ServiceDefaults":
        data = data or {}
        max_usage = int(data.get("maxUsage") or DEFAULT_MAX_USAGE)
        reset_frequency = data.get("resetFrequency") or RESET_NEVER
        _check_quota(max_usage, reset_frequency)
        return cls(max_usage=max_usage, reset_frequency=reset_frequency)


@dataclass
class Service:
    """A named upstream API configuration owning a set of keys."""

    name: str
    host: str
    max_usage: int = DEFAULT_MAX_USAGE
    reset_frequency: str = RESET_NEVER
    keys: List[ApiKey] = field(default_factory=list)

    def find_key(self, value: str) -> Optional[ApiKey]:
        for api_key in self.keys:
            if api_key.key == value:
                return api_key
        return None

    def remaining(self, api_key: ApiKey) -> int:
        return self.max_usage - api_key.usage_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "maxUsage": self.max_usage,
            "resetFrequency": self.reset_frequency,
            "keys": [api_key.to_dict() for api_key in self.keys],
        }

    @classmethod
    def from_dict(
        cls, name: str, data: Dict[str, Any], defaults: ServiceDefaults
    ) -> "Service":
        keys: List[ApiKey] = []
        seen = set()
        for entry in data.get("keys") or []:
            api_key = ApiKey.from_dict(entry)
            if api_key.key in seen:
                continue
            seen.add(api_key.key)
            keys.append(api_key)

        max_usage = int(data.get("maxUsage") or defaults.max_usage)
        reset_frequency = data.get("resetFrequency") or defaults.reset_frequency
        _check_quota(max_usage, reset_frequency)

        return cls(
            name=name,
            host=data.get("host") or "",
            max_usage=max_usage,
            reset_frequency=reset_frequency,
            keys=keys,
        )


@dataclass
class PoolState:
    """Represents the state of the entire key pool."""

    services: Dict[str, Service] = field(default_factory=dict)
    default_service_config: ServiceDefaults = field(default_factory=ServiceDefaults)

    def to_document(self) -> Dict[str, Any]:
        return {
            "services": {
                name: service.to_dict() for name, service in self.services.items()
            },
            "defaultServiceConfig": self.default_service_config.to_dict(),
        }

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "PoolState":
        defaults = ServiceDefaults.from_dict(document.get("defaultServiceConfig"))
        services = {
            name: Service.from_dict(name, data, defaults)
            for name, data in (document.get("services") or {}).items()
        }
        return cls(services=services, default_service_config=defaults)


@dataclass
class KeySelection:
    """The key handed to a caller for its next upstream request."""

    service: str
    key: str
    host: str
    remaining: int
    exhausted: bool = False


@dataclass
class UsageRecord:
    usage_count: int
    remaining: int
