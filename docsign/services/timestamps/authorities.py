from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from docsign.core.config import Settings, get_settings
from docsign.core.errors import ValidationFailed


@dataclass(frozen=True)
class TimestampAuthority:
    name: str
    url: str
    hash_algorithm: str = "sha256"
    qualified: bool = False
    # Lower priority wins ties after the quality criteria.
    priority: int = 100
    reliability: float = 0.99
    region: str = "EU"
    throughput: float = 100.0
    cost: float = 0.0
    username: str | None = None
    password: str | None = None
    # Optional pinned authority certificate (PEM).
    certificate_pem: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "TimestampAuthority":
        name = str(raw.get("name") or "").strip()
        url = str(raw.get("url") or "").strip()
        if not name or not url:
            raise ValidationFailed("timestamp authority requires name and url", reason="tsa_config_invalid")
        return cls(
            name=name,
            url=url,
            hash_algorithm=str(raw.get("hash_algorithm") or "sha256"),
            qualified=bool(raw.get("qualified", False)),
            priority=int(raw.get("priority", 100)),
            reliability=float(raw.get("reliability", 0.99)),
            region=str(raw.get("region") or "EU").upper(),
            throughput=float(raw.get("throughput", 100.0)),
            cost=float(raw.get("cost", 0.0)),
            username=raw.get("username"),
            password=raw.get("password"),
            certificate_pem=raw.get("certificate_pem"),
        )


def load_authorities(settings: Settings | None = None) -> list[TimestampAuthority]:
    settings = settings or get_settings()
    return [TimestampAuthority.from_dict(item) for item in settings.timestamp_authorities()]


def rank_authorities(
    authorities: list[TimestampAuthority],
    *,
    healthy: dict[str, bool],
    preferred_region: str,
) -> list[TimestampAuthority]:
    # Healthy first, then reliability, qualified status, region, throughput, cost.
    region = preferred_region.upper()

    def score(authority: TimestampAuthority) -> tuple[Any, ...]:
        return (
            not healthy.get(authority.name, True),
            -authority.reliability,
            not authority.qualified,
            authority.region != region,
            -authority.throughput,
            authority.cost,
            authority.priority,
            authority.name,
        )

    return sorted(authorities, key=score)
