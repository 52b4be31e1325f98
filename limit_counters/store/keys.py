from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from limit_counters.core.errors import InvalidArgumentError

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def validate_expiration(expiration: timedelta) -> None:
    if expiration <= timedelta(0):
        raise InvalidArgumentError(f"expiration must be positive, got {expiration}")


@dataclass(frozen=True)
class AddAndGetRequest:
    resource: str
    limit_name: str
    event_timestamp: datetime
    expiration: timedelta
    property: str = ""
    cost: int = 1
    distributed: bool = False
    limit: int | None = None
    previous_bucket_weight: float = 0.0

    def __post_init__(self) -> None:
        validate_expiration(self.expiration)
        if self.cost < 0:
            raise InvalidArgumentError(f"cost must not be negative, got {self.cost}")
        if self.limit is not None and self.limit < 0:
            raise InvalidArgumentError(f"limit must not be negative, got {self.limit}")
        if not 0.0 <= self.previous_bucket_weight <= 1.0:
            raise InvalidArgumentError(
                f"previous_bucket_weight must be within [0, 1], got {self.previous_bucket_weight}"
            )


@dataclass(frozen=True)
class BucketKey:
    resource: str
    limit_name: str
    property: str
    bucket: datetime
    expiration: timedelta

    @classmethod
    def derive(
        cls,
        resource: str,
        limit_name: str,
        property: str,
        timestamp: datetime,
        expiration: timedelta,
    ) -> "BucketKey":
        validate_expiration(expiration)
        elapsed = (as_utc(timestamp) - EPOCH) // _MICROSECOND
        window = expiration // _MICROSECOND
        bucket = EPOCH + timedelta(microseconds=elapsed - elapsed % window)
        return cls(
            resource=resource,
            limit_name=limit_name,
            property=property or "",
            bucket=bucket,
            expiration=expiration,
        )

    @classmethod
    def from_request(cls, request: AddAndGetRequest) -> "BucketKey":
        return cls.derive(
            request.resource,
            request.limit_name,
            request.property,
            request.event_timestamp,
            request.expiration,
        )

    @classmethod
    def previous_from_request(cls, request: AddAndGetRequest) -> "BucketKey":
        return cls.from_request(request).previous()

    def previous(self) -> "BucketKey":
        return BucketKey(
            resource=self.resource,
            limit_name=self.limit_name,
            property=self.property,
            bucket=self.bucket - self.expiration,
            expiration=self.expiration,
        )

    def next(self) -> "BucketKey":
        return BucketKey(
            resource=self.resource,
            limit_name=self.limit_name,
            property=self.property,
            bucket=self.bucket + self.expiration,
            expiration=self.expiration,
        )

    def expires_at(self, multiplier: int = 1) -> datetime:
        return self.bucket + self.expiration * multiplier

    def is_expired(self, now: datetime, multiplier: int = 1) -> bool:
        return self.expires_at(multiplier) < as_utc(now)


@dataclass(frozen=True)
class OverrideKeyRequest:
    key: BucketKey
    new_value: int

    def __post_init__(self) -> None:
        if self.new_value < 0:
            raise InvalidArgumentError(f"counter value must not be negative, got {self.new_value}")


@dataclass(frozen=True)
class CounterFilter:
    """Conjunction of optional equality checks against a key's series fields."""

    resource: str | None = None
    limit_name: str | None = None
    property: str | None = None

    def matches(self, key: BucketKey) -> bool:
        if self.resource is not None and key.resource != self.resource:
            return False
        if self.limit_name is not None and key.limit_name != self.limit_name:
            return False
        if self.property is not None and key.property != self.property:
            return False
        return True
