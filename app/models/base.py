from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum, func


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # DB might return aware (preferred) or naive timestamps depending on driver/config.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def enum_column(enum_cls, name: str, **kwargs) -> Column:
    # Persist the lowercase values, matching the migration's enum labels.
    return Column(
        Enum(enum_cls, name=name, values_callable=lambda members: [m.value for m in members]),
        **kwargs,
    )


class TimestampMixin:
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
