from __future__ import annotations

from datetime import datetime, timedelta

DEFAULT_LATE_CAP = timedelta(hours=24)


def trigger_at(target: datetime, reminder_minutes: int) -> datetime:
    return target - timedelta(minutes=reminder_minutes)


def should_fire(
    now: datetime,
    target: datetime | None,
    reminder_minutes: int,
    *,
    late_cap: timedelta = DEFAULT_LATE_CAP,
) -> bool:
    """Return True while ``now`` sits inside ``[trigger, trigger + late_cap)``.

    The late cap lets a reminder survive a few missed runs without replaying
    day-old reminders after a long outage.
    """
    if reminder_minutes <= 0:
        return False
    if target is None or target.tzinfo is None:
        return False
    fire_at = trigger_at(target, reminder_minutes)
    return fire_at <= now < fire_at + late_cap
