"""稍后提醒 / 静音的截止时间计算

"today" 与 "until_tomorrow" 都指用户本地时区次日 09:00；permanent 静音没有截止时间。
"""

from datetime import datetime, timedelta

from geonudge.datamodel import ActionType, MuteDuration, SnoozeDuration
from geonudge.errors import ValidationError
from geonudge.utils import to_user_local

NEXT_MORNING_HOUR = 9

_SNOOZE_DELTAS = {
    SnoozeDuration.MINUTES_15: timedelta(minutes=15),
    SnoozeDuration.HOUR_1: timedelta(hours=1),
}

_MUTE_DELTAS = {
    MuteDuration.HOUR_1: timedelta(hours=1),
    MuteDuration.HOURS_4: timedelta(hours=4),
    MuteDuration.HOURS_8: timedelta(hours=8),
    MuteDuration.HOURS_24: timedelta(hours=24),
}

SNOOZE_ACTIONS = {
    ActionType.SNOOZE_15M: SnoozeDuration.MINUTES_15,
    ActionType.SNOOZE_1H: SnoozeDuration.HOUR_1,
    ActionType.SNOOZE_TODAY: SnoozeDuration.TODAY,
}


def next_morning(now: datetime, user_tz: str | None) -> datetime:
    local = to_user_local(now, user_tz)
    morning = (local + timedelta(days=1)).replace(hour=NEXT_MORNING_HOUR, minute=0, second=0, microsecond=0)
    return morning.astimezone(now.tzinfo)


def snooze_until(duration: SnoozeDuration | str, now: datetime, user_tz: str | None = None) -> datetime:
    try:
        duration = SnoozeDuration(duration)
    except ValueError:
        raise ValidationError(f"未知的 snooze 时长: {duration}")
    if duration == SnoozeDuration.TODAY:
        return next_morning(now, user_tz)
    return now + _SNOOZE_DELTAS[duration]


def mute_until(duration: MuteDuration | str, now: datetime, user_tz: str | None = None) -> datetime | None:
    """返回静音截止时间；permanent 返回 None"""
    try:
        duration = MuteDuration(duration)
    except ValueError:
        raise ValidationError(f"未知的静音时长: {duration}")
    if duration == MuteDuration.PERMANENT:
        return None
    if duration == MuteDuration.UNTIL_TOMORROW:
        return next_morning(now, user_tz)
    return now + _MUTE_DELTAS[duration]


__all__ = ["snooze_until", "mute_until", "next_morning", "SNOOZE_ACTIONS"]
