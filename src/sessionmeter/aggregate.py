from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Iterable

from sessionmeter.models import (
    AggregateState,
    DailyActivity,
    ModelUsage,
    ProjectSummary,
    TokenUsage,
)

RECENT_ACTIVITY_DAYS = 14
TOP_PROJECTS = 5


def _ratio(numerator: "float", denominator: "float") -> "float":
    return numerator / denominator if denominator else 0.0


def merge_daily_activity(
    projects: "Iterable[ProjectSummary]",
) -> "tuple[DailyActivity, ...]":
    """
    sums per-project daily activity into one series, oldest day first.
    """
    messages: "dict[str, int]" = defaultdict(int)
    sessions: "dict[str, int]" = defaultdict(int)
    for project in projects:
        for day, activity in project.daily_activity.items():
            messages[day] += activity.message_count
            sessions[day] += activity.session_count
    return tuple(
        DailyActivity(date=day, message_count=messages[day], session_count=sessions[day])
        for day in sorted(messages)
    )


def current_streak(active_dates: "set[date]", today: "date") -> "int":
    """
    counts consecutive active days ending today, or yesterday when
    today has no activity yet.
    """
    if today in active_dates:
        day = today
    elif today - timedelta(days=1) in active_dates:
        day = today - timedelta(days=1)
    else:
        return 0

    streak = 0
    while day in active_dates:
        streak += 1
        day -= timedelta(days=1)
    return streak


def longest_streak(active_dates: "set[date]") -> "int":
    longest = 0
    run = 0
    previous: "date | None" = None
    for day in sorted(active_dates):
        run = run + 1 if previous is not None and day - previous == timedelta(days=1) else 1
        longest = max(longest, run)
        previous = day
    return longest


def daily_costs(
    projects: "Iterable[ProjectSummary]",
    model_breakdown: "dict[str, ModelUsage]",
) -> "tuple[tuple[str, float], ...]":
    """
    approximates cost per day. Cache tokens are not tracked per day, so each
    family's all-time cost per non-cache token is applied to the day's
    non-cache tokens. The days do not sum exactly to the all-time cost.
    """
    rate_per_token = {
        family: _ratio(usage.estimated_cost, usage.tokens.non_cache)
        for family, usage in model_breakdown.items()
    }
    per_day: "dict[str, float]" = defaultdict(float)
    for project in projects:
        for day, by_family in project.daily_model_tokens.items():
            for family, tokens in by_family.items():
                per_day[day] += tokens * rate_per_token.get(family, 0.0)
    return tuple((day, per_day[day]) for day in sorted(per_day))


def build_aggregate(
    projects: "Iterable[ProjectSummary]",
    now: "datetime | None" = None,
) -> "AggregateState":
    """
    derives the full aggregate from the given project summaries. Nothing
    is carried over from earlier aggregates, so repeated refreshes cannot
    drift.
    """
    now = now or datetime.now(timezone.utc)
    today = now.astimezone(timezone.utc).date()

    ordered = tuple(
        sorted(projects, key=lambda p: (p.last_active, p.id), reverse=True)
    )

    total_cost = sum(p.estimated_cost for p in ordered)
    total_tokens = sum((p.total_tokens for p in ordered), TokenUsage())
    total_sessions = sum(p.session_count for p in ordered)
    total_messages = sum(p.message_count for p in ordered)

    family_tokens: "dict[str, TokenUsage]" = {}
    family_cost: "dict[str, float]" = defaultdict(float)
    for project in ordered:
        for family, usage in project.models.items():
            family_tokens[family] = family_tokens.get(family, TokenUsage()) + usage.tokens
            family_cost[family] += usage.estimated_cost
    model_breakdown = {
        family: ModelUsage(tokens=family_tokens[family], estimated_cost=family_cost[family])
        for family in sorted(family_tokens)
    }

    cacheable = total_tokens.input + total_tokens.cache_read + total_tokens.cache_creation

    hour_counts: "dict[int, int]" = defaultdict(int)
    for project in ordered:
        for hour, count in project.hour_counts.items():
            hour_counts[hour] += count
    most_active_hour = (
        max(sorted(hour_counts), key=lambda h: hour_counts[h]) if hour_counts else None
    )

    activity = merge_daily_activity(ordered)
    most_active_day = ""
    busiest = 0
    for day in activity:
        if day.message_count > busiest:
            busiest = day.message_count
            most_active_day = day.date

    active_dates = {date.fromisoformat(day.date) for day in activity}
    total_days = 0
    if active_dates:
        total_days = max(1, (today - min(active_dates)).days + 1)

    return AggregateState(
        projects=ordered,
        total_estimated_cost=total_cost,
        model_breakdown=model_breakdown,
        generated_at=now.isoformat(),
        total_tokens=total_tokens,
        cache_hit_rate=_ratio(total_tokens.cache_read, cacheable),
        total_sessions=total_sessions,
        total_messages=total_messages,
        avg_cost_per_session=_ratio(total_cost, total_sessions),
        avg_cost_per_message=_ratio(total_cost, total_messages),
        avg_tokens_per_message=_ratio(total_tokens.total, total_messages),
        avg_messages_per_session=_ratio(total_messages, total_sessions),
        most_active_hour=most_active_hour,
        most_active_day=most_active_day,
        current_streak=current_streak(active_dates, today),
        longest_streak=longest_streak(active_dates),
        daily_activity=activity,
        daily_costs=daily_costs(ordered, model_breakdown),
        recent_activity=tuple(reversed(activity[-RECENT_ACTIVITY_DAYS:])),
        top_projects_by_cost=tuple(
            sorted(ordered, key=lambda p: p.estimated_cost, reverse=True)[:TOP_PROJECTS]
        ),
        top_projects_by_messages=tuple(
            sorted(ordered, key=lambda p: p.message_count, reverse=True)[:TOP_PROJECTS]
        ),
        active_days=len(active_dates),
        total_days=total_days,
    )
