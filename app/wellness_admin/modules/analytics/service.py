from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from app.wellness_admin.docstore import DocumentStore, to_datetime, utcnow
from app.wellness_admin.modules.analytics.posthog_client import NOT_CONFIGURED_REASON, PosthogClient, PosthogError

logger = logging.getLogger(__name__)

ANALYTICS_CACHE_TTL = 5 * 60  # seconds

USER_SAMPLE_SIZE = 100
DETAIL_SAMPLE_SIZE = 20

FEATURES: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("explore", "Explore", ("explore_media_opened", "explore_media_closed", "explore_comment_added")),
    ("connect", "Connect", ("connect_feed_viewed", "connect_post_opened", "connect_comment_added")),
    (
        "finance",
        "Finance",
        (
            "finance_screen_viewed",
            "finance_tracker_opened",
            "finance_debt_add_submitted",
            "finance_goal_add_submitted",
        ),
    ),
    ("water", "Water", ("water_tab_selected",)),
    ("mood", "Mood", ("mood_checkin_submitted", "mood_journal_submitted", "mood_gratitude_submitted")),
    ("mindfulness", "Mindfulness", ("mindfulness_session_completed", "mindfulness_activity_opened")),
    ("fitness", "Fitness", ("fitness_workout_started", "fitness_workout_completed")),
    ("passport", "Passport", ("passport_screen_viewed", "passport_action_tapped")),
)


def clamp_days(raw: str | None) -> int:
    if raw is None or raw == "":
        return 30
    try:
        n = float(raw)
    except ValueError:
        return 30
    if n != n or n in (float("inf"), float("-inf")):
        return 30
    return max(1, min(90, int(n)))


def window_label(days: int) -> str:
    return "Last 24 hours" if days == 1 else f"Last {days} days"


def _num(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return value


def _day(value: Any) -> str | None:
    dt = to_datetime(value)
    return dt.date().isoformat() if dt else None


def last_n_days(n: int) -> list[str]:
    today = utcnow().date()
    return [(today - timedelta(days=i)).isoformat() for i in range(n - 1, -1, -1)]


def _bucket_add(buckets: dict[str, dict[str, float]], day: str, amount: float) -> None:
    b = buckets.setdefault(day, {"total": 0, "count": 0})
    b["total"] += amount
    b["count"] += 1


def _water_series(buckets: dict[str, dict[str, float]], days: int, count_key: str) -> list[dict[str, Any]]:
    out = []
    for day in last_n_days(days):
        b = buckets.get(day, {"total": 0, "count": 0})
        out.append(
            {
                "date": day,
                "totalLiters": f"{b['total'] / 1000:.2f}",
                "averageMl": f"{b['total'] / b['count']:.0f}" if b["count"] else 0,
                count_key: int(b["count"]),
            }
        )
    return out


def _calorie_series(buckets: dict[str, dict[str, float]], days: int) -> list[dict[str, Any]]:
    out = []
    for day in last_n_days(days):
        b = buckets.get(day, {"total": 0, "count": 0})
        out.append(
            {
                "date": day,
                "total": round(b["total"]),
                "average": round(b["total"] / b["count"]) if b["count"] else 0,
                "mealCount": int(b["count"]),
            }
        )
    return out


def _nutrition_block(meal_count: int, macros: dict[str, float], buckets: dict[str, dict[str, float]]) -> dict[str, Any]:
    return {
        "totalMeals": meal_count,
        "totalCalories": round(macros["calories"]),
        "totalProtein": round(macros["protein"]),
        "totalCarbs": round(macros["carbs"]),
        "totalFats": round(macros["fats"]),
        "caloriesByDate": _calorie_series(buckets, 7),
        "macroTotals": {
            "protein": round(macros["protein"]),
            "carbs": round(macros["carbs"]),
            "fats": round(macros["fats"]),
        },
    }


def _add_meal(data: dict[str, Any], macros: dict[str, float]) -> float:
    calories = _num(data.get("calories"))
    macros["calories"] += calories
    macros["protein"] += _num(data.get("protein"))
    macros["carbs"] += _num(data.get("carbs"))
    macros["fats"] += _num(data.get("fats"))
    return calories


def _empty_macros() -> dict[str, float]:
    return {"protein": 0, "carbs": 0, "fats": 0, "calories": 0}


# ---------- Dashboard ----------
def dashboard(store: DocumentStore) -> dict[str, Any]:
    """App-wide engagement overview built from a bounded sample of users."""
    users = store.query("users", limit=USER_SAMPLE_SIZE)
    signups: dict[str, int] = {}
    activity: dict[str, int] = {}
    countries: dict[str, int] = {}
    total_points = 0.0
    online = 0
    for u in users:
        day = _day(u.data.get("time"))
        if day:
            signups[day] = signups.get(day, 0) + 1
        level = u.data.get("activityLevel") or "unknown"
        activity[level] = activity.get(level, 0) + 1
        if u.data.get("country"):
            countries[u.data["country"]] = countries.get(u.data["country"], 0) + 1
        total_points += _num(u.data.get("points"))
        if u.data.get("isOnline"):
            online += 1

    sample = [u.id for u in users[:DETAIL_SAMPLE_SIZE]]

    mood_dist: dict[str, int] = {}
    intensities: list[float] = []
    moods_by_date: dict[str, int] = {}
    total_moods = 0
    water: dict[str, dict[str, float]] = {}
    water_ml = 0.0
    water_logs = 0
    calories: dict[str, dict[str, float]] = {}
    macros = _empty_macros()
    meals = 0
    finance = {"users": 0, "totalBudgets": 0, "totalDebts": 0, "totalGoals": 0, "totalIncome": 0.0, "totalExpenses": 0.0}

    for uid in sample:
        for d in store.query(f"users/{uid}/moods", limit=20):
            total_moods += 1
            emoji = d.data.get("moodEmoji") or "unknown"
            mood_dist[emoji] = mood_dist.get(emoji, 0) + 1
            if d.data.get("intensity"):
                intensities.append(_num(d.data["intensity"]))
            day = _day(d.data.get("createdAt"))
            if day:
                moods_by_date[day] = moods_by_date.get(day, 0) + 1

        for d in store.query(f"water_logs/{uid}/logs", limit=30):
            amount = _num(d.data.get("amountMl"))
            water_ml += amount
            water_logs += 1
            day = _day(d.data.get("timestamp"))
            if day:
                _bucket_add(water, day, amount)

        date_keys = sorted(store.query(f"meals/{uid}/dates", limit=30), key=lambda d: d.id, reverse=True)[:7]
        for date_doc in date_keys:
            for food in store.query(f"meals/{uid}/dates/{date_doc.id}/foods"):
                meals += 1
                kcal = _add_meal(food.data, macros)
                if len(date_doc.id) == 10:
                    _bucket_add(calories, date_doc.id, kcal)

        budgets = store.query(f"users/{uid}/budgets", limit=10)
        debts = store.query(f"users/{uid}/debts", limit=10)
        goals = store.query(f"users/{uid}/goals", limit=10)
        if budgets or debts or goals:
            finance["users"] += 1
        for b in budgets:
            finance["totalBudgets"] += 1
            finance["totalIncome"] += _num(b.data.get("income"))
            finance["totalExpenses"] += _num(b.data.get("expenses"))
        for d in debts:
            finance["totalDebts"] += 1
            finance["totalIncome"] += _num(d.data.get("amount"))
        finance["totalGoals"] += len(goals)

    finance["netBalance"] = finance["totalIncome"] - finance["totalExpenses"]
    total_users = len(users)
    daily_water = [b["total"] for b in water.values()]
    return {
        "users": {
            "total": total_users,
            "online": online,
            "totalPoints": total_points,
            "averagePoints": total_points / total_users if total_users else 0,
            "signupsByDate": [{"date": d, "count": signups.get(d, 0)} for d in last_n_days(30)],
            "activityLevels": [{"level": k, "count": v} for k, v in activity.items()],
            "topCountries": [
                {"country": k, "count": v} for k, v in sorted(countries.items(), key=lambda kv: -kv[1])[:10]
            ],
        },
        "moods": {
            "total": total_moods,
            "averageIntensity": sum(intensities) / len(intensities) if intensities else 0,
            "distribution": [{"emoji": k, "count": v} for k, v in mood_dist.items()],
            "moodsByDate": [{"date": d, "count": moods_by_date.get(d, 0)} for d in last_n_days(7)],
        },
        "water": {
            "totalLogs": water_logs,
            "totalLiters": water_ml / 1000,
            "averagePerLog": water_ml / water_logs if water_logs else 0,
            "averageDaily": sum(daily_water) / len(daily_water) if daily_water else 0,
            "waterByDate": _water_series(water, 7, "userCount"),
        },
        "nutrition": _nutrition_block(meals, macros, calories),
        "finance": finance,
    }


# ---------- Per-user rollup ----------
def user_rollup(store: DocumentStore, user_id: str) -> dict[str, Any]:
    now = utcnow()
    month_ago = now - timedelta(days=30)
    week_ago = now - timedelta(days=7)

    moods = store.query(
        f"users/{user_id}/moods",
        where=[("createdAt", ">=", month_ago)],
        order_by="createdAt",
        descending=True,
        limit=500,
    )
    dist: dict[str, int] = {}
    intensities: list[float] = []
    by_date: dict[str, int] = {}
    for d in moods:
        emoji = d.data.get("moodEmoji") or ""
        if emoji:
            dist[emoji] = dist.get(emoji, 0) + 1
        if d.data.get("intensity"):
            intensities.append(_num(d.data["intensity"]))
        day = _day(d.data.get("createdAt"))
        if day:
            by_date[day] = by_date.get(day, 0) + 1

    logs = store.query(
        f"water_logs/{user_id}/logs",
        where=[("timestamp", ">=", week_ago)],
        order_by="timestamp",
        descending=True,
        limit=200,
    )
    water: dict[str, dict[str, float]] = {}
    water_ml = 0.0
    for d in logs:
        amount = _num(d.data.get("amountMl"))
        water_ml += amount
        day = _day(d.data.get("timestamp"))
        if day:
            _bucket_add(water, day, amount)

    calories: dict[str, dict[str, float]] = {}
    macros = _empty_macros()
    meals = 0
    for day in last_n_days(7):
        for food in store.query(f"meals/{user_id}/dates/{day}/foods"):
            meals += 1
            _bucket_add(calories, day, _add_meal(food.data, macros))

    budgets = store.query(f"users/{user_id}/budgets")
    income = sum(_num(b.data.get("income")) for b in budgets)
    expenses = sum(_num(b.data.get("expenses")) for b in budgets)

    daily_water = [b["total"] for b in water.values()]
    return {
        "moods": {
            "total": len(moods),
            "averageIntensity": sum(intensities) / len(intensities) if intensities else 0,
            "distribution": [
                {"emoji": k, "count": v} for k, v in sorted(dist.items(), key=lambda kv: -kv[1])
            ],
            "moodsByDate": [{"date": d, "count": by_date.get(d, 0)} for d in last_n_days(30)],
        },
        "water": {
            "totalLogs": len(logs),
            "totalLiters": water_ml / 1000,
            "averagePerLog": water_ml / len(logs) if logs else 0,
            "averageDaily": sum(daily_water) / len(daily_water) if daily_water else 0,
            "waterByDate": _water_series(water, 7, "logCount"),
        },
        "nutrition": _nutrition_block(meals, macros, calories),
        "finance": {
            "totalBudgets": len(budgets),
            "totalDebts": store.count(f"users/{user_id}/debts"),
            "totalGoals": store.count(f"users/{user_id}/goals"),
            "totalIncome": income,
            "totalExpenses": expenses,
            "netBalance": income - expenses,
        },
    }


# ---------- PostHog product insights ----------
def _event_counts(client: PosthogClient, event: str, days: int) -> tuple[float, float]:
    try:
        current = client.event_trends(event, date_from=f"-{days}d")
        previous = client.event_trends(event, date_from=f"-{days * 2}d", date_to=f"-{days}d")
    except PosthogError as e:
        logger.warning("PostHog trends failed for %s: %s", event, e)
        return 0, 0
    return current.count, previous.count


def _highlight(f: dict[str, Any], *, with_change: bool = False) -> dict[str, Any]:
    out = {"key": f["key"], "label": f["label"], "totalEvents": f["totalEvents"]}
    if with_change:
        out["changePercent"] = f["changePercent"]
    return out


def disabled_payload(days: int, **extra: Any) -> dict[str, Any]:
    return {
        "windowDays": days,
        "windowLabel": window_label(days),
        "enabled": False,
        "disabledReason": NOT_CONFIGURED_REASON,
        **extra,
    }


def product_insights(client: PosthogClient | None, days: int) -> dict[str, Any]:
    if client is None:
        return disabled_payload(days, features=[], highlights={})

    features: list[dict[str, Any]] = []
    for key, label, events in FEATURES:
        counts = [(name, *_event_counts(client, name, days)) for name in events]
        total = sum(c for _, c, _p in counts)
        previous = sum(p for _, _c, p in counts)
        features.append(
            {
                "key": key,
                "label": label,
                "totalEvents": total,
                "events": [{"name": name, "total": c} for name, c, _p in counts],
                "previousTotalEvents": previous,
                "changePercent": ((total - previous) / previous) * 100 if previous > 0 else 0,
            }
        )

    by_activity = sorted(features, key=lambda f: -f["totalEvents"])
    active = [f for f in by_activity if f["totalEvents"] > 0]
    with_history = [f for f in features if f["previousTotalEvents"] > 0]
    growing = sorted((f for f in with_history if f["changePercent"] > 5), key=lambda f: -f["changePercent"])[:3]
    at_risk = sorted((f for f in with_history if f["changePercent"] < -10), key=lambda f: f["changePercent"])[:3]

    highlights: dict[str, Any] = {
        "fastestGrowingFeatures": [_highlight(f, with_change=True) for f in growing],
        "atRiskFeatures": [_highlight(f, with_change=True) for f in at_risk],
    }
    if by_activity:
        highlights["mostActiveFeature"] = _highlight(by_activity[0])
    if active:
        highlights["leastActiveFeature"] = _highlight(active[-1])

    return {
        "windowDays": days,
        "windowLabel": window_label(days),
        "enabled": True,
        "features": features,
        "highlights": highlights,
    }


def _funnel_step(step_id: int, label: str, events: list[str], count: float, previous: float | None, base: float) -> dict[str, Any]:
    count = max(count, 0)
    prev = max(previous or 0, 0)
    return {
        "id": step_id,
        "label": label,
        "eventNames": events,
        "count": count,
        "conversionFromPrevious": count / prev if prev > 0 else 0,
        "conversionFromFirst": count / base if base > 0 else 0,
    }


def finance_funnel(client: PosthogClient | None, days: int) -> dict[str, Any]:
    """Viewed -> tracker opened -> plan created, from aggregate event counts."""
    if client is None:
        return disabled_payload(days, steps=[])

    date_from = f"-{days}d"
    viewed = client.event_trends("finance_screen_viewed", date_from=date_from).count
    tracker = client.event_trends("finance_tracker_opened", date_from=date_from).count
    plans = (
        client.event_trends("finance_debt_add_submitted", date_from=date_from).count
        + client.event_trends("finance_goal_add_submitted", date_from=date_from).count
    )
    base = max(viewed, 0)
    steps = [
        _funnel_step(1, "Finance viewed", ["finance_screen_viewed"], viewed, None, base),
        _funnel_step(2, "Tracker opened", ["finance_tracker_opened"], tracker, viewed, base),
        _funnel_step(
            3,
            "Plan created (debt/goal)",
            ["finance_debt_add_submitted", "finance_goal_add_submitted"],
            plans,
            tracker,
            base,
        ),
    ]
    return {"windowDays": days, "windowLabel": window_label(days), "enabled": True, "steps": steps}
