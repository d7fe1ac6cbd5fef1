"""
Read-only views over an app user's engagement data (mood, water, nutrition,
fitness, finance, mindfulness, wellsphere, onboarding) plus points.

All dates are bucketed in UTC by the ISO date of the stored timestamp.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Any

from app.wellness_admin.docstore import DocumentStore, iso, to_datetime, utcnow


def _num(value: Any) -> float:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0


def _today() -> str:
    return utcnow().date().isoformat()


def _epoch(value: Any) -> float:
    dt = to_datetime(value)
    return dt.timestamp() if dt else 0.0


def _with_iso(data: dict[str, Any], *keys: str) -> dict[str, Any]:
    out = dict(data)
    for k in keys:
        out[k] = iso(data.get(k))
    return out


# ---------- Mood ----------
def mood_view(store: DocumentStore, user_id: str) -> dict[str, Any]:
    moods = [
        {
            "id": d.id,
            "moodEmoji": d.data.get("moodEmoji") or "",
            "intensity": d.data.get("intensity") or 0,
            "valence": d.data.get("valence") or 0,
            "scaledMoodIndex": d.data.get("scaledMoodIndex") or 0,
            "notes": d.data.get("notes") or None,
            "createdAt": iso(d.data.get("createdAt")),
            "timestamp": iso(d.data.get("createdAt")),
        }
        for d in store.query(f"users/{user_id}/moods", order_by="createdAt", descending=True, limit=100)
    ]

    gratitude: list[dict[str, Any]] = []
    gratitude_docs = sorted(store.query(f"gratitude/{user_id}/entries"), key=lambda d: d.id, reverse=True)[:100]
    for d in gratitude_docs:
        entries = d.data.get("entries")
        if isinstance(entries, list):
            for entry in entries:
                gratitude.append(
                    {
                        "id": entry.get("id") or d.id,
                        "text": entry.get("text") or "",
                        "timestamp": iso(entry.get("timestamp")) or d.id,
                    }
                )
        else:
            gratitude.append({"id": d.id, "text": d.data.get("text") or "", "timestamp": iso(d.data.get("timestamp")) or d.id})

    journals = [
        {
            "id": d.id,
            "title": d.data.get("title") or "",
            "content": d.data.get("content") or "",
            "mood": d.data.get("mood") or None,
            "tags": d.data.get("tags") or [],
            "createdAt": iso(d.data.get("createdAt")),
            "activityId": d.data.get("activityId") or None,
            "activityType": d.data.get("activityType") or None,
        }
        for d in store.query(f"journals/{user_id}/entries", order_by="createdAt", descending=True, limit=100)
    ]

    today = _today()
    summary = {
        "totalMoods": len(moods),
        "totalGratitudeEntries": len(gratitude),
        "totalJournalEntries": len(journals),
        "recentMoodCount": sum(1 for m in moods if m["createdAt"] and m["createdAt"][:10] == today),
        "averageMoodIntensity": (sum(_num(m["intensity"]) for m in moods) / len(moods)) if moods else 0,
    }
    return {"moods": moods, "gratitudeEntries": gratitude, "journalEntries": journals, "summary": summary}


# ---------- Water ----------
def water_view(store: DocumentStore, user_id: str) -> dict[str, Any]:
    logs = [
        {
            "id": d.id,
            "amountMl": d.data.get("amountMl") or 0,
            "timestamp": iso(d.data.get("timestamp")),
            "weather": d.data.get("weather") or None,
            "location": d.data.get("location") or None,
            "activityLevel": d.data.get("activityLevel") or None,
            "bodyWeightKg": d.data.get("bodyWeightKg") or None,
            "age": d.data.get("age") or None,
            "gender": d.data.get("gender") or None,
        }
        for d in store.query(f"water_logs/{user_id}/logs", order_by="timestamp", descending=True, limit=200)
    ]

    daily: dict[str, float] = {}
    for log in logs:
        if log["timestamp"]:
            day = log["timestamp"][:10]
            daily[day] = daily.get(day, 0) + _num(log["amountMl"])

    total = sum(_num(log["amountMl"]) for log in logs)
    average_daily = sum(daily.values()) / len(daily) if daily else 0
    today_ml = daily.get(_today(), 0)
    cutoff = utcnow() - timedelta(days=7)
    recent = [log for log in logs if log["timestamp"] and to_datetime(log["timestamp"]) >= cutoff]

    summary = {
        "totalLogs": len(logs),
        "totalIntakeMl": total,
        "totalIntakeL": total / 1000,
        "averageDailyIntakeMl": average_daily,
        "averageDailyIntakeL": average_daily / 1000,
        "todayIntakeMl": today_ml,
        "todayIntakeL": today_ml / 1000,
        "uniqueDays": len(daily),
        "recentLogsCount": len(recent),
    }
    return {"waterLogs": logs, "dailyTotals": daily, "summary": summary}


# ---------- Nutrition ----------
def _meal(doc_id: str, data: dict[str, Any], date_key: str) -> dict[str, Any]:
    return {
        "id": doc_id,
        "name": data.get("name") or "",
        "calories": data.get("calories") or 0,
        "protein": data.get("protein") or 0,
        "carbs": data.get("carbs") or 0,
        "fats": data.get("fats") or 0,
        "timestamp": iso(data.get("timestamp")) or date_key,
        "mealType": data.get("mealType") or None,
        "imageUrl": data.get("imageUrl") or None,
        "notes": data.get("notes") or None,
        "servingSize": data.get("servingSize") or None,
        "foodId": data.get("foodId") or None,
        "isFavorite": bool(data.get("isFavorite") or False),
        "dateKey": date_key,
    }


def _day_totals(meals: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        "totalCalories": sum(_num(m["calories"]) for m in meals),
        "totalProtein": sum(_num(m["protein"]) for m in meals),
        "totalCarbs": sum(_num(m["carbs"]) for m in meals),
        "totalFats": sum(_num(m["fats"]) for m in meals),
        "mealCount": len(meals),
    }


def nutrition_view(store: DocumentStore, user_id: str) -> dict[str, Any]:
    # Date documents are keyed YYYY-MM-DD; only the 30 most recent are read.
    date_keys = sorted(store.list_ids(f"meals/{user_id}/dates"), reverse=True)[:30]
    daily_meals: dict[str, list[dict[str, Any]]] = {}
    meal_logs: list[dict[str, Any]] = []
    for key in date_keys:
        meals = [_meal(d.id, d.data, key) for d in store.query(f"meals/{user_id}/dates/{key}/foods")]
        if meals:
            daily_meals[key] = meals
            meal_logs.extend(meals)

    meal_logs.sort(key=lambda m: _epoch(m["timestamp"]) or _epoch(m["dateKey"]), reverse=True)
    daily_totals = {k: _day_totals(v) for k, v in daily_meals.items()}
    totals = _day_totals(meal_logs)
    today = daily_totals.get(_today(), _day_totals([]))
    cutoff = utcnow() - timedelta(days=7)
    recent = [m for m in meal_logs if _epoch(m["timestamp"]) >= cutoff.timestamp()]

    summary = {
        "totalMeals": len(meal_logs),
        "totalCalories": totals["totalCalories"],
        "totalProtein": totals["totalProtein"],
        "totalCarbs": totals["totalCarbs"],
        "totalFats": totals["totalFats"],
        "averageDailyCalories": (
            sum(d["totalCalories"] for d in daily_totals.values()) / len(daily_totals) if daily_totals else 0
        ),
        "todayCalories": today["totalCalories"],
        "todayProtein": today["totalProtein"],
        "todayCarbs": today["totalCarbs"],
        "todayFats": today["totalFats"],
        "todayMealCount": today["mealCount"],
        "uniqueDays": len(daily_totals),
        "recentMealsCount": len(recent),
    }
    return {"mealLogs": meal_logs[:200], "dailyMeals": daily_meals, "dailyTotals": daily_totals, "summary": summary}


# ---------- Fitness ----------
def fitness_view(store: DocumentStore, user_id: str) -> dict[str, Any]:
    data = store.get(f"users/{user_id}")
    profile = None
    if data is not None:
        profile = {
            "userId": user_id,
            "username": data.get("username") or "User Name",
            "bio": data.get("bio") or "Fitness Enthusiast",
            "avatarInitial": data.get("avatarInitial") or "U",
            "experienceLevel": data.get("experienceLevel") or None,
            "trainingLocation": data.get("trainingLocation") or None,
            "targetMuscle": data.get("targetMuscle") or None,
            "equipment": data.get("equipment") or [],
            "workoutFrequency": data.get("workoutFrequency") or None,
            "workoutDurationMinutes": data.get("workoutDurationMinutes") or None,
            "fitnessGoal": data.get("fitnessGoal") or None,
            "updatedAt": iso(data.get("updatedAt")),
        }

    onboarding = store.get(f"users/{user_id}/fitness/onboarding")

    workouts = [
        {"id": d.id, **_with_iso(d.data, "createdAt", "completedAt")}
        for d in store.query(f"users/{user_id}/fitness/data/workouts", order_by="createdAt", descending=True, limit=50)
    ]
    if not workouts:
        # Outdoor sessions are logged separately by the mobile app.
        workouts = [
            {
                "id": d.id,
                **d.data,
                "createdAt": iso(d.data.get("timestamp")) or iso(d.data.get("createdAt")),
                "completedAt": iso(d.data.get("completedAt")),
            }
            for d in store.query(f"users/{user_id}/outdoor_exercises", order_by="timestamp", descending=True, limit=50)
        ]

    ob = onboarding or {}
    summary = {
        "hasProfile": profile is not None,
        "hasOnboarding": onboarding is not None,
        "onboardingComplete": bool(ob.get("complete") or False),
        "totalWorkouts": len(workouts),
        "fitnessGoal": (profile or {}).get("fitnessGoal") or ob.get("fitnessGoal"),
        "experienceLevel": (profile or {}).get("experienceLevel") or ob.get("fitnessLevel"),
        "workoutFrequency": (profile or {}).get("workoutFrequency") or ob.get("workoutFrequency"),
    }
    return {"profile": profile, "onboarding": onboarding, "workouts": workouts, "summary": summary}


# ---------- Finance ----------
def _budget(store: DocumentStore, user_id: str, doc_id: str, data: dict[str, Any]) -> dict[str, Any]:
    base = f"users/{user_id}/budgets/{doc_id}"
    categories = [{"id": d.id, **d.data} for d in store.query(f"{base}/categories")]
    expenses = [
        {"id": d.id, **_with_iso(d.data, "date")}
        for d in store.query(f"{base}/expenses", order_by="date", descending=True, limit=100)
    ]
    incomes = [_with_iso(i, "addedAt") for i in (data.get("incomes") or []) if isinstance(i, dict)]
    return {
        "id": doc_id,
        "startDay": data.get("startDay") or 1,
        "createdAt": iso(data.get("createdAt")),
        "incomes": incomes,
        "categories": categories,
        "expenses": expenses,
        "totalIncome": sum(_num(i.get("amount")) for i in incomes),
        "totalExpenses": sum(_num(e.get("amount")) for e in expenses),
    }


def _debt(store: DocumentStore, user_id: str, doc_id: str, data: dict[str, Any]) -> dict[str, Any]:
    payments = [
        {"id": d.id, **_with_iso(d.data, "paidAt")}
        for d in store.query(f"users/{user_id}/debts/{doc_id}/payments", order_by="paidAt", descending=True)
    ]
    return {
        "id": doc_id,
        "lenderName": data.get("lenderName") or "",
        "loanAmount": data.get("loanAmount") or 0,
        "repaymentPeriod": data.get("repaymentPeriod") or 0,
        "annualInterestRate": data.get("annualInterestRate") or 0,
        "monthlyInstallment": data.get("monthlyInstallment") or 0,
        "repaymentMethod": data.get("repaymentMethod") or 0,
        "priority": data.get("priority") or 0,
        "dueDate": iso(data.get("dueDate")),
        "paidAmount": data.get("paidAmount") or 0,
        "totalInterest": data.get("totalInterest") or 0,
        "payments": payments,
    }


def _goal(store: DocumentStore, user_id: str, doc_id: str, data: dict[str, Any]) -> dict[str, Any]:
    contributions = [
        {"id": d.id, **_with_iso(d.data, "contributedAt")}
        for d in store.query(
            f"users/{user_id}/goals/{doc_id}/contributions", order_by="contributedAt", descending=True
        )
    ]
    target = _num(data.get("targetAmount"))
    current = _num(data.get("currentAmount"))
    return {
        "id": doc_id,
        "name": data.get("name") or "",
        "targetAmount": data.get("targetAmount") or 0,
        "deadline": iso(data.get("deadline")),
        "monthlyContribution": data.get("monthlyContribution") or 0,
        "currentAmount": data.get("currentAmount") or 0,
        "streak": data.get("streak") or 0,
        "lastContributionDate": iso(data.get("lastContributionDate")),
        "contributions": contributions,
        "progress": (current / target) * 100 if target > 0 else 0,
    }


def finance_view(store: DocumentStore, user_id: str) -> dict[str, Any]:
    budgets = [_budget(store, user_id, d.id, d.data) for d in store.query(f"users/{user_id}/budgets")]
    debts = [_debt(store, user_id, d.id, d.data) for d in store.query(f"users/{user_id}/debts")]
    goals = [_goal(store, user_id, d.id, d.data) for d in store.query(f"users/{user_id}/goals")]

    income = sum(b["totalIncome"] for b in budgets)
    expenses = sum(b["totalExpenses"] for b in budgets)
    return {
        "budgets": budgets,
        "debts": debts,
        "goals": goals,
        "summary": {
            "totalBudgets": len(budgets),
            "totalDebts": len(debts),
            "totalGoals": len(goals),
            "totalDebt": sum(_num(d["loanAmount"]) - _num(d["paidAmount"]) for d in debts),
            "totalGoalsAmount": sum(_num(g["currentAmount"]) for g in goals),
            "totalIncome": income,
            "totalExpenses": expenses,
            "netBalance": income - expenses,
        },
    }


# ---------- Mindfulness ----------
def mindfulness_view(store: DocumentStore, user_id: str) -> dict[str, Any]:
    from app.wellness_admin.modules.mindfulness.service import exercise_dict

    raw_stats = store.get(f"users/{user_id}/mindfulness/stats")
    stats = None
    if raw_stats is not None:
        stats = {
            "totalSessions": raw_stats.get("totalSessions") or 0,
            "totalMinutes": raw_stats.get("totalMinutes") or 0,
            "currentStreak": raw_stats.get("currentStreak") or 0,
            "longestStreak": raw_stats.get("longestStreak") or 0,
            "lastSessionDate": iso(raw_stats.get("lastSessionDate")),
            "favoriteCategory": raw_stats.get("favoriteCategory") or None,
        }

    base = f"users/{user_id}/mindfulness/data"
    history = [
        {
            "id": d.id,
            "exerciseId": d.data.get("exerciseId") or "",
            "completedAt": iso(d.data.get("completedAt")),
            "duration": d.data.get("duration") or 0,
            "rating": d.data.get("rating") or None,
        }
        for d in store.query(f"{base}/history", order_by="completedAt", descending=True, limit=100)
    ]
    favorites = [
        {"id": d.id, "exerciseId": d.data.get("exerciseId") or d.id, "addedAt": iso(d.data.get("addedAt"))}
        for d in store.query(f"{base}/favorites", limit=50)
    ]
    exercises = [
        exercise_dict(d.id, d.data)
        for d in store.query("mindfulness_exercises", where=[("isActive", "==", True)], limit=50)
    ]

    today = _today()
    s = stats or {}
    summary = {
        "hasStats": stats is not None,
        "totalSessions": s.get("totalSessions", 0),
        "totalMinutes": s.get("totalMinutes", 0),
        "currentStreak": s.get("currentStreak", 0),
        "longestStreak": s.get("longestStreak", 0),
        "totalHistoryEntries": len(history),
        "totalFavorites": len(favorites),
        "totalExercises": len(exercises),
        "recentSessionsCount": sum(1 for h in history if h["completedAt"] and h["completedAt"][:10] == today),
    }
    return {"stats": stats, "history": history, "favorites": favorites, "exercises": exercises, "summary": summary}


# ---------- Wellsphere ----------
def wellsphere_view(store: DocumentStore, user_id: str) -> dict[str, Any]:
    profile = store.get(f"wellsphere_profiles/{user_id}")
    condition = None
    condition_data = None
    finished = False
    if profile is not None:
        condition = profile.get("condition") or None
        finished = bool(profile.get("onboarding_finished") or False)
        if condition:
            cond_doc = store.get(f"wellsphere_conditions/{condition}")
            condition_data = (cond_doc or {}).get("data") or None

    drugs = [
        {
            "id": d.id,
            "drugName": d.data.get("drugName") or "",
            "drugStrength": d.data.get("drugStrength") or "",
            "drugId": d.data.get("drugId") or "",
            "dosage": d.data.get("dosage") or "",
            "timesPerDay": d.data.get("timesPerDay") or 1,
            "startDate": iso(d.data.get("startDate")),
            "endDate": iso(d.data.get("endDate")),
            "notes": d.data.get("notes") or "",
            "takenToday": bool(d.data.get("takenToday") or False),
            "lastIntake": iso(d.data.get("lastIntake")),
            "scheduledTimes": d.data.get("scheduledTimes") or [],
            "frequency": d.data.get("frequency") or None,
        }
        for d in store.query(f"users/{user_id}/drugs")
    ]
    contacts = [
        {
            "id": d.id,
            "name": d.data.get("name") or "",
            "phone": d.data.get("phone") or "",
            "relationship": d.data.get("relationship") or "Unknown",
        }
        for d in store.query(f"users/{user_id}/emergency_contacts")
    ]
    medical = store.get(f"users/{user_id}/medical_info/profile")
    medical_info = None
    if medical is not None:
        medical_info = {
            "conditions": medical.get("conditions") or [],
            "allergies": medical.get("allergies") or [],
            "medications": medical.get("medications") or [],
            "bloodType": medical.get("bloodType") or "Unknown",
        }
    symptoms = [
        {
            "id": d.id,
            "symptom": d.data.get("symptom") or "",
            "severity": d.data.get("severity") or 1,
            "notes": d.data.get("notes") or "",
            "tags": d.data.get("tags") or [],
            "timestamp": iso(d.data.get("timestamp")),
        }
        for d in store.query(f"symptoms/{user_id}/entries", order_by="timestamp", descending=True, limit=50)
    ]
    checkins = [
        {
            "id": d.id,
            "date": iso(d.data.get("date")),
            "sleepQuality": d.data.get("sleepQuality") or "",
            "energyLevel": d.data.get("energyLevel") or 0,
            "mood": d.data.get("mood") or "",
            "painLevel": d.data.get("painLevel") or 0,
            "medication": d.data.get("medication") or "",
        }
        for d in store.query(f"dailycheckin/{user_id}/dates", order_by="date", descending=True, limit=50)
    ]

    return {
        "condition": condition,
        "conditionData": condition_data,
        "onboardingFinished": finished,
        "onboardingData": profile,
        "drugs": drugs,
        "emergencyContacts": contacts,
        "medicalInfo": medical_info,
        "symptoms": symptoms,
        "dailyCheckIns": checkins,
        "summary": {
            "totalDrugs": len(drugs),
            "totalEmergencyContacts": len(contacts),
            "totalSymptoms": len(symptoms),
            "totalDailyCheckIns": len(checkins),
            "hasCondition": bool(condition),
            "hasMedicalInfo": medical_info is not None,
            "onboardingComplete": finished,
        },
    }


# ---------- Onboarding ----------
def onboarding_view(store: DocumentStore, user_id: str) -> dict[str, Any]:
    user = store.get(f"users/{user_id}")
    main = None
    if user is not None:
        main = {
            "firstName": user.get("firstname") or user.get("firstName") or None,
            "lastName": user.get("lastname") or user.get("lastName") or None,
            "username": user.get("username") or None,
            "gender": user.get("gender") or None,
            "age": user.get("age") or None,
            "country": user.get("country") or None,
            "bodyWeightKg": user.get("bodyWeightKg") or user.get("weight") or None,
            "heightCm": user.get("heightCm") or user.get("height") or None,
            "activityLevel": user.get("activityLevel") or None,
            "facet": user.get("facet") or None,
            "photoUrl": user.get("photoUrl") or None,
            "email": user.get("email") or None,
            "phone": user.get("phone") or None,
            "birthday": user.get("birthday") or None,
        }

    fitness = store.get(f"users/{user_id}/fitness/onboarding")
    fitness = _with_iso(fitness, "completedAt", "updatedAt") if fitness is not None else None
    nutrition = store.get(f"users/{user_id}/nutrition/onboarding")
    nutrition = _with_iso(nutrition, "completedAt") if nutrition is not None else None
    wellsphere = store.get(f"wellsphere_profiles/{user_id}")
    wellsphere = _with_iso(wellsphere, "createdAt", "updatedAt") if wellsphere is not None else None
    wellsphere_questions = store.get(f"users/{user_id}/wellsphere/onboarding")

    onboarding_data = (user or {}).get("onboardingData") or None
    od = onboarding_data if isinstance(onboarding_data, dict) else {}
    user_tags = store.get(f"userTags/{user_id}")
    ob_questions = store.get(f"obQuestions/{user_id}")

    questions = od.get("questionAnswers") or None
    interests = od.get("interests") or None
    medical = None
    if "hasMedicalCondition" in od:
        medical = {
            "hasMedicalCondition": od["hasMedicalCondition"],
            "medicalCondition": od.get("medicalCondition") or None,
            "medicalDetails": od.get("medicalDetails") or None,
        }
    security = None
    if "biometricEnabled" in od:
        security = {
            "biometricEnabled": bool(od.get("biometricEnabled") or False),
            "pinEnabled": bool(od.get("pinEnabled") or False),
            "pinSetAt": od.get("pinSetAt") or None,
        }

    has_wellsphere = wellsphere is not None or wellsphere_questions is not None
    completed = [
        main is not None,
        bool(fitness and fitness.get("completedAt")),
        bool(nutrition and nutrition.get("completedAt")),
        has_wellsphere,
        questions is not None,
        interests is not None or user_tags is not None,
        medical is not None,
        security is not None,
    ]
    summary = {
        "hasMainOnboarding": main is not None,
        "hasFitnessOnboarding": fitness is not None,
        "fitnessOnboardingComplete": bool(fitness and fitness.get("completedAt")),
        "hasNutritionOnboarding": nutrition is not None,
        "nutritionOnboardingComplete": bool(nutrition and nutrition.get("completedAt")),
        "hasWellsphereOnboarding": has_wellsphere,
        "hasEnhancedQuestions": questions is not None,
        "hasEnhancedInterests": interests is not None or user_tags is not None,
        "hasEnhancedMedical": medical is not None,
        "hasEnhancedSecurity": security is not None,
        "totalOnboardingCompleted": sum(1 for c in completed if c),
    }
    return {
        "mainOnboarding": main,
        "fitnessOnboarding": fitness,
        "nutritionOnboarding": nutrition,
        "wellsphereOnboarding": wellsphere or wellsphere_questions,
        "enhancedQuestions": questions,
        "enhancedInterests": interests,
        "enhancedMedical": medical,
        "enhancedSecurity": security,
        "userTags": user_tags,
        "obQuestions": ob_questions,
        "onboardingData": onboarding_data,
        "summary": summary,
    }


# ---------- Points ----------
def points_dict(data: dict[str, Any]) -> dict[str, Any]:
    last = data.get("lastPointsAwardedAt")
    return {
        "totalPoints": data.get("totalPoints") or 0,
        "level": data.get("level") or 1,
        "earnedPoints": data.get("earnedPoints") or {},
        "pointsDailyTotals": data.get("pointsDailyTotals") or {},
        "pointsDailyCounters": data.get("pointsDailyCounters") or {},
        "lastPointsAwardedAt": (iso(last) or last) if last else None,
    }


def points_update_from_payload(payload: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
    """Returns (update, errors). Level follows totalPoints unless given explicitly."""
    update: dict[str, Any] = {}
    errors: list[str] = []
    if "totalPoints" in payload:
        total = payload["totalPoints"]
        if isinstance(total, bool) or not isinstance(total, (int, float)) or total < 0:
            errors.append("totalPoints must be a non-negative number")
        else:
            total = int(total)
            update["totalPoints"] = total
            update["points"] = total
            if "level" not in payload:
                update["level"] = total // 100 + 1
    if "level" in payload:
        level = payload["level"]
        if isinstance(level, bool) or not isinstance(level, int) or level < 1:
            errors.append("level must be a positive integer")
        else:
            update["level"] = level
    for key in ("earnedPoints", "pointsDailyTotals"):
        if key in payload:
            if not isinstance(payload[key], dict):
                errors.append(f"{key} must be an object")
            else:
                update[key] = payload[key]
    return update, errors
