from __future__ import annotations

import json
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any

from flask import current_app

NOT_CONFIGURED_REASON = (
    "PostHog analytics is not configured. Set POSTHOG_PROJECT_ID and POSTHOG_PERSONAL_API_KEY to enable."
)


class PosthogError(RuntimeError):
    pass


@dataclass(frozen=True)
class TrendSeries:
    label: str
    count: float = 0
    data: list[float] = field(default_factory=list)
    dates: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PosthogClient:
    project_id: str
    api_key: str
    host: str = "https://eu.i.posthog.com"
    timeout_seconds: int = 30

    def request_json(self, path: str, *, body: dict[str, Any] | None = None, retries: int = 2) -> Any:
        url = f"{self.host.rstrip('/')}/api/projects/{urllib.parse.quote(str(self.project_id))}{path}"
        data = json.dumps(body).encode("utf-8") if body is not None else None

        last_err: Exception | None = None
        for attempt in range(retries + 1):
            req = urllib.request.Request(url, data=data, method="POST" if data is not None else "GET")
            req.add_header("Authorization", f"Bearer {self.api_key}")
            req.add_header("Content-Type", "application/json")
            req.add_header("Accept", "application/json")
            try:
                with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                    raw = resp.read()
            except urllib.error.HTTPError as e:
                if e.code == 429:
                    time.sleep(min(2 * (attempt + 1), 10))
                    last_err = PosthogError("Rate limited (429)")
                    continue
                text = e.read().decode("utf-8", errors="ignore")
                raise PosthogError(f"PostHog request failed ({e.code}): {text[:300] or e.reason}") from e
            except (urllib.error.URLError, TimeoutError) as e:
                last_err = e
                time.sleep(min(1 * (attempt + 1), 5))
                continue
            try:
                return json.loads(raw.decode("utf-8"))
            except ValueError as e:
                raise PosthogError(f"Invalid JSON from PostHog ({path})") from e
        raise PosthogError(f"PostHog request failed after retries: {last_err}")

    def event_trends(
        self,
        event: str,
        *,
        date_from: str = "-30d",
        date_to: str | None = None,
        properties: list[dict[str, Any]] | None = None,
    ) -> TrendSeries:
        """Daily series and window total for a single custom event."""
        body: dict[str, Any] = {
            "insight": "TRENDS",
            "display": "ActionsLineGraph",
            "events": [{"id": event, "name": event, "type": "events", "order": 0}],
            "date_from": date_from,
            "properties": [
                {
                    "type": p.get("type") or "event",
                    "key": p["key"],
                    "value": p["value"],
                    "operator": p.get("operator") or "exact",
                }
                for p in (properties or [])
            ],
        }
        if date_to:
            body["date_to"] = date_to

        res = self.request_json("/insights/trend/", body=body)
        # Older deployments wrap the list in {"result": [...]}.
        if isinstance(res, dict):
            res = res.get("result") or []
        series = res[0] if isinstance(res, list) and res else None
        if not isinstance(series, dict):
            return TrendSeries(label=event)

        count = series.get("count")
        if isinstance(count, bool) or not isinstance(count, (int, float)):
            count = 0
        raw_data = series.get("data") if isinstance(series.get("data"), list) else []
        return TrendSeries(
            label=series.get("label") or event,
            count=count,
            data=[v if isinstance(v, (int, float)) and not isinstance(v, bool) else 0 for v in raw_data],
            dates=list(series.get("days") or series.get("dates") or []),
        )


def posthog_client_from_config() -> PosthogClient | None:
    """None when PostHog is not configured for this app."""
    cfg = current_app.config
    project_id = (cfg.get("POSTHOG_PROJECT_ID") or "").strip()
    api_key = (cfg.get("POSTHOG_PERSONAL_API_KEY") or "").strip()
    if not project_id or not api_key:
        return None
    host = (cfg.get("POSTHOG_HOST") or "https://eu.i.posthog.com").strip()
    return PosthogClient(project_id=project_id, api_key=api_key, host=host)
