"""HTTP client for the text summarization service."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urljoin

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .aggregation import UNKNOWN_PROJECT_NAME
from .durations import entry_duration_ms, format_duration, parse_timestamp
from .errors import SummarizationError

logger = logging.getLogger(__name__)

UTC = dt.timezone.utc

REPORT_FAILED = "Failed to generate the report. Please try again."
SUGGESTIONS_FAILED = "Failed to get suggestions. Please try again."
NO_WEEKLY_ENTRIES = "No time entries in the last 7 days to generate a report."
NO_PREVIOUS_ENTRIES = "No time entries yet."


class _ServiceModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProjectHours(_ServiceModel):
    project_name: str
    hours: float


class WeeklyReport(_ServiceModel):
    total_hours: float
    project_breakdown: List[ProjectHours] = Field(default_factory=list)
    summary: str
    highlights: List[str] = Field(default_factory=list)


class TaskSuggestions(_ServiceModel):
    suggested_tasks: List[str] = Field(default_factory=list)
    reasoning: str = ""


def _sort_key(entry: Any) -> dt.datetime:
    return parse_timestamp(entry.start_time) or dt.datetime.min.replace(tzinfo=UTC)


def format_entries_for_summary(entries: Iterable[Any], projects: Iterable[Any], tz: dt.tzinfo = UTC) -> str:
    names = {project.id: project.name for project in projects}
    lines = []
    for entry in sorted(entries, key=_sort_key):
        started = parse_timestamp(entry.start_time)
        day = started.astimezone(tz).date().isoformat() if started else ""
        lines.append(
            "- Project: {name} | Task: \"{task}\" | Duration: {duration} | Date: {day}".format(
                name=names.get(entry.project_id, UNKNOWN_PROJECT_NAME),
                task=entry.description,
                duration=format_duration(entry_duration_ms(entry)),
                day=day,
            )
        )
    return "\n".join(lines)


def format_entries_for_suggestions(entries: Iterable[Any], tz: dt.tzinfo = UTC) -> str:
    lines = []
    for entry in sorted(entries, key=_sort_key):
        started = parse_timestamp(entry.start_time)
        ended = parse_timestamp(entry.end_time)
        if started is None or ended is None:
            continue
        lines.append(
            f'- "{entry.description}" from {started.astimezone(tz):%Y-%m-%d %H:%M} '
            f"to {ended.astimezone(tz):%Y-%m-%d %H:%M}"
        )
    return "\n".join(lines) or NO_PREVIOUS_ENTRIES


class SummarizerClient:
    """Wraps the two summarization calls; failures surface as ``SummarizationError``."""

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str] = None,
        timeout: int = 60,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") + "/" if base_url else None
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return self.base_url is not None

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _post(self, path: str, payload: Dict[str, Any], failure: str) -> Any:
        if not self.configured:
            logger.error("Summarizer call to %s skipped: no service URL configured", path)
            raise SummarizationError(failure)
        url = urljoin(self.base_url, path.lstrip("/"))
        try:
            response = self.session.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as exc:
            logger.error("Summarizer request to %s failed: %s", url, exc)
            raise SummarizationError(failure) from exc
        if response.status_code >= 400:
            logger.error("Summarizer returned %s for %s: %s", response.status_code, url, response.text[:200])
            raise SummarizationError(failure)
        try:
            return response.json()
        except ValueError as exc:
            logger.error("Summarizer returned invalid JSON for %s", url)
            raise SummarizationError(failure) from exc

    def weekly_summary(self, time_entries: str) -> WeeklyReport:
        if not time_entries.strip():
            raise SummarizationError(NO_WEEKLY_ENTRIES)
        data = self._post("weekly-summary", {"timeEntries": time_entries}, REPORT_FAILED)
        try:
            return WeeklyReport.model_validate(data)
        except ValidationError as exc:
            logger.error("Summarizer weekly report did not match the expected shape: %s", exc)
            raise SummarizationError(REPORT_FAILED) from exc

    def suggest_tasks(self, project_description: str, previous_entries: str) -> TaskSuggestions:
        payload = {
            "projectDescription": project_description,
            "previousTimeEntries": previous_entries or NO_PREVIOUS_ENTRIES,
        }
        data = self._post("suggest-tasks", payload, SUGGESTIONS_FAILED)
        try:
            return TaskSuggestions.model_validate(data)
        except ValidationError as exc:
            logger.error("Summarizer suggestions did not match the expected shape: %s", exc)
            raise SummarizationError(SUGGESTIONS_FAILED) from exc


__all__ = [
    "NO_WEEKLY_ENTRIES",
    "REPORT_FAILED",
    "SUGGESTIONS_FAILED",
    "SummarizerClient",
    "TaskSuggestions",
    "WeeklyReport",
    "format_entries_for_suggestions",
    "format_entries_for_summary",
]
