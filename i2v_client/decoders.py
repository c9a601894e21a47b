"""Decoders turning status responses into GenerationTask objects.

Two endpoint families are in use for the same logical operation:

* ``single``: ``GET {status_path}/{id}`` returning ``{"generation": {...}}``
* ``list``:   ``GET {status_all_path}`` returning ``{"code", "data": [...]}``

The orchestrator talks to one ``ResponseDecoder`` chosen by configuration
and never looks at raw payloads itself.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from i2v_client.config import ApiSettings
from i2v_client.errors import BODY_PREFIX, MalformedResponseError
from i2v_client.models import GenerationTask, TaskStatus

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "queued": TaskStatus.QUEUED,
    "queuing": TaskStatus.QUEUED,
    "pending": TaskStatus.QUEUED,
    "waiting": TaskStatus.QUEUED,
    "initialized": TaskStatus.QUEUED,
    "sent": TaskStatus.PROCESSING,
    "process": TaskStatus.PROCESSING,
    "processing": TaskStatus.PROCESSING,
    "running": TaskStatus.PROCESSING,
    "generating": TaskStatus.PROCESSING,
    "completed": TaskStatus.COMPLETED,
    "complete": TaskStatus.COMPLETED,
    "success": TaskStatus.COMPLETED,
    "done": TaskStatus.COMPLETED,
    "failed": TaskStatus.FAILED,
    "fail": TaskStatus.FAILED,
    "error": TaskStatus.FAILED,
}

_ID_KEYS = ("_id", "id", "task_id", "taskId")


def map_status(raw: Any) -> TaskStatus:
    """Map a service status string onto TaskStatus.

    Unknown values count as still processing so polling carries on.
    """
    if raw is None:
        return TaskStatus.QUEUED
    status = _STATUS_MAP.get(str(raw).strip().lower())
    if status is None:
        logger.debug("Unknown task status %r, treating as processing", raw)
        return TaskStatus.PROCESSING
    return status


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string or epoch (seconds or milliseconds)."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            logger.debug("Out-of-range timestamp %r", value)
            return datetime.now(timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Unparseable timestamp %r", value)
        else:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


def _first(entry: dict, *keys: str) -> Any:
    for key in keys:
        value = entry.get(key)
        if value not in (None, ""):
            return value
    return None


def task_from_entry(entry: dict, task_id: str | None = None) -> GenerationTask:
    """Build a GenerationTask from one task record, whatever its key spelling."""
    status = map_status(_first(entry, "current_status", "status", "state"))
    result_url = _first(entry, "video_url", "result_url", "url")
    failure = _first(entry, "failed_message", "error", "message")
    if isinstance(failure, dict):
        failure = failure.get("message")

    raw_id = _first(entry, *_ID_KEYS)
    return GenerationTask(
        id=str(raw_id) if raw_id is not None else task_id,
        status=status,
        result_url=result_url if status is TaskStatus.COMPLETED else None,
        failure_reason=failure if status is TaskStatus.FAILED else None,
        created_at=parse_timestamp(_first(entry, "createdAt", "created_at")),
        name=entry.get("name"),
    )


def parse_task_id(data: dict) -> str | None:
    """Extract the task id from a submission response, if the service sent one."""
    for container in (data.get("data"), data.get("generation"), data):
        if isinstance(container, dict):
            value = _first(container, *_ID_KEYS)
            if value is not None:
                return str(value)
    return None


def parse_task_list(data: Any) -> list[GenerationTask]:
    """Decode a list-all-tasks response."""
    records = data.get("data") if isinstance(data, dict) else None
    if not isinstance(records, list):
        raise MalformedResponseError(
            f"Expected a task list under 'data', got: {str(data)[:BODY_PREFIX]}",
            body=data,
        )
    return [task_from_entry(entry) for entry in records if isinstance(entry, dict)]


class ResponseDecoder:
    """Knows where to ask for a task's status and how to read the answer."""

    def __init__(self, api: ApiSettings) -> None:
        self.api = api

    def status_path(self, task_id: str | None) -> str:
        raise NotImplementedError

    def decode_status(self, data: Any, task_id: str | None) -> GenerationTask:
        raise NotImplementedError

    def decode_submission(self, data: dict) -> GenerationTask | None:
        """Return the task described by a submission acknowledgment, if any."""
        task_id = parse_task_id(data)
        inner = data.get("data")
        if isinstance(inner, dict):
            return task_from_entry(inner, task_id)
        generation = data.get("generation")
        if isinstance(generation, dict):
            return task_from_entry(generation, task_id)
        if task_id is not None:
            return GenerationTask(id=task_id, status=TaskStatus.QUEUED)
        return None


class SingleTaskDecoder(ResponseDecoder):
    """``GET {status_path}/{id}`` -> ``{"generation": {"status", "video_url"}}``."""

    def status_path(self, task_id: str | None) -> str:
        if not task_id:
            raise MalformedResponseError(
                "Submission response carried no task id; cannot query single-task status"
            )
        return f"{self.api.status_path}/{task_id}"

    def decode_status(self, data: Any, task_id: str | None) -> GenerationTask:
        if not isinstance(data, dict):
            raise MalformedResponseError(f"Unexpected status response: {str(data)[:BODY_PREFIX]}", body=data)
        entry = data.get("generation")
        if not isinstance(entry, dict) and isinstance(data.get("data"), dict):
            entry = data["data"].get("generation", data["data"])
        if not isinstance(entry, dict):
            raise MalformedResponseError(
                f"No 'generation' object in status response: {str(data)[:BODY_PREFIX]}",
                body=data,
            )
        return task_from_entry(entry, task_id)


class TaskListDecoder(ResponseDecoder):
    """``GET {status_all_path}`` -> ``{"code", "data": [{"_id", "current_status", ...}]}``.

    The task of interest is matched by id; without an id the newest record
    is used.
    """

    def status_path(self, task_id: str | None) -> str:
        return self.api.status_all_path

    def decode_status(self, data: Any, task_id: str | None) -> GenerationTask:
        tasks = parse_task_list(data)
        if task_id is not None:
            for task in tasks:
                if task.id == task_id:
                    return task
            logger.debug("Task %s not listed yet", task_id)
            return GenerationTask(id=task_id, status=TaskStatus.QUEUED)
        if not tasks:
            logger.debug("Task list is empty")
            return GenerationTask(id=None, status=TaskStatus.QUEUED)
        return max(tasks, key=lambda t: t.created_at)


_DECODERS = {
    "single": SingleTaskDecoder,
    "list": TaskListDecoder,
}


def get_decoder(api: ApiSettings) -> ResponseDecoder:
    """Return the decoder for the configured status endpoint family."""
    try:
        return _DECODERS[api.status_mode](api)
    except KeyError:
        raise ValueError(f"Unknown status mode: {api.status_mode!r}") from None
