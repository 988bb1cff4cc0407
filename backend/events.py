# events.py — Post-commit domain events and channel fan-out
#
# Delivery is fire-and-forget and at-most-once: a subscriber sees only events
# published while it is subscribed, and a failing subscriber never affects the
# committed change or the other subscribers.
import uuid
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger("workhub.events")


class EventType(str, Enum):
    TASK_CREATED = "task.created"
    TASK_UPDATED = "task.updated"
    TASK_DELETED = "task.deleted"
    TASK_ASSIGNED = "task.assigned"
    TASKS_BULK_UPDATED = "tasks.bulk_updated"
    WORKSPACE_UPDATED = "workspace.updated"
    PROJECT_UPDATED = "project.updated"
    COMMENT_ADDED = "comment.added"
    COMMENT_UPDATED = "comment.updated"
    COMMENT_DELETED = "comment.deleted"


def project_channel(project_id: str) -> str:
    return f"project:{project_id}"


def workspace_channel(workspace_id: str) -> str:
    return f"workspace:{workspace_id}"


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class DomainEvent:
    type: EventType
    channel: str
    payload: Dict[str, Any]
    actor_id: Optional[str] = None
    timestamp: str = field(default_factory=_now_iso)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_message(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "channel": self.channel,
            "payload": self.payload,
            "actor_id": self.actor_id,
            "timestamp": self.timestamp,
        }


# ============================================================
# EVENT BUILDERS (payloads are already JSON-safe dicts)
# ============================================================

def task_created(task: Dict[str, Any], actor_id: str) -> DomainEvent:
    return DomainEvent(EventType.TASK_CREATED, project_channel(task["project_id"]), {"task": task}, actor_id)


def task_updated(task: Dict[str, Any], changed_fields: List[str], actor_id: str) -> DomainEvent:
    return DomainEvent(
        EventType.TASK_UPDATED,
        project_channel(task["project_id"]),
        {"task": task, "changed_fields": list(changed_fields)},
        actor_id,
    )


def task_deleted(task_id: str, project_id: str, actor_id: str) -> DomainEvent:
    return DomainEvent(EventType.TASK_DELETED, project_channel(project_id), {"task_id": task_id}, actor_id)


def task_assigned(task: Dict[str, Any], assignee_id: str, actor_id: str) -> DomainEvent:
    return DomainEvent(
        EventType.TASK_ASSIGNED,
        user_channel(assignee_id),
        {"task": task, "assigned_by": actor_id},
        actor_id,
    )


def tasks_bulk_updated(project_id: str, tasks: List[Dict[str, Any]], actor_id: str) -> DomainEvent:
    return DomainEvent(EventType.TASKS_BULK_UPDATED, project_channel(project_id), {"tasks": tasks}, actor_id)


def comment_added(comment: Dict[str, Any], project_id: str, actor_id: str) -> DomainEvent:
    return DomainEvent(EventType.COMMENT_ADDED, project_channel(project_id), {"comment": comment}, actor_id)


def comment_updated(comment: Dict[str, Any], project_id: str, actor_id: str) -> DomainEvent:
    return DomainEvent(EventType.COMMENT_UPDATED, project_channel(project_id), {"comment": comment}, actor_id)


def comment_deleted(comment_id: str, task_id: str, project_id: str, actor_id: str) -> DomainEvent:
    return DomainEvent(
        EventType.COMMENT_DELETED,
        project_channel(project_id),
        {"comment_id": comment_id, "task_id": task_id},
        actor_id,
    )


def workspace_updated(workspace: Dict[str, Any], actor_id: str) -> DomainEvent:
    return DomainEvent(EventType.WORKSPACE_UPDATED, workspace_channel(workspace["id"]), {"workspace": workspace}, actor_id)


def project_updated(project: Dict[str, Any], actor_id: str) -> DomainEvent:
    return DomainEvent(
        EventType.PROJECT_UPDATED,
        workspace_channel(project["workspace_id"]),
        {"project": project},
        actor_id,
    )


# ============================================================
# FAN-OUT
# ============================================================

Subscriber = Callable[[DomainEvent], Awaitable[None]]


class EventFanout(ABC):
    """Publishes committed domain events to whoever listens on their channel"""

    @abstractmethod
    async def publish(self, event: DomainEvent) -> None:
        ...

    async def publish_many(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            await self.publish(event)


class NullFanout(EventFanout):
    """Drops every event"""

    async def publish(self, event: DomainEvent) -> None:
        logger.debug(f"Dropping {event.type.value} on {event.channel}")


class ChannelFanout(EventFanout):
    """In-process channel registry; realtime transports subscribe per connection"""

    def __init__(self):
        self._subscribers: Dict[str, Dict[str, Subscriber]] = {}  # channel -> {subscription_id -> handler}

    def subscribe(self, channel: str, handler: Subscriber) -> str:
        subscription_id = str(uuid.uuid4())
        self._subscribers.setdefault(channel, {})[subscription_id] = handler
        return subscription_id

    def unsubscribe(self, channel: str, subscription_id: str) -> None:
        handlers = self._subscribers.get(channel)
        if not handlers:
            return
        handlers.pop(subscription_id, None)
        if not handlers:
            del self._subscribers[channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, {}))

    async def publish(self, event: DomainEvent) -> None:
        # snapshot: handlers may unsubscribe while we deliver
        handlers = list(self._subscribers.get(event.channel, {}).items())
        for subscription_id, handler in handlers:
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    f"Subscriber {subscription_id[:8]} failed on {event.type.value} ({event.channel})"
                )

    def get_stats(self) -> dict:
        return {
            "channels": len(self._subscribers),
            "subscriptions": sum(len(h) for h in self._subscribers.values()),
        }
