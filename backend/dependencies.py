# dependencies.py — Service wiring shared by the HTTP and WebSocket layers
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import async_sessionmaker
from starlette.requests import HTTPConnection

from activity import ActivityFeed, ActivityRecorder
from comments import CommentService
from events import ChannelFanout
from project_service import ProjectService
from rbac import AuthorizationEngine
from store import Store
from task_lifecycle import TaskLifecycle
from workspace_service import WorkspaceService


@dataclass
class Services:
    store: Store
    fanout: ChannelFanout
    engine: AuthorizationEngine
    tasks: TaskLifecycle
    workspaces: WorkspaceService
    projects: ProjectService
    comments: CommentService
    activity: ActivityFeed


def build_services(session_factory: async_sessionmaker, fanout: Optional[ChannelFanout] = None) -> Services:
    """Wire one store, engine and recorder into every domain service"""
    fanout = fanout or ChannelFanout()
    store = Store(session_factory, fanout=fanout)
    engine = AuthorizationEngine()
    recorder = ActivityRecorder()
    return Services(
        store=store,
        fanout=fanout,
        engine=engine,
        tasks=TaskLifecycle(store, engine, recorder),
        workspaces=WorkspaceService(store, engine, recorder),
        projects=ProjectService(store, engine, recorder),
        comments=CommentService(store, engine, recorder),
        activity=ActivityFeed(store, engine),
    )


def services_for(connection: HTTPConnection) -> Services:
    return connection.app.state.services


def get_services(request: Request) -> Services:
    return services_for(request)
