"""Shared FastAPI dependencies for objects created once per application."""

from fastapi import Request

from mailhub.config import Settings
from mailhub.realtime.broadcaster import Broadcaster
from mailhub.services.sync_service import SyncEngine


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_broadcaster(request: Request) -> Broadcaster:
    return request.app.state.broadcaster


def get_sync_engine(request: Request) -> SyncEngine:
    return request.app.state.sync_engine
