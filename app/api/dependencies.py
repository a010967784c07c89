"""
Request-scoped access to the process-wide objects built at startup.

Everything here is read from app.state, so tests can build an app with
fake clients and a temporary database without patching modules.
"""
from fastapi import Request

from app.core.config import Settings
from app.services.dodo_client import DodoClient
from app.services.gemini_client import GeminiClient
from app.services.reddit_client import RedditClient


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_dodo_client(request: Request) -> DodoClient:
    return request.app.state.dodo


def get_gemini_client(request: Request) -> GeminiClient:
    return request.app.state.gemini


def get_reddit_client(request: Request) -> RedditClient:
    return request.app.state.reddit
