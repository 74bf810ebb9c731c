"""FastAPI dependencies for ReviewLoom.

Provides shared services via FastAPI's Depends() injection system.
"""

from fastapi import Request


async def get_orchestrator(request: Request):
    """Get AnalysisOrchestrator from app state."""
    return request.app.state.orchestrator


async def get_run_history(request: Request):
    """Get RunHistoryStore from the orchestrator."""
    return request.app.state.orchestrator.history


async def get_target_resolver(request: Request):
    """Get TargetResolver from the orchestrator."""
    return request.app.state.orchestrator.resolver


async def get_app_settings(request: Request):
    """Get Settings from app state."""
    return request.app.state.settings
