"""
REST API module for ReviewLoom.

Provides FastAPI endpoints for:
- Triggering, polling and cancelling analyses
- Live progress streaming (SSE)
- Analysis run history and run-scoped AI suggestions
"""
