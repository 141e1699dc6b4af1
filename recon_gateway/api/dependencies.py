"""Dependency injection for FastAPI endpoints"""

from fastapi import Request
from recon_gateway.infrastructure.clients.reasoning import ReasoningClient
from recon_gateway.infrastructure.database.session import SessionLocal
from recon_gateway.services.progress import DatabaseProgressSink


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_reasoning_client() -> ReasoningClient:
    """Provide reasoning API client instance"""
    return ReasoningClient()


def get_progress_sink() -> DatabaseProgressSink:
    """Provide progress feed writer with its own sessions"""
    return DatabaseProgressSink(SessionLocal)
