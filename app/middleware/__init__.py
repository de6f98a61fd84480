"""Middleware components for the samlflow application."""

from .logging import RequestLoggingMiddleware
from .loginflow import LoginFlowMiddleware, build_request_context, read_form

__all__ = [
    "LoginFlowMiddleware",
    "RequestLoggingMiddleware",
    "build_request_context",
    "read_form",
]
