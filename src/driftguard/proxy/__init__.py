"""HTTP proxy: request pipeline, forwarding and the FastAPI app."""

from __future__ import annotations

from .context import RequestContext, RequestType, render_body
from .forwarder import ForwardResult, UpstreamForwarder
from .keepalive import CacheKeepAlive
from .orchestrator import ProxyOrchestrator, ProxyResponse
from .preprocess import RequestPreprocessor
from .server import create_app, main

__all__ = [
    "CacheKeepAlive",
    "ForwardResult",
    "ProxyOrchestrator",
    "ProxyResponse",
    "RequestContext",
    "RequestPreprocessor",
    "RequestType",
    "UpstreamForwarder",
    "create_app",
    "main",
    "render_body",
]
