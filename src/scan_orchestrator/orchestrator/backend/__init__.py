"""Probe client implementations."""

from scan_orchestrator.orchestrator.backend.base import Message, ProbeClient, ProbeResponse
from scan_orchestrator.orchestrator.backend.echo_backend import EchoProbeClient
from scan_orchestrator.orchestrator.backend.http_backend import HttpProbeClient

__all__ = [
    "EchoProbeClient",
    "HttpProbeClient",
    "Message",
    "ProbeClient",
    "ProbeResponse",
]
