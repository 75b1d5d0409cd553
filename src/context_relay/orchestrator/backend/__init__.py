"""Collaborator interfaces and adapters for resources, processing and verification."""

from context_relay.orchestrator.backend.base import (
    ProcessRequest,
    ResourceProcessor,
    ResourceProvider,
    VerificationHook,
)
from context_relay.orchestrator.backend.command import CommandProcessor, CommandVerificationHook
from context_relay.orchestrator.backend.echo_agent import EchoProcessor
from context_relay.orchestrator.backend.providers import (
    FileSystemResourceProvider,
    InMemoryResourceProvider,
    estimate_units_for_text,
)

__all__ = [
    "CommandProcessor",
    "CommandVerificationHook",
    "EchoProcessor",
    "FileSystemResourceProvider",
    "InMemoryResourceProvider",
    "ProcessRequest",
    "ResourceProcessor",
    "ResourceProvider",
    "VerificationHook",
    "estimate_units_for_text",
]
