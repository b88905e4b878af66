"""Clients for the source and target systems."""

from jobsync.clients.base import SourceClient, TargetClient
from jobsync.clients.mysolution_client import MysolutionClient
from jobsync.clients.webflow_client import WebflowClient

__all__ = ["MysolutionClient", "SourceClient", "TargetClient", "WebflowClient"]
