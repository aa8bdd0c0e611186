"""Stagehand deployment orchestration toolkit."""

from .runner import DeploymentRunner
from .inventory import InventoryLoader

__all__ = ["DeploymentRunner", "InventoryLoader"]
