"""Reconciliation controller and tailer registry."""

from ktail.controller.controller import Callbacks, Controller, StartupError
from ktail.controller.registry import TailerEntry, TailerRegistry

__all__ = [
    "Callbacks",
    "Controller",
    "StartupError",
    "TailerEntry",
    "TailerRegistry",
]
