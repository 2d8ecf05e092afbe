"""Controller module.

This module provides the ApplicationController, which reconciles a single
Application, and the ControlLoop that drives a controller per Application
alongside alert evaluation and notification routing.
"""

from .application import ApplicationController
from .loop import ControlLoop

__all__ = [
    "ApplicationController",
    "ControlLoop",
]
