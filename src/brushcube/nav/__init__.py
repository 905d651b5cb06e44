"""
Navigation module: interaction state machine, scheduling and rendering contract.
"""

from brushcube.nav.scheduler import FrameScheduler
from brushcube.nav.render import Renderer, RecordingRenderer, LoggingRenderer, to_records
from brushcube.nav.controller import InteractionController

__all__ = [
    "FrameScheduler",
    "Renderer", "RecordingRenderer", "LoggingRenderer", "to_records",
    "InteractionController",
]
