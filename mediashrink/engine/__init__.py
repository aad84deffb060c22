from .events import EngineFailed, EngineFinished, EngineProgress, EngineStarted, TranscodeEvent
from .pipeline import TranscodeHandle, TranscodePipeline

__all__ = [
    "EngineFailed",
    "EngineFinished",
    "EngineProgress",
    "EngineStarted",
    "TranscodeEvent",
    "TranscodeHandle",
    "TranscodePipeline",
]
