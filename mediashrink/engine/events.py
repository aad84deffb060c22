from dataclasses import dataclass, field
from typing import Callable, List, Optional, Union


@dataclass(frozen=True)
class EngineStarted:
    command: List[str] = field(default_factory=list)

    @property
    def command_line(self) -> str:
        return " ".join(self.command)


@dataclass(frozen=True)
class EngineProgress:
    """A periodic sample parsed from the engine's stats output. Any field may be missing."""

    percent: Optional[float] = None
    processed_seconds: Optional[float] = None
    frames: Optional[int] = None


@dataclass(frozen=True)
class EngineFailed:
    message: str
    stderr: Optional[str] = None


@dataclass(frozen=True)
class EngineFinished:
    pass


TranscodeEvent = Union[EngineStarted, EngineProgress, EngineFailed, EngineFinished]
EventListener = Callable[[TranscodeEvent], None]
