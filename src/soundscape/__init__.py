"""Audio-reactive Game of Life."""

from soundscape.config import Config
from soundscape.core.analyzer import SpectralAnalyzer
from soundscape.core.automaton import AutomatonEngine
from soundscape.core.modulator import RuleModulator
from soundscape.pipeline import PipelineCoordinator

__version__ = "0.1.0"
__all__ = [
    "Config",
    "SpectralAnalyzer",
    "AutomatonEngine",
    "RuleModulator",
    "PipelineCoordinator",
]
