"""Spectral analysis, rule modulation and the automaton."""

from soundscape.core.analyzer import BandEnergies, SpectralAnalyzer
from soundscape.core.automaton import AutomatonEngine, GridSnapshot
from soundscape.core.modulator import EffectiveRules, RuleModulator

__all__ = [
    "BandEnergies",
    "SpectralAnalyzer",
    "AutomatonEngine",
    "GridSnapshot",
    "EffectiveRules",
    "RuleModulator",
]
