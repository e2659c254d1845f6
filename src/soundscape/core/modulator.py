"""
Audio-to-rule modulation.

Maps band energies onto the parameters of a Game-of-Life-like ruleset:
- Bass -> birth bias (dead cells near the birth condition may be born)
- Mid -> survival variant (strict / classic / relaxed)
- Treble -> mutation rate (random per-cell outcome changes)
"""

import math
from dataclasses import dataclass

from soundscape.config import SensitivityConfig
from soundscape.core.analyzer import BandEnergies

SURVIVAL_VARIANTS = ("strict", "classic", "relaxed")

# Neighbour counts that keep a live cell alive, per variant
SURVIVAL_COUNTS = {
    "strict": (3,),
    "classic": (2, 3),
    "relaxed": (1, 2, 3, 4),
}

BIRTH_COUNTS = (3,)
NEAR_BIRTH_COUNTS = (2, 4)


def clamp_unit(value: float) -> float:
    """Clamp to [0, 1]; NaN becomes 0."""
    if math.isnan(value):
        return 0.0
    return min(max(value, 0.0), 1.0)


@dataclass(frozen=True)
class EffectiveRules:
    """Rule parameters active for exactly one simulation tick."""

    birth_bias: float = 0.0
    survival_variant: str = "classic"
    mutation_rate: float = 0.0

    def __post_init__(self):
        if not (0.0 <= self.birth_bias <= 1.0):
            raise ValueError(f"birth_bias out of range: {self.birth_bias!r}")
        if not (0.0 <= self.mutation_rate <= 1.0):
            raise ValueError(f"mutation_rate out of range: {self.mutation_rate!r}")
        if self.survival_variant not in SURVIVAL_COUNTS:
            raise ValueError(f"unknown survival variant: {self.survival_variant!r}")

    @property
    def survival_counts(self) -> tuple[int, ...]:
        return SURVIVAL_COUNTS[self.survival_variant]


NEUTRAL_RULES = EffectiveRules()


class RuleModulator:
    """
    Derives EffectiveRules from band energies and sensitivity gains.

    Pure and deterministic: the random draws the rules parameterize happen
    in the automaton engine.
    """

    def __init__(
        self,
        sensitivity: SensitivityConfig | None = None,
        variant_thresholds: tuple[float, float] = (0.4, 0.7),
    ):
        """
        Initialize the modulator.

        Args:
            sensitivity: Per-band gains (default: SensitivityConfig()).
            variant_thresholds: Scaled-mid boundaries between the strict,
                classic and relaxed survival variants.
        """
        self.sensitivity = sensitivity or SensitivityConfig()
        self.variant_thresholds = variant_thresholds

    def select_variant(self, level: float) -> str:
        """Bucket a scaled mid level into a survival variant."""
        low, high = self.variant_thresholds
        if math.isnan(level) or level < low:
            return "strict"
        if level < high:
            return "classic"
        return "relaxed"

    def modulate(
        self,
        energies: BandEnergies,
        sensitivity: SensitivityConfig | None = None,
    ) -> EffectiveRules:
        """
        Compute the rules for the next tick.

        Args:
            energies: Latest band energies.
            sensitivity: Optional gains overriding the configured ones.

        Returns:
            EffectiveRules with every field in range.
        """
        gains = sensitivity or self.sensitivity

        return EffectiveRules(
            birth_bias=clamp_unit(energies.bass * gains.bass),
            survival_variant=self.select_variant(energies.mid * gains.mid),
            mutation_rate=clamp_unit(energies.treble * gains.treble),
        )
