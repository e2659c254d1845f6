"""
Cell colouring and frame composition.

Maps a GridSnapshot to an RGB frame:
- classic: white cells on black
- heat: blue (young) to red (old) on dark blue
- rainbow: hue cycles with cell age
- pulse: bass/mid/treble drive the red/green/blue channels
"""

import numpy as np
from PIL import Image

from soundscape.config import COLOR_SCHEMES, VisualizationConfig
from soundscape.core.analyzer import BandEnergies
from soundscape.core.automaton import GridSnapshot

_BACKGROUNDS = {
    "classic": (0, 0, 0),
    "heat": (0, 0, 20),
    "rainbow": (0, 0, 0),
    "pulse": (0, 0, 0),
}

# Newborn cells stay visible under age-scaled schemes
_MIN_LEVEL = 0.35


def _hsv_to_rgb_array(
    h: np.ndarray,
    s: np.ndarray,
    v: np.ndarray,
) -> np.ndarray:
    """
    Vectorized HSV to RGB conversion.

    Args:
        h, s, v: Arrays of same shape, values in [0, 1].

    Returns:
        (H, W, 3) float array in [0, 1].
    """
    h6 = (h * 6.0) % 6.0
    i = h6.astype(np.int32)
    f = h6 - i

    p = v * (1.0 - s)
    q = v * (1.0 - s * f)
    t = v * (1.0 - s * (1.0 - f))

    # Channel order per hue sector
    sectors = (
        (v, t, p),
        (q, v, p),
        (p, v, t),
        (p, q, v),
        (t, p, v),
        (v, p, q),
    )

    rgb = np.zeros(h.shape + (3,), dtype=np.float32)
    for index, channels in enumerate(sectors):
        mask = i == index
        for c, source in enumerate(channels):
            rgb[mask, c] = source[mask]
    return rgb


def background_color(scheme: str, energies: BandEnergies | None = None) -> tuple[int, int, int]:
    """Background RGB for a scheme; pulse glows faintly with overall energy."""
    if scheme == "pulse" and energies is not None:
        value = int(np.clip(energies.overall * 0.2, 0.0, 1.0) * 30)
        return (value, value, value)
    return _BACKGROUNDS[scheme]


class CellPainter:
    """
    Turns snapshots into upscaled RGB frames with a fading trail.

    Dead cells fade out over successive frames at fade_rate instead of
    vanishing, so oscillators and gliders leave short afterglows.
    """

    def __init__(self, cell_size: int = 4, fade_rate: float = 0.1):
        self.cell_size = cell_size
        self.fade_rate = fade_rate
        self._trail: np.ndarray | None = None

    @classmethod
    def from_config(cls, vis: VisualizationConfig) -> "CellPainter":
        return cls(cell_size=vis.cell_size, fade_rate=vis.fade_rate)

    def reset(self):
        self._trail = None

    def cell_colors(self, snapshot: GridSnapshot, scheme: str) -> np.ndarray:
        """
        Colour of every live cell.

        Args:
            snapshot: Grid to colour.
            scheme: One of COLOR_SCHEMES.

        Returns:
            (height, width, 3) float32 array in [0, 1]; dead cells are 0.
        """
        if scheme not in COLOR_SCHEMES:
            raise ValueError(f"unknown color scheme: {scheme!r}")

        alive = snapshot.cells
        age = snapshot.intensity()
        shape = alive.shape + (3,)

        if scheme == "classic":
            rgb = np.ones(shape, dtype=np.float32)
        elif scheme == "heat":
            rgb = np.stack([age, (1.0 - age) * age, 1.0 - age], axis=-1)
        elif scheme == "rainbow":
            ones = np.ones_like(age)
            rgb = _hsv_to_rgb_array(age, ones, ones)
        else:
            energies = snapshot.energies
            level = _MIN_LEVEL + (1.0 - _MIN_LEVEL) * age
            if energies is None:
                rgb = np.repeat(level[..., None], 3, axis=-1)
            else:
                bands = np.clip([energies.bass, energies.mid, energies.treble], 0.0, 1.0)
                tint = 0.15 + 0.85 * bands.astype(np.float32)
                rgb = level[..., None] * tint

        rgb = np.asarray(rgb, dtype=np.float32)
        rgb[~alive] = 0.0
        return rgb

    def paint(self, snapshot: GridSnapshot, scheme: str) -> np.ndarray:
        """
        Compose a full frame for a snapshot.

        Args:
            snapshot: Grid to draw.
            scheme: One of COLOR_SCHEMES.

        Returns:
            (height * cell_size, width * cell_size, 3) uint8 RGB array.
        """
        colors = self.cell_colors(snapshot, scheme)

        if self._trail is None or self._trail.shape != colors.shape:
            self._trail = colors
        else:
            self._trail = np.maximum(colors, self._trail * (1.0 - self.fade_rate))

        background = np.array(background_color(scheme, snapshot.energies), dtype=np.float32)
        frame = np.maximum(self._trail * 255.0, background)
        frame = np.clip(frame, 0, 255).astype(np.uint8)

        if self.cell_size == 1:
            return frame

        img = Image.fromarray(frame)
        img = img.resize(
            (snapshot.width * self.cell_size, snapshot.height * self.cell_size),
            Image.NEAREST,
        )
        return np.asarray(img)
