"""
Audio-modulated cellular automaton.

A Game of Life grid stepped with whole-grid, order-independent updates:
neighbour counts are always taken from the previous generation's buffer,
and the next generation is written into a second buffer before the two
swap roles.
"""

import threading
from dataclasses import dataclass

import numpy as np
from scipy import ndimage

from soundscape.config import EDGE_POLICIES, SimulationConfig
from soundscape.core.analyzer import BandEnergies
from soundscape.core.modulator import BIRTH_COUNTS, NEAR_BIRTH_COUNTS, EffectiveRules

NEIGHBOR_KERNEL = np.array(
    [
        [1, 1, 1],
        [1, 0, 1],
        [1, 1, 1],
    ],
    dtype=np.uint8,
)

# edge policy -> (ndimage boundary mode, value for out-of-grid cells)
_BOUNDARY = {
    "wrap": ("wrap", 0),
    "dead": ("constant", 0),
    "alive": ("constant", 1),
}


def _frozen(array: np.ndarray) -> np.ndarray:
    copy = array.copy()
    copy.flags.writeable = False
    return copy


@dataclass(frozen=True, eq=False)
class GridSnapshot:
    """Read-only copy of the grid at a tick boundary."""

    cells: np.ndarray  # (height, width) bool
    ages: np.ndarray   # (height, width) uint16, 0 for dead cells
    generation: int
    max_age: int
    sequence: int = 0
    energies: BandEnergies | None = None
    rules: EffectiveRules | None = None

    @property
    def width(self) -> int:
        return self.cells.shape[1]

    @property
    def height(self) -> int:
        return self.cells.shape[0]

    @property
    def population(self) -> int:
        return int(np.count_nonzero(self.cells))

    def intensity(self) -> np.ndarray:
        """Cell age scaled to [0.0, 1.0] for fade rendering."""
        return self.ages.astype(np.float32) / float(self.max_age)


class AutomatonEngine:
    """
    Owns the live grid and advances it one generation per tick.

    Only the simulation thread may call step(), reset(), clear() or
    seed_cells(). Other threads request a reset or clear, which is
    applied at the next tick boundary.
    """

    def __init__(
        self,
        width: int,
        height: int,
        edge_policy: str = "wrap",
        initial_density: float = 0.0,
        max_age: int = 255,
        rng: np.random.Generator | None = None,
        seed: int | None = None,
    ):
        """
        Initialize the engine.

        Args:
            width: Grid width in cells.
            height: Grid height in cells.
            edge_policy: "wrap", "dead" or "alive".
            initial_density: Fraction of cells seeded alive (0 = cleared).
            max_age: Cap for the per-cell age counter.
            rng: Random source for seeding, birth bias and mutation.
            seed: Seed for a new generator when rng is not given.
        """
        if width <= 0 or height <= 0:
            raise ValueError(f"grid size must be positive, got {width}x{height}")
        if edge_policy not in EDGE_POLICIES:
            raise ValueError(f"unknown edge policy: {edge_policy!r}")

        self.edge_policy = edge_policy
        self.max_age = max_age
        self.initial_density = initial_density
        self.rng = rng if rng is not None else np.random.default_rng(seed)

        shape = (height, width)
        self._buffers = (np.zeros(shape, dtype=bool), np.zeros(shape, dtype=bool))
        self._front = 0
        self._ages = np.zeros(shape, dtype=np.uint16)
        self._counts = np.zeros(shape, dtype=np.uint8)
        self.generation = 0

        self._pending: tuple[str, float | None] | None = None
        self._pending_lock = threading.Lock()

        if initial_density > 0:
            self.reset(initial_density)

    @classmethod
    def from_config(
        cls,
        sim: SimulationConfig,
        rng: np.random.Generator | None = None,
    ) -> "AutomatonEngine":
        return cls(
            width=sim.width,
            height=sim.height,
            edge_policy=sim.edge_policy,
            initial_density=sim.initial_density,
            max_age=sim.max_age,
            rng=rng,
            seed=sim.seed,
        )

    @property
    def shape(self) -> tuple[int, int]:
        return self._ages.shape

    @property
    def width(self) -> int:
        return self.shape[1]

    @property
    def height(self) -> int:
        return self.shape[0]

    @property
    def cells(self) -> np.ndarray:
        """Read-only view of the current generation."""
        view = self._buffers[self._front].view()
        view.flags.writeable = False
        return view

    @property
    def ages(self) -> np.ndarray:
        view = self._ages.view()
        view.flags.writeable = False
        return view

    @property
    def population(self) -> int:
        return int(np.count_nonzero(self._buffers[self._front]))

    def is_alive(self, x: int, y: int) -> bool:
        if 0 <= x < self.width and 0 <= y < self.height:
            return bool(self._buffers[self._front][y, x])
        return False

    def cell_age(self, x: int, y: int) -> int:
        if 0 <= x < self.width and 0 <= y < self.height:
            return int(self._ages[y, x])
        return 0

    def set_cell(self, x: int, y: int, alive: bool):
        """Set one cell; out-of-grid coordinates are ignored."""
        if 0 <= x < self.width and 0 <= y < self.height:
            self._buffers[self._front][y, x] = alive
            self._ages[y, x] = 1 if alive else 0

    def seed_cells(self, cells: np.ndarray):
        """Replace the current generation with a boolean pattern of the grid's shape."""
        cells = np.asarray(cells, dtype=bool)
        if cells.shape != self.shape:
            raise ValueError(f"pattern shape {cells.shape} does not match grid {self.shape}")
        front = self._buffers[self._front]
        front[...] = cells
        self._ages[...] = cells
        self.generation = 0

    def reset(self, density: float | None = None):
        """Reseed the grid randomly with the given (or initial) density."""
        if density is None:
            density = self.initial_density
        self.seed_cells(self.rng.random(self.shape) < density)

    def clear(self):
        """Kill every cell."""
        self.seed_cells(np.zeros(self.shape, dtype=bool))

    def request_reset(self, density: float | None = None):
        """Schedule a random reseed for the next tick boundary. Thread-safe."""
        with self._pending_lock:
            self._pending = ("reset", density)

    def request_clear(self):
        """Schedule a clear for the next tick boundary. Thread-safe."""
        with self._pending_lock:
            self._pending = ("clear", None)

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def _take_pending(self) -> tuple[str, float | None] | None:
        with self._pending_lock:
            pending, self._pending = self._pending, None
        return pending

    def neighbor_counts(self) -> np.ndarray:
        """Live-neighbour count per cell under the edge policy."""
        mode, cval = _BOUNDARY[self.edge_policy]
        ndimage.convolve(
            self._buffers[self._front].view(np.uint8),
            NEIGHBOR_KERNEL,
            output=self._counts,
            mode=mode,
            cval=cval,
        )
        return self._counts

    def step(self, rules: EffectiveRules) -> int:
        """
        Advance one generation.

        A pending reset or clear takes this tick instead of evolution.

        Args:
            rules: Parameters for this whole tick.

        Returns:
            The new generation number.
        """
        pending = self._take_pending()
        if pending is not None:
            command, density = pending
            if command == "clear":
                self.clear()
            else:
                self.reset(density)
            return self.generation

        current = self._buffers[self._front]
        nxt = self._buffers[1 - self._front]
        counts = self.neighbor_counts()

        survive = current & np.isin(counts, rules.survival_counts)
        born = ~current & np.isin(counts, BIRTH_COUNTS)

        if rules.birth_bias > 0.0:
            near = ~current & np.isin(counts, NEAR_BIRTH_COUNTS)
            born |= near & (self.rng.random(self.shape) < rules.birth_bias)

        np.logical_or(survive, born, out=nxt)

        if rules.mutation_rate > 0.0:
            # Mutated cells take a fresh fair coin instead of the rule outcome
            mutate = self.rng.random(self.shape) < rules.mutation_rate
            coin = self.rng.random(self.shape) < 0.5
            nxt[mutate] = coin[mutate]

        np.add(self._ages, 1, out=self._ages, where=nxt & (self._ages < self.max_age))
        self._ages[~nxt] = 0

        self._front = 1 - self._front
        self.generation += 1
        return self.generation

    def snapshot(
        self,
        sequence: int = 0,
        energies: BandEnergies | None = None,
        rules: EffectiveRules | None = None,
    ) -> GridSnapshot:
        """Copy the current generation into an immutable snapshot."""
        return GridSnapshot(
            cells=_frozen(self._buffers[self._front]),
            ages=_frozen(self._ages),
            generation=self.generation,
            max_age=self.max_age,
            sequence=sequence,
            energies=energies,
            rules=rules,
        )
