"""
Concentration grids and read-only snapshots.

All species share one ``(n_species, height, width)`` float64 array, indexed
``[species, y, x]`` (row-major, y down the rows). Every write path clamps
negative values to zero and counts how many values it had to clamp; the
counter is a diagnostic for solver instability, not an error.

World coordinates map onto cells with ``floor(coord / cell_size)``.
"""

import math
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np

from .exceptions import InvalidConfigurationError, UnknownSpeciesError
from .species import SpeciesRegistry


@dataclass
class GridConfig:
    """Lattice geometry.

    Parameters
    ----------
    width, height : int
        Number of cells along x and y
    cell_size : float
        Edge length of one cell in world units
    """
    width: int = 64
    height: int = 64
    cell_size: float = 1.0

    def __post_init__(self):
        if int(self.width) < 1 or int(self.height) < 1:
            raise InvalidConfigurationError(
                f"Grid must be at least 1x1, got {self.width}x{self.height}"
            )
        if not math.isfinite(self.cell_size) or self.cell_size <= 0:
            raise InvalidConfigurationError(f"cell_size must be > 0, got {self.cell_size}")
        self.width = int(self.width)
        self.height = int(self.height)

    @property
    def shape(self) -> Tuple[int, int]:
        """(height, width), the numpy shape of one species field."""
        return (self.height, self.width)

    @property
    def n_cells(self) -> int:
        return self.width * self.height

    def cell_of(self, world_x: float, world_y: float) -> Optional[Tuple[int, int]]:
        """Map world coordinates to an (x, y) cell, or None when out of bounds."""
        if not (math.isfinite(world_x) and math.isfinite(world_y)):
            raise ValueError(f"World coordinates must be finite, got ({world_x}, {world_y})")
        gx = math.floor(world_x / self.cell_size)
        gy = math.floor(world_y / self.cell_size)
        if 0 <= gx < self.width and 0 <= gy < self.height:
            return gx, gy
        return None


def clamp_negative(values: np.ndarray) -> int:
    """Set negative entries to zero in place and return how many were changed."""
    negative = values < 0.0
    n_clamped = int(np.count_nonzero(negative))
    if n_clamped:
        values[negative] = 0.0
    return n_clamped


@dataclass(frozen=True)
class GridSnapshot:
    """Read-only copy of every species field at one simulated time.

    Attributes
    ----------
    time : float
        Simulated time of the snapshot
    species_ids : tuple of str
        Species order of the first axis of ``data``
    cell_size : float
        Edge length of one cell in world units
    data : ndarray
        Non-writeable array of shape (n_species, height, width)
    """
    time: float
    species_ids: Tuple[str, ...]
    cell_size: float
    data: np.ndarray = field(repr=False, compare=False)

    def field(self, species_id: str) -> np.ndarray:
        try:
            return self.data[self.species_ids.index(species_id)]
        except ValueError:
            raise UnknownSpeciesError(species_id) from None

    def total(self, species_id: Optional[str] = None) -> float:
        if species_id is None:
            return float(self.data.sum())
        return float(self.field(species_id).sum())

    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape[1:]


class ConcentrationGrid:
    """Per-species 2D concentration fields with non-negativity enforced.

    Dimensions, cell size and the species set are fixed at construction.

    Parameters
    ----------
    registry : SpeciesRegistry
        Frozen species catalog; its order defines the first array axis
    config : GridConfig
        Lattice geometry

    Attributes
    ----------
    clamp_count : int
        Total number of values clamped to zero since allocation
    """

    def __init__(self, registry: SpeciesRegistry, config: GridConfig):
        self.registry = registry
        self.config = config
        self._data = np.zeros((len(registry), config.height, config.width))
        self.clamp_count = 0
        self._tick_clamps = 0

    @property
    def width(self) -> int:
        return self.config.width

    @property
    def height(self) -> int:
        return self.config.height

    @property
    def cell_size(self) -> float:
        return self.config.cell_size

    @property
    def n_species(self) -> int:
        return self._data.shape[0]

    @property
    def data(self) -> np.ndarray:
        """Live array. Only solver sub-steps may write through it."""
        return self._data

    def field(self, index: int) -> np.ndarray:
        """Live view of one species field, shape (height, width)."""
        return self._data[index]

    def replace_field(self, index: int, new_values: np.ndarray) -> int:
        """Swap in the result of a double-buffered update.

        ``new_values`` is clamped before it is committed. Returns the number
        of values clamped.
        """
        if new_values.shape != self.config.shape:
            raise ValueError(
                f"Field shape {new_values.shape} does not match grid {self.config.shape}"
            )
        n_clamped = clamp_negative(new_values)
        self._data[index] = new_values
        self.record_clamps(n_clamped)
        return n_clamped

    def value(self, index: int, x: int, y: int) -> float:
        return float(self._data[index, y, x])

    def add(self, index: int, x: int, y: int, amount: float) -> float:
        """Add ``amount`` (possibly negative) at a cell, clamping at zero."""
        new_value = self._data[index, y, x] + amount
        if new_value < 0.0:
            new_value = 0.0
            self.record_clamps(1)
        self._data[index, y, x] = new_value
        return float(new_value)

    def load(self, index: int, values: np.ndarray) -> int:
        """Copy an external array into a species field (persistence contract)."""
        values = np.array(values, dtype=float, copy=True)
        return self.replace_field(index, values)

    def export(self, index: int) -> np.ndarray:
        return self._data[index].copy()

    def clear(self) -> None:
        self._data.fill(0.0)

    def activity(self) -> np.ndarray:
        """Sum of all species concentrations per cell, shape (height, width)."""
        return self._data.sum(axis=0)

    def total_mass(self, index: Optional[int] = None) -> float:
        if index is None:
            return float(self._data.sum())
        return float(self._data[index].sum())

    def snapshot(self, time: float) -> GridSnapshot:
        data = self._data.copy()
        data.setflags(write=False)
        return GridSnapshot(
            time=time,
            species_ids=self.registry.ids,
            cell_size=self.config.cell_size,
            data=data,
        )

    def record_clamps(self, n_clamped: int) -> None:
        self.clamp_count += n_clamped
        self._tick_clamps += n_clamped

    def pop_tick_clamps(self) -> int:
        """Return and reset the clamp counter for the current tick."""
        n_clamped = self._tick_clamps
        self._tick_clamps = 0
        return n_clamped
