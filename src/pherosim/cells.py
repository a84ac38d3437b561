"""
Spatial cell index: per-cell propensity cache and activity pruning.

A cell is active while the sum of its species concentrations exceeds
``activity_threshold``. Inactive cells carry zero propensity and are
skipped by the reaction sub-step. Diffusion is still applied to the
one-cell halo around every active cell (``diffusion_mask``) so that
neighbors keep receiving inbound mass; the halo follows the stencil
shape (cross for 4-neighbor, full 3×3 block for 8-neighbor).

Flux is only exchanged between two masked cells, so a sparse step
conserves mass exactly. Cells outside the mask hold at most
``activity_threshold`` in total and are left unchanged, which bounds the
difference from a dense step by that threshold per cell.
"""

from dataclasses import dataclass
from typing import List, Tuple

import numpy as np
from scipy import ndimage

from .exceptions import InvalidConfigurationError
from .grid import ConcentrationGrid


@dataclass
class SpatialCell:
    """View of one lattice cell.

    ``concentrations`` and ``propensities`` are live views into the grid
    and the index arrays; they are only valid until the next sub-step.
    """
    position: Tuple[int, int]
    concentrations: np.ndarray
    propensities: np.ndarray
    active: bool
    last_propensity_update: float


@dataclass(frozen=True)
class Partition:
    """Rectangular block of cells simulated with its own random stream."""
    index: int
    y0: int
    y1: int
    x0: int
    x1: int

    @property
    def slices(self) -> Tuple[slice, slice]:
        return slice(self.y0, self.y1), slice(self.x0, self.x1)

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.y1 - self.y0, self.x1 - self.x0)

    def contains(self, x: int, y: int) -> bool:
        return self.y0 <= y < self.y1 and self.x0 <= x < self.x1


class SpatialCellIndex:
    """Lattice of cells caching activity, propensities and update times.

    Parameters
    ----------
    width, height : int
        Lattice size
    n_reactions : int
        Number of registered reactions
    activity_threshold : float
        Cells whose total concentration is at or below this are inactive
    stencil : int
        4 or 8; shapes the diffusion halo

    Attributes
    ----------
    active : ndarray of bool, shape (height, width)
    propensities : ndarray, shape (height, width, n_reactions)
        Row-major cell order, then reaction registration order, which is
        the fixed walk order for event selection
    last_update : ndarray, shape (height, width)
        Simulated time of the last propensity recomputation
    """

    def __init__(self, width: int, height: int, n_reactions: int,
                 activity_threshold: float = 1e-6, stencil: int = 4):
        if activity_threshold < 0:
            raise InvalidConfigurationError(
                f"activity_threshold must be >= 0, got {activity_threshold}")
        self.width = width
        self.height = height
        self.n_reactions = n_reactions
        self.activity_threshold = activity_threshold
        self.active = np.zeros((height, width), dtype=bool)
        self.propensities = np.zeros((height, width, n_reactions))
        self.last_update = np.zeros((height, width))
        if stencil == 8:
            self._halo = np.ones((3, 3), dtype=bool)
        else:
            self._halo = ndimage.generate_binary_structure(2, 1)

    def refresh_activity(self, grid: ConcentrationGrid) -> int:
        """Recompute activity flags from the grid; returns the active count."""
        self.active = grid.activity() > self.activity_threshold
        self.propensities[~self.active] = 0.0
        return int(np.count_nonzero(self.active))

    def is_active(self, concentrations: np.ndarray) -> bool:
        return float(concentrations.sum()) > self.activity_threshold

    def diffusion_mask(self) -> np.ndarray:
        """Active cells dilated by one cell (the diffusion halo)."""
        if not self.active.any():
            return self.active.copy()
        return ndimage.binary_dilation(self.active, structure=self._halo)

    def cell(self, grid: ConcentrationGrid, x: int, y: int) -> SpatialCell:
        return SpatialCell(
            position=(x, y),
            concentrations=grid.data[:, y, x],
            propensities=self.propensities[y, x],
            active=bool(self.active[y, x]),
            last_propensity_update=float(self.last_update[y, x]),
        )

    @property
    def active_count(self) -> int:
        return int(np.count_nonzero(self.active))

    def reset(self) -> None:
        self.active[:] = False
        self.propensities[:] = 0.0
        self.last_update[:] = 0.0


def partition_lattice(width: int, height: int, px: int, py: int) -> List[Partition]:
    """Split a lattice into up to px × py blocks of ceil-sized cells.

    Blocks are numbered row-major; blocks that would be empty are dropped.
    """
    if px < 1 or py < 1:
        raise InvalidConfigurationError(f"Partition counts must be >= 1, got {(px, py)}")
    block_w = -(-width // px)
    block_h = -(-height // py)
    blocks = []
    for y0 in range(0, height, block_h):
        for x0 in range(0, width, block_w):
            blocks.append(Partition(
                index=len(blocks),
                y0=y0, y1=min(height, y0 + block_h),
                x0=x0, x1=min(width, x0 + block_w),
            ))
    return blocks
