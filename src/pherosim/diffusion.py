"""
Explicit diffusion-decay solver on the concentration lattice.

GOVERNING EQUATION
------------------
Each species field c(r,t) obeys

    ∂ₜc = D·∇²c - k·c

with diffusion coefficient D and decay rate k, integrated with forward
Euler:

    c' = c + Δt·(D·L[c] - k·c),    then clamped to c' >= 0

STENCIL
-------
The discrete Laplacian is a weighted sum of differences to the in-range
neighbors:

    L[c]ᵢ = Σⱼ wⱼ·(cⱼ - cᵢ) / h²

    4-neighbor:  w = 1 for the cardinal neighbors
    8-neighbor:  w = 4/6 cardinal, 1/6 diagonal (the 9-point stencil
                 (4Σc_card + Σc_diag - 20c)/(6h²) in the interior)

BOUNDARY (no-flux)
------------------
Neighbors outside the grid are omitted together with their paired
-cᵢ term: no wrapping, no mirroring. Every flux term appears once with
each sign, so total mass is conserved exactly when k = 0.

STABILITY
---------
The explicit update is positivity preserving and stable when

    Δt·D / h² <= 0.25

The solver checks this for every species at construction (with the
configured time step) and before every step, raising
InvalidConfigurationError instead of diverging.

SPARSE UPDATE
-------------
With an activity mask only masked cells change, and a flux term is kept
only when both of its cells are masked:

    L_M[c]ᵢ = Σⱼ wⱼ·mⱼ·(cⱼ - cᵢ) / h²    for i in M

The masked subsystem is itself a no-flux domain, so mass is conserved
whether or not a mask is used.

BACKENDS
--------
    convolution  whole-field scipy.ndimage.correlate (the data-parallel
                 convolution operator)
    parallel     the same convolution split into row bands evaluated by a
                 thread pool (one pool per step_all call); each band reads
                 a one-row halo of the frozen input
    sequential   per-cell Python loop, the reference implementation

All backends read only the previous field and write only to a fresh
array; the grid swaps the result in after the step.
"""

import logging
import math
import warnings
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
from scipy import ndimage

from .exceptions import InvalidConfigurationError
from .grid import ConcentrationGrid, GridConfig
from .species import SpeciesRegistry

logger = logging.getLogger(__name__)

MAX_STABILITY_NUMBER = 0.25


def stencil_kernel(stencil: int) -> np.ndarray:
    """Neighbor weights (center weight zero) for a 4- or 8-neighbor stencil."""
    if stencil == 4:
        return np.array([[0.0, 1.0, 0.0],
                         [1.0, 0.0, 1.0],
                         [0.0, 1.0, 0.0]])
    if stencil == 8:
        return np.array([[1.0, 4.0, 1.0],
                         [4.0, 0.0, 4.0],
                         [1.0, 4.0, 1.0]]) / 6.0
    raise InvalidConfigurationError(f"Stencil must be 4 or 8, got {stencil}")


@dataclass
class DiffusionConfig:
    """Configuration for the diffusion sub-step.

    Parameters
    ----------
    time_step : float
        Largest diffusion step; longer ticks are split into sub-steps
    stencil : int
        4 or 8 neighbor Laplacian
    backend : str
        'convolution', 'parallel' or 'sequential'
    workers : int
        Thread count for the parallel backend
    max_stability_number : float
        Upper bound for Δt·D/h²; may be tightened below 0.25, never raised
    sparse : bool
        Only update active cells and their one-cell halo
    """
    time_step: float = 0.1
    stencil: int = 4
    backend: str = "convolution"
    workers: int = 4
    max_stability_number: float = MAX_STABILITY_NUMBER
    sparse: bool = True

    def __post_init__(self):
        if not math.isfinite(self.time_step) or self.time_step <= 0:
            raise InvalidConfigurationError(f"time_step must be > 0, got {self.time_step}")
        if not 0 < self.max_stability_number <= MAX_STABILITY_NUMBER:
            raise InvalidConfigurationError(
                f"max_stability_number must be in (0, {MAX_STABILITY_NUMBER}], "
                f"got {self.max_stability_number}"
            )
        if self.backend not in BACKENDS:
            raise InvalidConfigurationError(
                f"Unknown diffusion backend {self.backend!r}; choose from {sorted(BACKENDS)}"
            )
        if self.workers < 1:
            raise InvalidConfigurationError(f"workers must be >= 1, got {self.workers}")
        stencil_kernel(self.stencil)


@dataclass(frozen=True)
class StencilParams:
    diffusion_rate: float
    decay_rate: float
    time_step: float
    cell_size: float


class DiffusionBackend:
    """Computes one explicit step of one field into a fresh array.

    With a mask, only cells inside it are updated and only pairs of cells
    that are both inside it exchange flux, so the masked step conserves
    mass exactly like the full one.
    """

    name = "base"

    def __init__(self, stencil: int = 4):
        self.stencil = stencil
        self.kernel = stencil_kernel(stencil)
        self._weight_cache = {}

    @contextmanager
    def session(self):
        """Scope for resources shared by several steps (none by default)."""
        yield self

    def neighbor_weights(self, shape) -> np.ndarray:
        """Σ wⱼ over in-range neighbors of every cell."""
        if shape not in self._weight_cache:
            self._weight_cache[shape] = ndimage.correlate(
                np.ones(shape), self.kernel, mode='constant', cval=0.0)
        return self._weight_cache[shape]

    def neighbor_sum(self, field: np.ndarray) -> np.ndarray:
        """Σ wⱼ·cⱼ over in-range neighbors of every cell."""
        raise NotImplementedError

    def laplacian(self, field: np.ndarray, cell_size: float,
                  mask: Optional[np.ndarray] = None) -> np.ndarray:
        if mask is None:
            neighbor_sum = self.neighbor_sum(field)
            weights = self.neighbor_weights(field.shape)
        else:
            inside = mask.astype(float)
            neighbor_sum = self.neighbor_sum(field * inside)
            weights = self.neighbor_sum(inside)
        return (neighbor_sum - weights * field) / cell_size**2

    def step(self, field: np.ndarray, params: StencilParams,
             mask: Optional[np.ndarray] = None) -> np.ndarray:
        lap = self.laplacian(field, params.cell_size, mask)
        updated = field + params.time_step * (
            params.diffusion_rate * lap - params.decay_rate * field)
        if mask is not None:
            updated = np.where(mask, updated, field)
        return updated


class ConvolutionBackend(DiffusionBackend):
    """Whole-field convolution with scipy.ndimage."""

    name = "convolution"

    def neighbor_sum(self, field: np.ndarray) -> np.ndarray:
        return ndimage.correlate(field, self.kernel, mode='constant', cval=0.0)


class ParallelBackend(DiffusionBackend):
    """Row-band decomposition of the convolution over a thread pool.

    The pool lives for one ``session``; a step outside a session opens
    and closes its own.
    """

    name = "parallel"

    def __init__(self, stencil: int = 4, workers: int = 4):
        super().__init__(stencil)
        self.workers = workers
        self._pool = None

    @contextmanager
    def session(self):
        if self._pool is not None:
            yield self
            return
        self._pool = ThreadPoolExecutor(max_workers=self.workers)
        try:
            yield self
        finally:
            self._pool.shutdown()
            self._pool = None

    def _band(self, field: np.ndarray, out: np.ndarray, y0: int, y1: int) -> None:
        lo = max(0, y0 - 1)
        hi = min(field.shape[0], y1 + 1)
        neighbor_sum = ndimage.correlate(field[lo:hi], self.kernel, mode='constant', cval=0.0)
        out[y0:y1] = neighbor_sum[y0 - lo:y0 - lo + (y1 - y0)]

    def neighbor_sum(self, field: np.ndarray) -> np.ndarray:
        height = field.shape[0]
        n_bands = min(self.workers, height)
        edges = np.linspace(0, height, n_bands + 1).astype(int)
        out = np.empty_like(field)
        with self.session():
            futures = [
                self._pool.submit(self._band, field, out, int(y0), int(y1))
                for y0, y1 in zip(edges[:-1], edges[1:]) if y1 > y0
            ]
            for future in futures:
                future.result()
        return out


class SequentialBackend(DiffusionBackend):
    """Cell-by-cell reference implementation."""

    name = "sequential"

    def laplacian(self, field: np.ndarray, cell_size: float,
                  mask: Optional[np.ndarray] = None) -> np.ndarray:
        height, width = field.shape
        out = np.zeros_like(field)
        offsets = [(dy - 1, dx - 1, self.kernel[dy, dx])
                   for dy in range(3) for dx in range(3) if self.kernel[dy, dx] != 0.0]
        for y in range(height):
            for x in range(width):
                if mask is not None and not mask[y, x]:
                    continue
                center = field[y, x]
                total = 0.0
                for oy, ox, w in offsets:
                    ny, nx = y + oy, x + ox
                    if not (0 <= ny < height and 0 <= nx < width):
                        continue
                    if mask is not None and not mask[ny, nx]:
                        continue
                    total += w * (field[ny, nx] - center)
                out[y, x] = total / cell_size**2
        return out


BACKENDS = {
    "convolution": ConvolutionBackend,
    "parallel": ParallelBackend,
    "sequential": SequentialBackend,
}


def create_backend(name: str, stencil: int = 4, workers: int = 4) -> DiffusionBackend:
    if name == "parallel":
        return ParallelBackend(stencil, workers)
    try:
        return BACKENDS[name](stencil)
    except KeyError:
        raise InvalidConfigurationError(
            f"Unknown diffusion backend {name!r}; choose from {sorted(BACKENDS)}"
        ) from None


class DiffusionSolver:
    """Advances species fields by explicit diffusion-decay steps.

    Parameters
    ----------
    registry : SpeciesRegistry
        Species catalog providing D and k per dense index
    grid_config : GridConfig
        Lattice geometry (cell size enters the stability number)
    config : DiffusionConfig
        Step size, stencil and backend

    Raises
    ------
    InvalidConfigurationError
        If any species violates Δt·D/h² <= max_stability_number

    Examples
    --------
    >>> solver = DiffusionSolver(registry, GridConfig(10, 10, 1.0), DiffusionConfig(time_step=1.0))
    >>> solver.step(0, grid, 1.0)
    """

    def __init__(self, registry: SpeciesRegistry, grid_config: GridConfig,
                 config: Optional[DiffusionConfig] = None):
        self.registry = registry
        self.grid_config = grid_config
        self.config = config if config is not None else DiffusionConfig()
        self.backend = create_backend(self.config.backend, self.config.stencil,
                                      self.config.workers)
        for index in range(len(registry)):
            self.check_stability(index, self.config.time_step)
            species = registry.get(index)
            if species.decay_rate * self.config.time_step >= 1.0:
                warnings.warn(
                    f"Species {species.id!r}: decay_rate * time_step = "
                    f"{species.decay_rate * self.config.time_step:.3f} >= 1; "
                    "every step will clamp the field to zero.",
                    RuntimeWarning
                )

    def stability_number(self, species_index: int, time_step: float) -> float:
        """Δt·D/h² for one species."""
        species = self.registry.get(species_index)
        return time_step * species.diffusion_rate / self.grid_config.cell_size**2

    def max_stable_time_step(self, species_index: int) -> float:
        species = self.registry.get(species_index)
        if species.diffusion_rate == 0:
            return math.inf
        return (self.config.max_stability_number * self.grid_config.cell_size**2
                / species.diffusion_rate)

    def check_stability(self, species_index: int, time_step: float) -> None:
        number = self.stability_number(species_index, time_step)
        if number > self.config.max_stability_number * (1.0 + 1e-9):
            species = self.registry.get(species_index)
            raise InvalidConfigurationError(
                f"Species {species.id!r} is unstable: dt*D/h^2 = {number:.4f} > "
                f"{self.config.max_stability_number}. Use dt <= "
                f"{self.max_stable_time_step(species_index):.6g}."
            )

    def substeps(self, delta_time: float) -> int:
        """Number of equal sub-steps needed to cover ``delta_time``."""
        if delta_time <= 0:
            return 0
        return max(1, math.ceil(delta_time / self.config.time_step - 1e-9))

    def step(self, species_index: Union[int, str], grid: ConcentrationGrid,
             delta_time: float, mask: Optional[np.ndarray] = None) -> ConcentrationGrid:
        """Advance one species field by ``delta_time`` (a single explicit step).

        ``species_index`` may be a dense index or a registered species id.
        """
        if isinstance(species_index, str):
            species_index = self.registry.index_of(species_index)
        if delta_time < 0 or not math.isfinite(delta_time):
            raise ValueError(f"delta_time must be finite and >= 0, got {delta_time}")
        if delta_time == 0:
            return grid
        self.check_stability(species_index, delta_time)
        species = self.registry.get(species_index)
        params = StencilParams(
            diffusion_rate=species.diffusion_rate,
            decay_rate=species.decay_rate,
            time_step=delta_time,
            cell_size=grid.cell_size,
        )
        previous = grid.field(species_index)
        with self.backend.session():
            updated = self.backend.step(previous, params, mask)
        grid.replace_field(species_index, updated)
        return grid

    def step_all(self, grid: ConcentrationGrid, delta_time: float,
                 mask: Optional[np.ndarray] = None) -> ConcentrationGrid:
        with self.backend.session():
            for index in range(grid.n_species):
                self.step(index, grid, delta_time, mask)
        return grid
