"""
Chemical system façade: operator-split ticks over one shared grid.

TICK
----
``simulate_tick(Δt)`` is a first-order (Lie) split with a fixed order:

    1. diffusion-decay over [t, t + Δt]   (sub-stepped at DiffusionConfig.time_step)
    2. reaction events over [t, t + Δt]   (GillespieEngine)
    3. snapshot the grid once
    4. push (events, snapshot) to subscribers

Diffusion always runs before reactions. Swapping the two changes results,
so the order is part of the public behavior.

Both sub-steps work on the same ConcentrationGrid owned by the system;
neither the solver nor the engine keeps a reference to it between calls.
External readers only ever see ``GridSnapshot`` copies.

OUT-OF-BOUNDS POLICY
--------------------
Deposits outside the lattice are ignored and samples outside it read 0.
Agents at the world edge must not crash the simulation. Unknown species
ids and invalid amounts still raise.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .cells import SpatialCellIndex
from .diffusion import DiffusionConfig, DiffusionSolver
from .events import EventLog, ReactionEvent
from .exceptions import InvalidConfigurationError
from .gillespie import GillespieConfig, GillespieEngine
from .grid import ConcentrationGrid, GridConfig, GridSnapshot
from .reactions import ReactionDefinition, ReactionNetwork
from .species import ChemicalSpecies, SpeciesRegistry

logger = logging.getLogger(__name__)


@dataclass
class ChemicalSystemConfig:
    """Top-level configuration of a chemical system.

    Parameters
    ----------
    grid : GridConfig
    diffusion : DiffusionConfig
    gillespie : GillespieConfig
    event_log_capacity : int
        Maximum number of events kept for ``recent_events``
    event_retention_time : float, optional
        Drop logged events older than this many time units
    clamp_warning_ticks : int
        Warn when clamping happens in this many consecutive ticks
    """
    grid: GridConfig = field(default_factory=GridConfig)
    diffusion: DiffusionConfig = field(default_factory=DiffusionConfig)
    gillespie: GillespieConfig = field(default_factory=GillespieConfig)
    event_log_capacity: int = 10000
    event_retention_time: Optional[float] = None
    clamp_warning_ticks: int = 10

    def __post_init__(self):
        if self.event_log_capacity < 1:
            raise InvalidConfigurationError(
                f"event_log_capacity must be >= 1, got {self.event_log_capacity}")
        if self.event_retention_time is not None and self.event_retention_time <= 0:
            raise InvalidConfigurationError(
                f"event_retention_time must be > 0, got {self.event_retention_time}")
        if self.clamp_warning_ticks < 1:
            raise InvalidConfigurationError(
                f"clamp_warning_ticks must be >= 1, got {self.clamp_warning_ticks}")


@dataclass(frozen=True)
class TickResult:
    """What one tick produced.

    ``completed`` is False when the reaction sub-step hit its event cap;
    the reaction clock then lags at ``reaction_time_reached`` and catches
    up on later ticks.
    """
    time: float
    events: Tuple[ReactionEvent, ...]
    snapshot: GridSnapshot
    reaction_time_reached: float
    completed: bool


@dataclass(frozen=True)
class SystemStatus:
    allocated: bool
    time: float
    tick_count: int
    reaction_time: float
    total_events: int
    active_cells: int
    clamp_count: int
    backend: str
    n_species: int
    n_reactions: int


Subscriber = Callable[[TickResult], None]


class ChemicalSystem:
    """Reaction-diffusion simulation of chemical species on a 2D lattice.

    Parameters
    ----------
    config : ChemicalSystemConfig, optional
    species : sequence of ChemicalSpecies
        Registered in order at construction
    reactions : sequence of ReactionDefinition
        Registered in order at construction
    rng : np.random.Generator, optional
        Injected generator for the reaction engine; by default one is
        seeded from ``config.gillespie.seed``

    Examples
    --------
    >>> system = ChemicalSystem(ChemicalSystemConfig(grid=GridConfig(10, 10)),
    ...                         species=[ChemicalSpecies("trail", "Trail", 0.15, 0.002)])
    >>> system.deposit_chemical("trail", 5.5, 5.5, 10.0)
    True
    >>> result = system.simulate_tick(0.1)
    >>> result.snapshot.total("trail") < 10.0
    True
    """

    def __init__(self, config: Optional[ChemicalSystemConfig] = None,
                 species: Sequence[ChemicalSpecies] = (),
                 reactions: Sequence[ReactionDefinition] = (),
                 rng: Optional[np.random.Generator] = None):
        self.config = config if config is not None else ChemicalSystemConfig()
        self.registry = SpeciesRegistry(species)
        self.network = ReactionNetwork(reactions)
        self.event_log = EventLog(self.config.event_log_capacity,
                                  self.config.event_retention_time)
        self.time = 0.0
        self.tick_count = 0
        self._rng = rng
        self._grid: Optional[ConcentrationGrid] = None
        self._cells: Optional[SpatialCellIndex] = None
        self._solver: Optional[DiffusionSolver] = None
        self._engine: Optional[GillespieEngine] = None
        self._snapshot: Optional[GridSnapshot] = None
        self._carried: Dict[str, np.ndarray] = {}
        self._subscribers: List[Subscriber] = []
        self._clamp_streak = 0

    # ------------------------------------------------------------------
    # Configuration and lifecycle
    # ------------------------------------------------------------------

    def register_species(self, species: ChemicalSpecies) -> int:
        """Register a species; fails with RegistryFrozenError once allocated."""
        return self.registry.register(species)

    def register_reaction(self, reaction: ReactionDefinition) -> int:
        """Register a reaction; fails with RegistryFrozenError once allocated."""
        return self.network.register(reaction)

    @property
    def allocated(self) -> bool:
        return self._grid is not None

    def allocate(self) -> None:
        """Freeze the registries and build the grid, solver and engine.

        Raises
        ------
        InvalidConfigurationError
            If a species violates the diffusion stability bound or a
            reaction references an unregistered species
        """
        if self.allocated:
            return
        cfg = self.config
        self.network.validate(self.registry)
        solver = DiffusionSolver(self.registry, cfg.grid, cfg.diffusion)
        compiled = self.network.compile(self.registry, cfg.gillespie.temperature)

        self.registry.freeze()
        self.network.freeze()
        self._solver = solver
        self._grid = ConcentrationGrid(self.registry, cfg.grid)
        self._cells = SpatialCellIndex(cfg.grid.width, cfg.grid.height, len(compiled),
                                       cfg.gillespie.activity_threshold,
                                       cfg.diffusion.stencil)
        self._engine = GillespieEngine(compiled, self.registry, cfg.grid.width,
                                       cfg.grid.height, cfg.gillespie, rng=self._rng,
                                       start_time=self.time)
        for species_id, values in self._carried.items():
            if species_id in self.registry:
                self._grid.load(self.registry.index_of(species_id), values)
        self._carried = {}
        self._snapshot = None
        logger.info("Allocated %dx%d grid (cell_size=%g) with %d species, %d reactions, "
                    "%s diffusion backend",
                    cfg.grid.width, cfg.grid.height, cfg.grid.cell_size,
                    len(self.registry), len(self.network), cfg.diffusion.backend)

    def reallocate(self) -> None:
        """Unfreeze the registries so species or reactions can be added.

        Current concentrations are kept and copied into the next
        allocation for every species that still exists. The clock and the
        event log are kept.
        """
        if self.allocated:
            self._carried = {
                sp.id: self._grid.export(idx) for idx, sp in enumerate(self.registry)
            }
        self.registry = self.registry.thaw()
        self.network = self.network.thaw()
        self._grid = None
        self._cells = None
        self._solver = None
        self._engine = None
        self._snapshot = None

    def reset(self) -> None:
        """Zero every field, the clock and the event log; reseed the engine."""
        self.time = 0.0
        self.tick_count = 0
        self._clamp_streak = 0
        self._carried = {}
        self.event_log.clear()
        if self.allocated:
            self._grid.clear()
            self._grid.clamp_count = 0
            self._grid.pop_tick_clamps()
            self._cells.reset()
            self._engine.reset()
        self._snapshot = None

    def _require_grid(self) -> ConcentrationGrid:
        if not self.allocated:
            self.allocate()
        return self._grid

    @property
    def grid_config(self) -> GridConfig:
        return self.config.grid

    @property
    def engine(self) -> GillespieEngine:
        self._require_grid()
        return self._engine

    @property
    def solver(self) -> DiffusionSolver:
        self._require_grid()
        return self._solver

    # ------------------------------------------------------------------
    # Point operations
    # ------------------------------------------------------------------

    def deposit_chemical(self, species_id: str, world_x: float, world_y: float,
                         amount: float) -> bool:
        """Add ``amount`` of a species at a world position.

        Returns False (and changes nothing) when the position is outside
        the lattice.
        """
        grid = self._require_grid()
        index = self.registry.index_of(species_id)
        if not math.isfinite(amount) or amount < 0:
            raise ValueError(f"Deposit amount must be finite and >= 0, got {amount}")
        cell = self.config.grid.cell_of(world_x, world_y)
        if cell is None:
            logger.debug("Ignoring deposit of %s at (%g, %g): outside the grid",
                         species_id, world_x, world_y)
            return False
        grid.add(index, cell[0], cell[1], amount)
        self._snapshot = None
        return True

    def sample_concentration(self, species_id: str, world_x: float, world_y: float) -> float:
        """Concentration at a world position; 0.0 outside the lattice."""
        snapshot = self.snapshot()
        index = self.registry.index_of(species_id)
        cell = self.config.grid.cell_of(world_x, world_y)
        if cell is None:
            return 0.0
        return float(snapshot.data[index, cell[1], cell[0]])

    def sample_gradient(self, species_id: str, world_x: float,
                        world_y: float) -> Tuple[float, float]:
        """Central-difference gradient (d/dx, d/dy) in concentration per world unit.

        Returns (0.0, 0.0) on the border cells and outside the lattice.
        """
        snapshot = self.snapshot()
        index = self.registry.index_of(species_id)
        cell = self.config.grid.cell_of(world_x, world_y)
        if cell is None:
            return 0.0, 0.0
        x, y = cell
        width, height = self.config.grid.width, self.config.grid.height
        if x <= 0 or x >= width - 1 or y <= 0 or y >= height - 1:
            return 0.0, 0.0
        c = snapshot.data[index]
        h2 = 2.0 * self.config.grid.cell_size
        return (float((c[y, x + 1] - c[y, x - 1]) / h2),
                float((c[y + 1, x] - c[y - 1, x]) / h2))

    def gradient_field(self, species_id: str) -> Tuple[np.ndarray, np.ndarray]:
        """Full-lattice (gx, gy) arrays, zero on the border cells."""
        snapshot = self.snapshot()
        c = snapshot.data[self.registry.index_of(species_id)]
        gx = np.zeros_like(c)
        gy = np.zeros_like(c)
        h2 = 2.0 * self.config.grid.cell_size
        gx[1:-1, 1:-1] = (c[1:-1, 2:] - c[1:-1, :-2]) / h2
        gy[1:-1, 1:-1] = (c[2:, 1:-1] - c[:-2, 1:-1]) / h2
        return gx, gy

    # ------------------------------------------------------------------
    # Whole-field access
    # ------------------------------------------------------------------

    def snapshot(self) -> GridSnapshot:
        """Read-only copy of all fields at the current time."""
        grid = self._require_grid()
        if self._snapshot is None:
            self._snapshot = grid.snapshot(self.time)
        return self._snapshot

    def concentration_array(self, species_id: str) -> np.ndarray:
        """Copy of one species field, shape (height, width)."""
        grid = self._require_grid()
        return grid.export(self.registry.index_of(species_id))

    def set_concentration_array(self, species_id: str, values: np.ndarray) -> int:
        """Replace one species field from a plain array; returns values clamped."""
        grid = self._require_grid()
        n_clamped = grid.load(self.registry.index_of(species_id), values)
        self._snapshot = None
        return n_clamped

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Push every TickResult to ``callback``; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def simulate_tick(self, delta_time: float) -> TickResult:
        """Advance the system by ``delta_time``: diffusion, then reactions."""
        if not math.isfinite(delta_time) or delta_time < 0:
            raise ValueError(f"delta_time must be finite and >= 0, got {delta_time}")
        grid = self._require_grid()
        engine = self._engine

        if delta_time == 0:
            return TickResult(
                time=self.time,
                events=(),
                snapshot=self.snapshot(),
                reaction_time_reached=engine.time,
                completed=engine.time >= self.time,
            )

        end_time = self.time + delta_time
        n_sub = self._solver.substeps(delta_time)
        sub_dt = delta_time / n_sub
        for _ in range(n_sub):
            mask = None
            if self.config.diffusion.sparse:
                self._cells.refresh_activity(grid)
                mask = self._cells.diffusion_mask()
            self._solver.step_all(grid, sub_dt, mask)

        step = engine.simulate_until(grid, self._cells, end_time)

        self.time = end_time
        self.tick_count += 1
        self.event_log.extend(step.events, now=end_time)
        self._track_clamps(grid.pop_tick_clamps())
        self._snapshot = grid.snapshot(end_time)

        result = TickResult(
            time=end_time,
            events=step.events,
            snapshot=self._snapshot,
            reaction_time_reached=step.time_reached,
            completed=step.completed,
        )
        logger.debug("Tick %d: t=%.6g, %d events, %d active cells",
                     self.tick_count, end_time, step.events_fired, self._cells.active_count)
        for callback in list(self._subscribers):
            callback(result)
        return result

    def _track_clamps(self, n_clamped: int) -> None:
        if n_clamped == 0:
            self._clamp_streak = 0
            return
        self._clamp_streak += 1
        if self._clamp_streak % self.config.clamp_warning_ticks == 0:
            logger.warning(
                "Negative concentrations clamped in %d consecutive ticks "
                "(%d values this tick); the time step may be too large",
                self._clamp_streak, n_clamped)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def recent_events(self, count: int = 100) -> List[ReactionEvent]:
        return self.event_log.recent(count)

    def status(self) -> SystemStatus:
        allocated = self.allocated
        return SystemStatus(
            allocated=allocated,
            time=self.time,
            tick_count=self.tick_count,
            reaction_time=self._engine.time if allocated else self.time,
            total_events=self.event_log.total_recorded,
            active_cells=self._cells.active_count if allocated else 0,
            clamp_count=self._grid.clamp_count if allocated else 0,
            backend=self.config.diffusion.backend,
            n_species=len(self.registry),
            n_reactions=len(self.network),
        )
