"""
Spatial Gillespie engine (exact stochastic simulation algorithm).

DIRECT METHOD
-------------
Over the ordered list of (cell, reaction) pairs with propensities aᵢ and
total Λ = Σ aᵢ, one call to ``simulate_step(Δt)`` starting at t₀ runs:

    1. ComputingPropensities   recompute aᵢ for every active cell
    2. if Λ == 0               t ← t₀ + Δt, done
    3. AwaitingNextEvent       τ = -ln(r₁)/Λ, r₁ ~ U(0, 1]
                               if t + τ > t₀ + Δt: t ← t₀ + Δt, done
    4. Firing                  r₂ ~ U[0, Λ); fire the first pair whose
                               running sum exceeds r₂; t ← t + τ; go to 1

Pairs are walked in row-major cell order, then reaction registration
order. After an event only the fired cell's concentrations change, so
step 1 refreshes that cell (and, when the neighbor coupling is spatial,
its 3×3 neighborhood); every other cached propensity is still exact.

EVENT CAP
---------
At most ``max_events_per_step`` events fire per partition and call. When
the cap is hit the clock stops at the last fired event and the returned
``StepResult.completed`` is False; calling again continues from there.

SPATIAL PARTITIONS
------------------
With ``partitions=(px, py)`` the lattice is cut into blocks that each run
their own direct method with an independent random stream spawned from
the seed. This is an approximation: each block only sees its own total
propensity, and the neighbor coupling reads concentrations frozen at the
start of the call, so interactions across block edges lag by one call.
Blocks write disjoint cells, which keeps threaded execution
deterministic. Larger blocks are more exact; more blocks expose more
parallelism.
Each block tracks its own phase; the engine-level phase is only changed
by the calling thread.
"""

import logging
import math
import time as wallclock
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .cells import Partition, SpatialCellIndex, partition_lattice
from .events import ReactionEvent
from .exceptions import InvalidConfigurationError
from .grid import ConcentrationGrid
from .reactions import (
    CompiledReaction,
    NeighborCoupling,
    PropensityModel,
    create_coupling,
)
from .species import SpeciesRegistry

logger = logging.getLogger(__name__)


class EngineState(Enum):
    IDLE = "idle"
    COMPUTING_PROPENSITIES = "computing_propensities"
    AWAITING_NEXT_EVENT = "awaiting_next_event"
    FIRING = "firing"
    STEP_COMPLETE = "step_complete"


@dataclass
class GillespieConfig:
    """Configuration for the reaction sub-step.

    Parameters
    ----------
    seed : int
        Seed of the pseudo-random generator
    max_events_per_step : int
        Event cap per partition and call
    partitions : tuple of int
        (px, py) block counts; (1, 1) is the exact single-domain algorithm
    workers : int
        Threads used to run partitions (only when there are several)
    activity_threshold : float
        Cells with total concentration at or below this are skipped
    molecule_scale : float
        Concentration → molecule count calibration constant
    propensity_law : str
        'power' (n^ν) or 'combinatorial' (falling factorial)
    temperature : float, optional
        Ambient temperature in K; None evaluates each reaction at its
        reference temperature
    neighbor_coupling : str
        'none' or 'tanh'
    coupling_strength, coupling_midpoint : float
        Parameters of the 'tanh' coupling
    """
    seed: int = 12345
    max_events_per_step: int = 10000
    partitions: Tuple[int, int] = (1, 1)
    workers: int = 1
    activity_threshold: float = 1e-6
    molecule_scale: float = 1000.0
    propensity_law: str = "power"
    temperature: Optional[float] = None
    neighbor_coupling: str = "none"
    coupling_strength: float = 0.1
    coupling_midpoint: float = 0.5

    def __post_init__(self):
        self.partitions = tuple(int(p) for p in self.partitions)
        if len(self.partitions) != 2 or min(self.partitions) < 1:
            raise InvalidConfigurationError(
                f"partitions must be two positive integers, got {self.partitions}")
        if self.max_events_per_step < 1:
            raise InvalidConfigurationError(
                f"max_events_per_step must be >= 1, got {self.max_events_per_step}")
        if self.workers < 1:
            raise InvalidConfigurationError(f"workers must be >= 1, got {self.workers}")
        if self.temperature is not None and self.temperature <= 0:
            raise InvalidConfigurationError(
                f"temperature must be > 0 K, got {self.temperature}")

    def build_coupling(self) -> NeighborCoupling:
        if self.neighbor_coupling == "tanh":
            return create_coupling("tanh", strength=self.coupling_strength,
                                   midpoint=self.coupling_midpoint)
        return create_coupling(self.neighbor_coupling)


@dataclass(frozen=True)
class StepResult:
    """Outcome of one reaction sub-step.

    ``time_reached`` equals ``target_time`` unless the event cap stopped a
    partition early; callers must check ``completed``.
    """
    events: Tuple[ReactionEvent, ...]
    start_time: float
    target_time: float
    time_reached: float

    @property
    def completed(self) -> bool:
        return self.time_reached >= self.target_time

    @property
    def events_fired(self) -> int:
        return len(self.events)


@dataclass(frozen=True)
class GillespieState:
    """Summary of the engine for status displays."""
    time: float
    total_events: int
    active_cells: int
    mean_propensity: float
    events_per_time_unit: float
    last_step_seconds: float
    phase: EngineState
    partition_phases: Tuple[EngineState, ...] = ()


@dataclass
class _Stream:
    partition: Partition
    rng: np.random.Generator
    time: float = 0.0
    events: List[ReactionEvent] = field(default_factory=list)
    clamps: int = 0
    phase: EngineState = EngineState.IDLE


class GillespieEngine:
    """Exact stochastic reaction events over a spatial cell index.

    The engine owns its clock(s) and random streams only. The grid and
    cell index are passed into every call and are not retained.

    Parameters
    ----------
    reactions : sequence of CompiledReaction
        Network compiled against ``registry``
    registry : SpeciesRegistry
        Species catalog (for event records)
    width, height : int
        Lattice size, used to lay out partitions
    config : GillespieConfig, optional
    rng : np.random.Generator, optional
        Injected generator. With several partitions, child generators are
        spawned from it; otherwise it is used directly.
    start_time : float
        Initial clock value (used when a system is reallocated mid-run)

    Examples
    --------
    >>> engine = GillespieEngine(network.compile(registry), registry, 10, 10,
    ...                          GillespieConfig(seed=42))
    >>> result = engine.simulate_step(grid, cells, 5.0)
    >>> result.completed
    True
    """

    def __init__(self, reactions: Sequence[CompiledReaction], registry: SpeciesRegistry,
                 width: int, height: int, config: Optional[GillespieConfig] = None,
                 rng: Optional[np.random.Generator] = None, start_time: float = 0.0):
        self.config = config if config is not None else GillespieConfig()
        self.registry = registry
        self.width = width
        self.height = height
        self.model = PropensityModel(reactions, self.config.molecule_scale,
                                     self.config.propensity_law)
        self.coupling = self.config.build_coupling()
        self.partitions = partition_lattice(width, height, *self.config.partitions)
        self._event_terms = [
            (
                tuple((registry.get(int(i)).id, int(n))
                      for i, n in zip(r.reactant_indices, r.reactant_stoichiometry)),
                tuple((registry.get(int(i)).id, int(n))
                      for i, n in zip(r.product_indices, r.product_stoichiometry)),
            )
            for r in self.model.reactions
        ]
        self._injected_rng = rng
        self.phase = EngineState.IDLE
        self.total_events = 0
        self._active_cells = 0
        self._mean_propensity = 0.0
        self._events_per_time = 0.0
        self._last_step_seconds = 0.0
        self._streams = self._make_streams(self.config.seed, rng)
        for stream in self._streams:
            stream.time = start_time

    def _make_streams(self, seed: int, rng: Optional[np.random.Generator]) -> List[_Stream]:
        n = len(self.partitions)
        if n == 1:
            generators = [rng if rng is not None else np.random.default_rng(seed)]
        elif rng is not None:
            generators = rng.spawn(n)
        else:
            generators = [np.random.default_rng(s)
                          for s in np.random.SeedSequence(seed).spawn(n)]
        return [_Stream(partition=p, rng=g) for p, g in zip(self.partitions, generators)]

    @property
    def time(self) -> float:
        """Time every partition has reached."""
        return min(stream.time for stream in self._streams)

    def reset(self, seed: Optional[int] = None) -> None:
        """Zero the clock and counters and restart the random streams.

        An explicit ``seed`` replaces an injected generator; without one the
        injected generator keeps its current position.
        """
        if seed is None:
            self._streams = self._make_streams(self.config.seed, self._injected_rng)
        else:
            self._streams = self._make_streams(seed, None)
        self.phase = EngineState.IDLE
        self.total_events = 0
        self._active_cells = 0
        self._mean_propensity = 0.0
        self._events_per_time = 0.0
        self._last_step_seconds = 0.0

    def simulate_step(self, grid: ConcentrationGrid, cells: SpatialCellIndex,
                      delta_time: float) -> StepResult:
        """Fire reaction events over [t, t + delta_time]."""
        if delta_time < 0 or not math.isfinite(delta_time):
            raise ValueError(f"delta_time must be finite and >= 0, got {delta_time}")
        return self.simulate_until(grid, cells, self.time + delta_time)

    def simulate_until(self, grid: ConcentrationGrid, cells: SpatialCellIndex,
                       target_time: float) -> StepResult:
        """Fire reaction events until every partition reaches ``target_time``."""
        start_time = self.time
        if target_time < start_time:
            raise ValueError(
                f"target_time {target_time} is before the engine clock {start_time}")
        if target_time == start_time:
            return StepResult((), start_time, target_time, start_time)

        wall_start = wallclock.perf_counter()
        self.phase = EngineState.COMPUTING_PROPENSITIES
        self._active_cells = cells.refresh_activity(grid)
        activity = grid.activity()
        live = len(self._streams) == 1
        coupling_field = self.coupling.field(activity)

        for stream in self._streams:
            stream.events = []
            stream.clamps = 0
        self.phase = EngineState.AWAITING_NEXT_EVENT

        if not live and self.config.workers > 1:
            with ThreadPoolExecutor(max_workers=self.config.workers) as pool:
                futures = [
                    pool.submit(self._advance, stream, grid, cells, target_time,
                                activity, coupling_field, live)
                    for stream in self._streams
                ]
                for future in futures:
                    future.result()
        else:
            for stream in self._streams:
                self._advance(stream, grid, cells, target_time, activity,
                              coupling_field, live)

        events = []
        for stream in self._streams:
            events.extend(stream.events)
            grid.record_clamps(stream.clamps)
        events.sort(key=lambda e: (e.time, e.partition))

        time_reached = self.time
        self.total_events += len(events)
        self._active_cells = cells.active_count
        nonzero = cells.propensities[cells.propensities > 0]
        self._mean_propensity = float(nonzero.mean()) if nonzero.size else 0.0
        elapsed = time_reached - start_time
        self._events_per_time = len(events) / elapsed if elapsed > 0 else 0.0
        self._last_step_seconds = wallclock.perf_counter() - wall_start
        self.phase = EngineState.STEP_COMPLETE

        if time_reached < target_time:
            logger.warning(
                "Reaction sub-step capped at %d events per partition; reached t=%.6g "
                "of target %.6g", self.config.max_events_per_step, time_reached, target_time)
        return StepResult(tuple(events), start_time, target_time, time_reached)

    def _recompute_cell(self, grid: ConcentrationGrid, cells: SpatialCellIndex,
                        x: int, y: int, coupling: float, now: float) -> None:
        if cells.active[y, x]:
            self.model.cell_propensities(grid.data[:, y, x], coupling,
                                         out=cells.propensities[y, x])
        else:
            cells.propensities[y, x] = 0.0
        cells.last_update[y, x] = now

    def _advance(self, stream: _Stream, grid: ConcentrationGrid, cells: SpatialCellIndex,
                 target_time: float, activity: np.ndarray, coupling_field: np.ndarray,
                 live: bool) -> None:
        part = stream.partition
        t = stream.time
        if t >= target_time:
            stream.phase = EngineState.STEP_COMPLETE
            return
        stream.phase = EngineState.COMPUTING_PROPENSITIES
        ys, xs = part.slices
        props = cells.propensities[ys, xs]
        n_reactions = self.model.n_reactions
        block_width = part.x1 - part.x0
        max_events = self.config.max_events_per_step

        # inactive cells were zeroed by refresh_activity
        for local_y, local_x in np.argwhere(cells.active[ys, xs]):
            y, x = part.y0 + int(local_y), part.x0 + int(local_x)
            self._recompute_cell(grid, cells, x, y, coupling_field[y, x], t)

        if n_reactions == 0:
            stream.time = target_time
            stream.phase = EngineState.STEP_COMPLETE
            return

        capped = True
        while len(stream.events) < max_events:
            stream.phase = EngineState.AWAITING_NEXT_EVENT
            total = float(props.sum())
            if total <= 0.0:
                capped = False
                break
            r1 = 1.0 - stream.rng.random()
            tau = -math.log(r1) / total
            if t + tau > target_time:
                capped = False
                break

            stream.phase = EngineState.FIRING
            r2 = stream.rng.random() * total
            cumulative = np.cumsum(props)
            k = int(np.searchsorted(cumulative, r2, side='right'))
            if k >= cumulative.size:
                k = int(np.flatnonzero(props.reshape(-1) > 0)[-1])
            cell_flat, r_idx = divmod(k, n_reactions)
            local_y, local_x = divmod(cell_flat, block_width)
            x, y = part.x0 + local_x, part.y0 + local_y
            propensity = float(props[local_y, local_x, r_idx])
            t = t + tau

            stream.clamps += self._fire(grid, self.model.reactions[r_idx], x, y)
            consumed, produced = self._event_terms[r_idx]
            stream.events.append(ReactionEvent(
                reaction_id=self.model.reactions[r_idx].id,
                time=t,
                cell=(x, y),
                reactants_consumed=consumed,
                products_produced=produced,
                propensity=propensity,
                partition=part.index,
            ))

            stream.phase = EngineState.COMPUTING_PROPENSITIES
            cells.active[y, x] = cells.is_active(grid.data[:, y, x])
            if live and self.coupling.depends_on_neighbors:
                activity[y, x] = grid.data[:, y, x].sum()
                for ny in range(max(part.y0, y - 1), min(part.y1, y + 2)):
                    for nx in range(max(part.x0, x - 1), min(part.x1, x + 2)):
                        self._recompute_cell(grid, cells, nx, ny,
                                             self.coupling.at(activity, nx, ny), t)
            else:
                self._recompute_cell(grid, cells, x, y, coupling_field[y, x], t)

        stream.time = target_time if not capped else t
        stream.phase = EngineState.STEP_COMPLETE

    def _fire(self, grid: ConcentrationGrid, reaction: CompiledReaction,
              x: int, y: int) -> int:
        """Apply one event's stoichiometry to a cell; returns values clamped."""
        data = grid.data
        clamps = 0
        for idx, nu in zip(reaction.reactant_indices, reaction.reactant_stoichiometry):
            value = data[idx, y, x] - self.model.quantum(nu)
            if value < 0.0:
                value = 0.0
                clamps += 1
            data[idx, y, x] = value
        for idx, nu in zip(reaction.product_indices, reaction.product_stoichiometry):
            data[idx, y, x] += self.model.quantum(nu)
        return clamps

    def state(self) -> GillespieState:
        return GillespieState(
            time=self.time,
            total_events=self.total_events,
            active_cells=self._active_cells,
            mean_propensity=self._mean_propensity,
            events_per_time_unit=self._events_per_time,
            last_step_seconds=self._last_step_seconds,
            phase=self.phase,
            partition_phases=tuple(stream.phase for stream in self._streams),
        )
