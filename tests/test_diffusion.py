"""
Tests for the explicit diffusion-decay solver.

Tests:
1. No-flux boundary: edge cells omit out-of-range neighbors, no wrapping
2. Mass conservation without decay (all backends, both stencils)
3. Backend agreement on identical input
4. Stability bound enforced at construction and per step
5. Monotonic decay of a uniform field
6. Species addressed by id
7. Masked (sparse) steps conserve mass and agree across backends
8. Parallel thread pool scoped to one step_all call
"""

import sys
from pathlib import Path
import numpy as np
import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from pherosim.diffusion import (
    DiffusionConfig,
    DiffusionSolver,
    StencilParams,
    create_backend,
    stencil_kernel,
)
from pherosim.exceptions import InvalidConfigurationError, UnknownSpeciesError
from pherosim.grid import ConcentrationGrid, GridConfig
from pherosim.species import ChemicalSpecies, SpeciesRegistry


def make_grid(width, height, diffusion_rate=1.0, decay_rate=0.0, cell_size=1.0):
    registry = SpeciesRegistry([ChemicalSpecies("A", "A", diffusion_rate, decay_rate)])
    registry.freeze()
    config = GridConfig(width, height, cell_size)
    return registry, config, ConcentrationGrid(registry, config)


def test_stencil_kernels():
    """4-neighbor is a unit cross; 8-neighbor weights sum to 20/6."""
    assert stencil_kernel(4).sum() == pytest.approx(4.0)
    assert stencil_kernel(8).sum() == pytest.approx(20.0 / 6.0)
    assert stencil_kernel(8)[0, 0] == pytest.approx(1.0 / 6.0)
    with pytest.raises(InvalidConfigurationError):
        stencil_kernel(6)


def test_no_flux_corner():
    """A corner cell only exchanges with its two in-range neighbors."""
    registry, config, grid = make_grid(5, 4, diffusion_rate=1.0)
    grid.field(0)[0, 0] = 1.0
    solver = DiffusionSolver(registry, config, DiffusionConfig(time_step=0.25))

    solver.step(0, grid, 0.25)
    field = grid.field(0)

    # L = (0 - 1) * 2 neighbors -> 1 + 0.25 * (-2)
    assert field[0, 0] == pytest.approx(0.5)
    assert field[0, 1] == pytest.approx(0.25)
    assert field[1, 0] == pytest.approx(0.25)
    # no wrap-around to the opposite edges
    assert field[0, -1] == 0.0
    assert field[-1, 0] == 0.0
    assert field.sum() == pytest.approx(1.0)


def test_no_flux_edge_interior_cells_match_textbook_stencil():
    """Away from the boundary the 4-neighbor update is the usual 5-point stencil."""
    rng = np.random.default_rng(0)
    registry, config, grid = make_grid(8, 8, diffusion_rate=0.2)
    values = rng.random((8, 8))
    grid.load(0, values)
    solver = DiffusionSolver(registry, config, DiffusionConfig(time_step=1.0))

    solver.step(0, grid, 1.0)

    y, x = 3, 4
    lap = values[y - 1, x] + values[y + 1, x] + values[y, x - 1] + values[y, x + 1] - 4 * values[y, x]
    assert grid.field(0)[y, x] == pytest.approx(values[y, x] + 0.2 * lap)


@pytest.mark.parametrize("backend", ["convolution", "parallel", "sequential"])
@pytest.mark.parametrize("stencil", [4, 8])
def test_mass_conservation(backend, stencil):
    """Pure diffusion conserves total mass under no-flux boundaries."""
    rng = np.random.default_rng(1)
    registry, config, grid = make_grid(12, 9, diffusion_rate=0.2)
    grid.load(0, rng.random((9, 12)) * 5.0)
    initial = grid.total_mass()
    solver = DiffusionSolver(registry, config,
                             DiffusionConfig(time_step=1.0, stencil=stencil, backend=backend))

    for _ in range(10):
        solver.step(0, grid, 1.0)

    assert grid.total_mass() == pytest.approx(initial, rel=1e-12)
    assert grid.clamp_count == 0


@pytest.mark.parametrize("stencil", [4, 8])
def test_backends_agree(stencil):
    """All backends produce the same step within floating tolerance."""
    rng = np.random.default_rng(2)
    field = rng.random((13, 17))
    params = StencilParams(diffusion_rate=0.15, decay_rate=0.01, time_step=1.0, cell_size=1.0)

    reference = create_backend("sequential", stencil).step(field, params)
    for name in ("convolution", "parallel"):
        result = create_backend(name, stencil, workers=3).step(field, params)
        np.testing.assert_allclose(result, reference, rtol=1e-10, atol=1e-14)


def test_backend_step_does_not_modify_input():
    """Double buffering: the previous field is read-only during a step."""
    field = np.zeros((5, 5))
    field[2, 2] = 1.0
    before = field.copy()
    params = StencilParams(0.2, 0.0, 1.0, 1.0)
    for name in ("convolution", "parallel", "sequential"):
        result = create_backend(name).step(field, params)
        assert result is not field
        np.testing.assert_array_equal(field, before)


def test_unstable_time_step_rejected_at_construction():
    """dt*D/h^2 > 0.25 is a configuration error."""
    registry, config, _ = make_grid(10, 10, diffusion_rate=0.15)
    with pytest.raises(InvalidConfigurationError, match="unstable"):
        DiffusionSolver(registry, config, DiffusionConfig(time_step=2.0))


def test_stability_depends_on_cell_size():
    """Larger cells allow larger steps."""
    registry, config, _ = make_grid(10, 10, diffusion_rate=0.15, cell_size=2.0)
    solver = DiffusionSolver(registry, config, DiffusionConfig(time_step=2.0))
    assert solver.stability_number(0, 2.0) == pytest.approx(0.075)
    assert solver.max_stable_time_step(0) == pytest.approx(0.25 * 4.0 / 0.15)


def test_unstable_step_rejected():
    """Direct steps longer than the stable limit raise instead of diverging."""
    registry, config, grid = make_grid(6, 6, diffusion_rate=0.5)
    solver = DiffusionSolver(registry, config, DiffusionConfig(time_step=0.5))
    with pytest.raises(InvalidConfigurationError):
        solver.step(0, grid, 1.0)


def test_negative_and_zero_steps():
    registry, config, grid = make_grid(4, 4)
    grid.field(0)[1, 1] = 1.0
    solver = DiffusionSolver(registry, config, DiffusionConfig(time_step=0.25))

    with pytest.raises(ValueError):
        solver.step(0, grid, -0.1)

    before = grid.export(0)
    solver.step(0, grid, 0.0)
    np.testing.assert_array_equal(grid.field(0), before)


def test_substeps():
    registry, config, _ = make_grid(4, 4, diffusion_rate=0.1)
    solver = DiffusionSolver(registry, config, DiffusionConfig(time_step=0.1))
    assert solver.substeps(0.0) == 0
    assert solver.substeps(0.05) == 1
    assert solver.substeps(0.3) == 3
    assert solver.substeps(0.31) == 4


def test_uniform_field_decays_monotonically():
    """With decay and no sources, no cell ever increases."""
    registry, config, grid = make_grid(6, 6, diffusion_rate=0.2, decay_rate=0.05)
    grid.load(0, np.full((6, 6), 2.0))
    solver = DiffusionSolver(registry, config, DiffusionConfig(time_step=1.0))

    previous = grid.export(0)
    for _ in range(20):
        solver.step(0, grid, 1.0)
        current = grid.export(0)
        assert np.all(current <= previous)
        previous = current
    assert previous[0, 0] == pytest.approx(2.0 * 0.95**20)


def test_large_decay_warns():
    """decay_rate * time_step >= 1 is legal but forces clamping."""
    registry, config, _ = make_grid(4, 4, diffusion_rate=0.0, decay_rate=20.0)
    with pytest.warns(RuntimeWarning):
        DiffusionSolver(registry, config, DiffusionConfig(time_step=0.1))


def test_mask_limits_update():
    """Cells outside the mask keep their previous values."""
    registry, config, grid = make_grid(5, 5, diffusion_rate=0.2, decay_rate=0.1)
    grid.load(0, np.ones((5, 5)))
    mask = np.zeros((5, 5), dtype=bool)
    mask[2, 2] = True
    solver = DiffusionSolver(registry, config, DiffusionConfig(time_step=1.0))

    solver.step(0, grid, 1.0, mask)

    assert grid.field(0)[2, 2] == pytest.approx(0.9)
    assert grid.field(0)[0, 0] == 1.0


def test_step_by_species_id():
    """A registered species id addresses the same field as its index."""
    registry, config, grid = make_grid(10, 10, diffusion_rate=0.2)
    grid.field(0)[5, 5] = 1.0
    by_index = ConcentrationGrid(registry, config)
    by_index.field(0)[5, 5] = 1.0
    solver = DiffusionSolver(registry, config, DiffusionConfig(time_step=1.0))

    solver.step("A", grid, 1.0)
    solver.step(0, by_index, 1.0)

    np.testing.assert_array_equal(grid.field(0), by_index.field(0))
    assert grid.field(0)[5, 6] == pytest.approx(0.2)
    with pytest.raises(UnknownSpeciesError):
        solver.step("B", grid, 1.0)


@pytest.mark.parametrize("backend", ["convolution", "parallel", "sequential"])
@pytest.mark.parametrize("stencil", [4, 8])
def test_masked_step_conserves_mass(backend, stencil):
    """Only pairs of masked cells exchange flux; cells outside stay fixed."""
    rng = np.random.default_rng(3)
    registry, config, grid = make_grid(9, 7, diffusion_rate=0.2)
    grid.load(0, rng.random((7, 9)))
    mask = rng.random((7, 9)) > 0.4
    before = grid.export(0)
    initial = grid.total_mass()
    solver = DiffusionSolver(registry, config,
                             DiffusionConfig(time_step=1.0, stencil=stencil, backend=backend))

    for _ in range(5):
        solver.step(0, grid, 1.0, mask)

    assert grid.total_mass() == pytest.approx(initial, rel=1e-12)
    np.testing.assert_array_equal(grid.field(0)[~mask], before[~mask])


@pytest.mark.parametrize("stencil", [4, 8])
def test_backends_agree_with_mask(stencil):
    rng = np.random.default_rng(4)
    field = rng.random((11, 14))
    mask = rng.random((11, 14)) > 0.5
    params = StencilParams(diffusion_rate=0.2, decay_rate=0.0, time_step=1.0, cell_size=1.0)

    reference = create_backend("sequential", stencil).step(field, params, mask)
    for name in ("convolution", "parallel"):
        result = create_backend(name, stencil, workers=3).step(field, params, mask)
        np.testing.assert_allclose(result, reference, rtol=1e-10, atol=1e-14)


def test_parallel_pool_scoped_to_step_all():
    """One thread pool serves every species of a step_all call and is then shut down."""
    registry = SpeciesRegistry([ChemicalSpecies("A", "A", 0.2, 0.0),
                                ChemicalSpecies("B", "B", 0.1, 0.0)])
    registry.freeze()
    config = GridConfig(8, 8)
    grid = ConcentrationGrid(registry, config)
    grid.field(0)[4, 4] = 1.0
    grid.field(1)[2, 2] = 1.0
    solver = DiffusionSolver(registry, config,
                             DiffusionConfig(time_step=1.0, backend="parallel", workers=2))

    pools = []
    original = solver.backend.neighbor_sum

    def recording_neighbor_sum(field):
        pools.append(solver.backend._pool)
        return original(field)

    solver.backend.neighbor_sum = recording_neighbor_sum
    solver.step_all(grid, 1.0)

    assert len(pools) == 2
    assert pools[0] is not None and pools[0] is pools[1]
    assert solver.backend._pool is None
    assert grid.total_mass() == pytest.approx(2.0)
