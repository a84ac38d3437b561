#!/usr/bin/env python
"""
Lay a pheromone trail on a lattice and let it diffuse, decay and react.

An ant walks a diagonal path from the nest toward a food source,
depositing trail pheromone every tick; food odor sits at the source and
an alarm burst appears halfway through the run.

Usage:
    python scripts/run_pheromone_trail.py [--params params.yaml] [--output results_trail]
                                          [--ticks 200] [--quiet]

Outputs:
    fields.npz       final concentration fields and species ids
    events.csv       every reaction event of the run
    trail_fields.png final fields and total mass per species over time
"""

import argparse
import logging
import os
from pathlib import Path

import numpy as np
import matplotlib.pyplot as plt

# Add src to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from pherosim.config import build_system, load_params
from pherosim.analysis import export_events_to_csv, mass_by_species, spatial_correlation

LOG = logging.getLogger(__name__)


def run_trail(params: dict, output_dir: str = 'results_trail', n_ticks: int = 200,
              dt: float = 0.5) -> None:
    """Run the trail scenario and write its outputs.

    Parameters
    ----------
    params : dict
        Parsed parameter file (see params.yaml)
    output_dir : str
        Output directory
    n_ticks : int
        Number of ticks to simulate
    dt : float
        Tick length in seconds
    """
    system = build_system(params)
    species = system.registry.ids
    width = system.grid_config.width * system.grid_config.cell_size
    height = system.grid_config.height * system.grid_config.cell_size

    nest = np.array([0.15 * width, 0.15 * height])
    food = np.array([0.85 * width, 0.85 * height])

    events = []
    system.subscribe(lambda tick: events.extend(tick.events))
    mass_history = {sp: [] for sp in species}
    times = []

    if "food" in species:
        system.deposit_chemical("food", food[0], food[1], 0.5)

    for tick in range(n_ticks):
        fraction = min(1.0, tick / max(1, n_ticks // 2))
        ant = nest + fraction * (food - nest)
        if "trail" in species:
            system.deposit_chemical("trail", ant[0], ant[1], 0.5)
        if "alarm" in species and tick == n_ticks // 2:
            system.deposit_chemical("alarm", 0.5 * width, 0.5 * height, 2.0)

        result = system.simulate_tick(dt)
        if not result.completed:
            LOG.warning("Tick %d: reactions reached t=%.3f of %.3f",
                        tick, result.reaction_time_reached, result.time)
        times.append(result.time)
        for sp, mass in mass_by_species(result.snapshot).items():
            mass_history[sp].append(mass)

    snapshot = system.snapshot()
    status = system.status()
    LOG.info("Finished %d ticks: t=%.1f s, %d events, %d active cells, %d clamps",
             status.tick_count, status.time, status.total_events,
             status.active_cells, status.clamp_count)
    LOG.info("Spatial correlation of final fields: %.3f", spatial_correlation(snapshot))

    os.makedirs(output_dir, exist_ok=True)
    np.savez(
        os.path.join(output_dir, 'fields.npz'),
        data=np.asarray(snapshot.data),
        species=np.array(species),
        time=snapshot.time,
        cell_size=snapshot.cell_size,
    )
    export_events_to_csv(os.path.join(output_dir, 'events.csv'), events)

    fig, axes = plt.subplots(1, len(species) + 1, figsize=(4 * (len(species) + 1), 4))
    axes = np.atleast_1d(axes)
    extent = [0, width, height, 0]
    for ax, sp in zip(axes, species):
        im = ax.imshow(snapshot.field(sp), extent=extent, cmap='viridis')
        ax.set_title(sp)
        fig.colorbar(im, ax=ax, fraction=0.046)
    for sp in species:
        axes[-1].plot(times, mass_history[sp], label=sp)
    axes[-1].set_xlabel('Time (s)')
    axes[-1].set_ylabel('Total concentration')
    axes[-1].legend(fontsize=8)
    axes[-1].grid(True, alpha=0.3)

    plt.tight_layout()
    plt.savefig(os.path.join(output_dir, 'trail_fields.png'), dpi=150)
    plt.close(fig)
    LOG.info("Results saved to %s/", output_dir)


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description='Simulate a pheromone trail with diffusion, decay and reactions',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument(
        '--params', type=str, default='params.yaml',
        help='Path to YAML parameter file (default: params.yaml)'
    )
    parser.add_argument(
        '--output', type=str, default='results_trail',
        help='Output directory (default: results_trail)'
    )
    parser.add_argument(
        '--ticks', type=int, default=200,
        help='Number of ticks to simulate (default: 200)'
    )
    parser.add_argument(
        '--dt', type=float, default=0.5,
        help='Tick length in seconds (default: 0.5)'
    )
    parser.add_argument(
        '--quiet', action='store_true',
        help='Only log warnings'
    )

    args = parser.parse_args()
    logging.basicConfig(level=logging.WARNING if args.quiet else logging.INFO,
                        format="[%(levelname)s] %(message)s")

    params = load_params(args.params)
    run_trail(params, output_dir=args.output, n_ticks=args.ticks, dt=args.dt)


if __name__ == '__main__':
    main()
