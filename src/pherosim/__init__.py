"""
pherosim - Reaction-diffusion simulation of chemical signals on a 2D lattice.

This package couples two descriptions of the same concentration fields:
1. Continuous diffusion-decay, integrated with an explicit stencil
2. Discrete reaction events, simulated with a spatial Gillespie algorithm

Each tick is operator-split (diffusion first, then reactions) over one
shared grid, and readers receive immutable snapshots. Default ant
pheromone species and reactions are provided for colony simulations.
"""

__version__ = "0.1.0"

from . import species
from . import grid
from . import reactions
from . import events
from . import diffusion
from . import cells
from . import gillespie
from . import system
from . import config
from . import analysis

from .exceptions import (
    ChemistryError,
    InvalidConfigurationError,
    RegistryFrozenError,
    UnknownReactionError,
    UnknownSpeciesError,
)
from .species import ChemicalSpecies, SpeciesRegistry, default_pheromone_species
from .grid import ConcentrationGrid, GridConfig, GridSnapshot
from .reactions import ReactionDefinition, ReactionNetwork, default_pheromone_reactions
from .events import EventLog, ReactionEvent
from .diffusion import DiffusionConfig, DiffusionSolver
from .cells import SpatialCellIndex
from .gillespie import GillespieConfig, GillespieEngine, StepResult
from .system import ChemicalSystem, ChemicalSystemConfig, TickResult
from .config import build_system, load_config

__all__ = [
    "species", "grid", "reactions", "events", "diffusion", "cells",
    "gillespie", "system", "config", "analysis",
    "ChemistryError", "InvalidConfigurationError", "RegistryFrozenError",
    "UnknownReactionError", "UnknownSpeciesError",
    "ChemicalSpecies", "SpeciesRegistry", "default_pheromone_species",
    "ConcentrationGrid", "GridConfig", "GridSnapshot",
    "ReactionDefinition", "ReactionNetwork", "default_pheromone_reactions",
    "EventLog", "ReactionEvent",
    "DiffusionConfig", "DiffusionSolver",
    "SpatialCellIndex",
    "GillespieConfig", "GillespieEngine", "StepResult",
    "ChemicalSystem", "ChemicalSystemConfig", "TickResult",
    "build_system", "load_config",
]
