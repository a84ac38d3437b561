"""
YAML configuration for chemical systems.

Layout of a parameter file::

    grid:       {width: 64, height: 64, cell_size: 1.0}
    diffusion:  {time_step: 0.5, stencil: 4, backend: convolution}
    gillespie:  {seed: 42, max_events_per_step: 10000, partitions: [1, 1]}
    events:     {capacity: 10000, retention_time: 60.0, clamp_warning_ticks: 10}
    species:    default            # or a list of species mappings
    reactions:  default            # or a list of reaction mappings, or []

Every section is optional. Keys that are not fields of the matching
config object raise InvalidConfigurationError, so typos fail loudly.
"""

import dataclasses
from pathlib import Path
from typing import List, Mapping, Union

import yaml

from .diffusion import DiffusionConfig
from .exceptions import InvalidConfigurationError
from .gillespie import GillespieConfig
from .grid import GridConfig
from .reactions import ReactionDefinition, default_pheromone_reactions
from .species import ChemicalSpecies, default_pheromone_species
from .system import ChemicalSystem, ChemicalSystemConfig

SECTIONS = ("grid", "diffusion", "gillespie", "events", "species", "reactions")

_EVENT_KEYS = {
    "capacity": "event_log_capacity",
    "retention_time": "event_retention_time",
    "clamp_warning_ticks": "clamp_warning_ticks",
}


def _check_keys(section: str, values: Mapping, allowed) -> None:
    unknown = sorted(set(values) - set(allowed))
    if unknown:
        raise InvalidConfigurationError(
            f"Unknown key(s) in '{section}': {', '.join(map(str, unknown))}")


def _build(cls, section: str, values):
    if values is None:
        return cls()
    if not isinstance(values, Mapping):
        raise InvalidConfigurationError(f"Section '{section}' must be a mapping")
    _check_keys(section, values, [f.name for f in dataclasses.fields(cls)])
    return cls(**values)


def parse_species(entries) -> List[ChemicalSpecies]:
    if entries is None:
        return []
    if entries == "default":
        return default_pheromone_species()
    allowed = [f.name for f in dataclasses.fields(ChemicalSpecies)]
    species = []
    for entry in entries:
        _check_keys("species", entry, allowed)
        species.append(ChemicalSpecies(**entry))
    return species


def parse_reactions(entries) -> List[ReactionDefinition]:
    if entries is None:
        return []
    if entries == "default":
        return default_pheromone_reactions()
    allowed = [f.name for f in dataclasses.fields(ReactionDefinition)]
    reactions = []
    for entry in entries:
        _check_keys("reactions", entry, allowed)
        entry = dict(entry)
        entry.setdefault("products", ())
        reactions.append(ReactionDefinition(**entry))
    return reactions


def parse_config(params: Mapping) -> ChemicalSystemConfig:
    """Build a ChemicalSystemConfig from a parsed parameter mapping."""
    params = params or {}
    if not isinstance(params, Mapping):
        raise InvalidConfigurationError("Parameter file must contain a mapping")
    _check_keys("top level", params, SECTIONS)

    events = params.get("events") or {}
    _check_keys("events", events, _EVENT_KEYS)
    return ChemicalSystemConfig(
        grid=_build(GridConfig, "grid", params.get("grid")),
        diffusion=_build(DiffusionConfig, "diffusion", params.get("diffusion")),
        gillespie=_build(GillespieConfig, "gillespie", params.get("gillespie")),
        **{_EVENT_KEYS[key]: value for key, value in events.items()},
    )


def load_params(params_file: Union[str, Path]) -> dict:
    """Load parameters from YAML file."""
    with open(params_file, 'r') as f:
        return yaml.safe_load(f) or {}


def load_config(params_file: Union[str, Path]) -> ChemicalSystemConfig:
    return parse_config(load_params(params_file))


def build_system(params: Union[str, Path, Mapping]) -> ChemicalSystem:
    """Create and allocate a ChemicalSystem from a YAML file or mapping.

    Parameters
    ----------
    params : str, Path or mapping
        Path to a YAML parameter file, or the already-parsed mapping

    Returns
    -------
    ChemicalSystem
        Allocated system with the listed species and reactions registered

    Examples
    --------
    >>> system = build_system({"grid": {"width": 16, "height": 16},
    ...                        "species": "default", "reactions": "default"})
    >>> system.status().n_species
    5
    """
    if not isinstance(params, Mapping):
        params = load_params(params)
    config = parse_config(params)
    system = ChemicalSystem(
        config,
        species=parse_species(params.get("species")),
        reactions=parse_reactions(params.get("reactions")),
    )
    system.allocate()
    return system
