"""
Chemical species catalog.

Species are registered once while the system is being configured and the
set is frozen when concentration grids are allocated. Each species gets a
dense integer index (its registration order) which is used everywhere on
the hot path; string ids are only resolved at the API boundary.

Default pheromone catalog
-------------------------
    id           D (cell²/s)   decay (1/s)   volatility   MW (g/mol)
    trail        0.15          0.002         0.001        200
    alarm        0.25          0.005         0.003        150
    food         0.10          0.001         0.0005       300
    recruitment  0.20          0.003         0.002        180
    territory    0.05          0.0005        0.0001       400
"""

import math
from dataclasses import dataclass
from typing import Dict, Iterator, List, Sequence, Tuple

from .exceptions import (
    InvalidConfigurationError,
    RegistryFrozenError,
    UnknownSpeciesError,
)


@dataclass(frozen=True)
class ChemicalSpecies:
    """A diffusing, decaying chemical signal.

    Parameters
    ----------
    id : str
        Unique key used by callers (e.g. ``"trail"``)
    name : str
        Human readable name
    diffusion_rate : float
        Diffusion coefficient D in world units² per time unit
    decay_rate : float
        First-order decay rate in 1/time unit
    volatility : float
        Evaporation rate; informational, carried for consumers
    molecular_weight : float
        Molecular weight in g/mol; informational
    """
    id: str
    name: str
    diffusion_rate: float
    decay_rate: float
    volatility: float = 0.0
    molecular_weight: float = 0.0

    def __post_init__(self):
        if not self.id:
            raise InvalidConfigurationError("Species id must be a non-empty string")
        for field_name in ("diffusion_rate", "decay_rate", "volatility", "molecular_weight"):
            value = getattr(self, field_name)
            if not math.isfinite(value) or value < 0:
                raise InvalidConfigurationError(
                    f"Species {self.id!r}: {field_name} must be finite and >= 0, got {value}"
                )


class SpeciesRegistry:
    """Fixed-order catalog of species with dense integer indices.

    The registry accepts new species until :meth:`freeze` is called.
    Lookups by id are bounds-checked and raise
    :class:`UnknownSpeciesError`.

    Examples
    --------
    >>> registry = SpeciesRegistry()
    >>> registry.register(ChemicalSpecies("trail", "Trail", 0.15, 0.002))
    0
    >>> registry.index_of("trail")
    0
    """

    def __init__(self, species: Sequence[ChemicalSpecies] = ()):
        self._species: List[ChemicalSpecies] = []
        self._index: Dict[str, int] = {}
        self._frozen = False
        for sp in species:
            self.register(sp)

    def register(self, species: ChemicalSpecies) -> int:
        """Add a species and return its dense index."""
        if self._frozen:
            raise RegistryFrozenError(
                f"Cannot register species {species.id!r}: grids are allocated. "
                "Call reallocate() first."
            )
        if species.id in self._index:
            raise InvalidConfigurationError(f"Species {species.id!r} is already registered")
        self._index[species.id] = len(self._species)
        self._species.append(species)
        return self._index[species.id]

    def freeze(self) -> None:
        self._frozen = True

    def thaw(self) -> "SpeciesRegistry":
        """Return an unfrozen copy with the same species and indices."""
        return SpeciesRegistry(self._species)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def index_of(self, species_id: str) -> int:
        try:
            return self._index[species_id]
        except KeyError:
            raise UnknownSpeciesError(species_id) from None

    def get(self, key) -> ChemicalSpecies:
        """Look up a species by id or dense index."""
        if isinstance(key, str):
            return self._species[self.index_of(key)]
        if isinstance(key, int) and 0 <= key < len(self._species):
            return self._species[key]
        raise UnknownSpeciesError(key)

    def __contains__(self, species_id) -> bool:
        return species_id in self._index

    def __len__(self) -> int:
        return len(self._species)

    def __iter__(self) -> Iterator[ChemicalSpecies]:
        return iter(self._species)

    @property
    def ids(self) -> Tuple[str, ...]:
        return tuple(sp.id for sp in self._species)

    def rates(self) -> Tuple[Tuple[float, float], ...]:
        """(diffusion_rate, decay_rate) per index."""
        return tuple((sp.diffusion_rate, sp.decay_rate) for sp in self._species)


def default_pheromone_species() -> List[ChemicalSpecies]:
    """Return the standard ant pheromone catalog (see module docstring)."""
    return [
        ChemicalSpecies("trail", "Trail Pheromone", 0.15, 0.002, 0.001, 200.0),
        ChemicalSpecies("alarm", "Alarm Pheromone", 0.25, 0.005, 0.003, 150.0),
        ChemicalSpecies("food", "Food Marker", 0.1, 0.001, 0.0005, 300.0),
        ChemicalSpecies("recruitment", "Recruitment Pheromone", 0.2, 0.003, 0.002, 180.0),
        ChemicalSpecies("territory", "Territory Marker", 0.05, 0.0005, 0.0001, 400.0),
    ]
