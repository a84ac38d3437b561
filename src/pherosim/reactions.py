"""
Reaction network and propensity calculation.

PROPENSITY
----------
For reaction r in a cell c:

    a(r, c) = k_r · Π_s n_s(c)^ν_s · exp(-E_a / (R·T)) · g(c)

where:
    k_r     rate constant
    n_s(c)  effective molecule count of reactant s in cell c
    ν_s     stoichiometry of reactant s
    E_a     activation energy (J/mol), R = 8.314 J/(mol·K)
    T       temperature (K); the reaction's reference temperature unless
            an ambient temperature is configured
    g(c)    neighbor coupling factor (1 unless a coupling model is chosen)

EFFECTIVE MOLECULE COUNT
------------------------
Continuous concentrations are converted to discrete counts with

    n = floor(concentration · molecule_scale + 1e-6)

``molecule_scale`` is a calibration constant (default 1000), not a
physical quantity. The small offset absorbs floating error accumulated by
repeated subtraction of 1/molecule_scale. One fired event moves
``ν / molecule_scale`` concentration units, so counts and concentrations
stay consistent.

If any reactant count is zero the propensity is exactly 0.0.

With ``law="combinatorial"`` the power n^ν is replaced by the falling
factorial n·(n-1)···(n-ν+1), which also vanishes whenever n < ν.

NEIGHBOR COUPLING
-----------------
``TanhNeighborCoupling`` uses the mean total concentration ā of the
in-bounds 8-connected neighbors:

    g(c) = 1 + strength · tanh(ā - midpoint)

with strength 0.1 and midpoint 0.5 by default, so g stays in (0.9, 1.1).
"""

import math
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
from scipy import ndimage

from .exceptions import (
    InvalidConfigurationError,
    RegistryFrozenError,
    UnknownReactionError,
)
from .species import SpeciesRegistry

GAS_CONSTANT = 8.314  # J/(mol·K)
COUNT_ROUNDING_TOLERANCE = 1e-6
RECORD_VERSION = 1

PROPENSITY_LAWS = ("power", "combinatorial")


def arrhenius_factor(activation_energy: float, temperature: float) -> float:
    """exp(-E_a / (R·T))."""
    if temperature <= 0:
        raise InvalidConfigurationError(f"Temperature must be > 0 K, got {temperature}")
    return math.exp(-activation_energy / (GAS_CONSTANT * temperature))


def effective_counts(concentrations: np.ndarray, molecule_scale: float) -> np.ndarray:
    """Convert concentrations to discrete molecule counts (see module docstring)."""
    return np.floor(np.asarray(concentrations) * molecule_scale + COUNT_ROUNDING_TOLERANCE)


def _parse_terms(terms) -> Tuple[Tuple[str, int], ...]:
    parsed = []
    for term in terms:
        if isinstance(term, dict):
            species, stoichiometry = term["species"], term.get("stoichiometry", 1)
        else:
            species, stoichiometry = term
        if int(stoichiometry) != stoichiometry or stoichiometry < 1:
            raise InvalidConfigurationError(
                f"Stoichiometry of {species!r} must be a positive integer, got {stoichiometry}"
            )
        parsed.append((str(species), int(stoichiometry)))
    return tuple(parsed)


@dataclass(frozen=True)
class ReactionDefinition:
    """An elementary reaction.

    Parameters
    ----------
    id : str
        Unique reaction key
    reactants, products : sequence of (species_id, stoichiometry)
        Also accepts ``{"species": ..., "stoichiometry": ...}`` mappings
    rate_constant : float
        k_r in 1/time unit (per molecule combination)
    activation_energy : float
        E_a in J/mol
    reference_temperature : float
        Temperature in K at which the reaction is evaluated by default
    """
    id: str
    reactants: Tuple[Tuple[str, int], ...]
    products: Tuple[Tuple[str, int], ...] = ()
    rate_constant: float = 1.0
    activation_energy: float = 0.0
    reference_temperature: float = 298.0

    def __post_init__(self):
        object.__setattr__(self, "reactants", _parse_terms(self.reactants))
        object.__setattr__(self, "products", _parse_terms(self.products))
        if not self.id:
            raise InvalidConfigurationError("Reaction id must be a non-empty string")
        if not self.reactants:
            raise InvalidConfigurationError(f"Reaction {self.id!r} has no reactants")
        if not math.isfinite(self.rate_constant) or self.rate_constant < 0:
            raise InvalidConfigurationError(
                f"Reaction {self.id!r}: rate_constant must be >= 0, got {self.rate_constant}"
            )
        if not math.isfinite(self.activation_energy) or self.activation_energy < 0:
            raise InvalidConfigurationError(
                f"Reaction {self.id!r}: activation_energy must be >= 0, "
                f"got {self.activation_energy}"
            )
        if self.reference_temperature <= 0:
            raise InvalidConfigurationError(
                f"Reaction {self.id!r}: reference_temperature must be > 0 K"
            )

    @property
    def species_ids(self) -> Tuple[str, ...]:
        return tuple(sp for sp, _ in self.reactants + self.products)

    def to_record(self) -> dict:
        """Versioned, JSON-safe description of the reaction."""
        return {
            "version": RECORD_VERSION,
            "id": self.id,
            "reactants": [[sp, n] for sp, n in self.reactants],
            "products": [[sp, n] for sp, n in self.products],
            "rate_constant": float(self.rate_constant),
            "activation_energy": float(self.activation_energy),
            "reference_temperature": float(self.reference_temperature),
        }

    @classmethod
    def from_record(cls, record: dict) -> "ReactionDefinition":
        check_record_version(record)
        return cls(
            id=record["id"],
            reactants=tuple(tuple(term) for term in record["reactants"]),
            products=tuple(tuple(term) for term in record["products"]),
            rate_constant=record["rate_constant"],
            activation_energy=record["activation_energy"],
            reference_temperature=record["reference_temperature"],
        )


def check_record_version(record: dict) -> None:
    version = record.get("version")
    if version != RECORD_VERSION:
        raise InvalidConfigurationError(
            f"Unsupported record version {version!r} (expected {RECORD_VERSION})"
        )


@dataclass(frozen=True)
class CompiledReaction:
    """A reaction resolved against a frozen species registry."""
    index: int
    definition: ReactionDefinition
    reactant_indices: np.ndarray
    reactant_stoichiometry: np.ndarray
    product_indices: np.ndarray
    product_stoichiometry: np.ndarray
    arrhenius: float

    @property
    def id(self) -> str:
        return self.definition.id


class ReactionNetwork:
    """Ordered catalog of reactions.

    Registration order defines the dense reaction index, which is also the
    order in which (cell, reaction) pairs are walked during event
    selection.
    """

    def __init__(self, reactions: Sequence[ReactionDefinition] = ()):
        self._reactions: List[ReactionDefinition] = []
        self._index: Dict[str, int] = {}
        self._frozen = False
        for reaction in reactions:
            self.register(reaction)

    def register(self, reaction: ReactionDefinition) -> int:
        if self._frozen:
            raise RegistryFrozenError(
                f"Cannot register reaction {reaction.id!r}: grids are allocated. "
                "Call reallocate() first."
            )
        if reaction.id in self._index:
            raise InvalidConfigurationError(f"Reaction {reaction.id!r} is already registered")
        self._index[reaction.id] = len(self._reactions)
        self._reactions.append(reaction)
        return self._index[reaction.id]

    def freeze(self) -> None:
        self._frozen = True

    def thaw(self) -> "ReactionNetwork":
        return ReactionNetwork(self._reactions)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def index_of(self, reaction_id: str) -> int:
        try:
            return self._index[reaction_id]
        except KeyError:
            raise UnknownReactionError(reaction_id) from None

    def get(self, reaction_id: str) -> ReactionDefinition:
        return self._reactions[self.index_of(reaction_id)]

    def __contains__(self, reaction_id) -> bool:
        return reaction_id in self._index

    def __len__(self) -> int:
        return len(self._reactions)

    def __iter__(self) -> Iterator[ReactionDefinition]:
        return iter(self._reactions)

    @property
    def ids(self) -> Tuple[str, ...]:
        return tuple(r.id for r in self._reactions)

    def validate(self, registry: SpeciesRegistry) -> None:
        """Fail if any reaction references a species outside the registry."""
        for reaction in self._reactions:
            for species_id in reaction.species_ids:
                if species_id not in registry:
                    raise InvalidConfigurationError(
                        f"Reaction {reaction.id!r} references unregistered species "
                        f"{species_id!r}"
                    )

    def compile(self, registry: SpeciesRegistry,
                temperature: Optional[float] = None) -> Tuple[CompiledReaction, ...]:
        """Resolve species ids to dense indices and precompute Arrhenius factors."""
        self.validate(registry)
        compiled = []
        for idx, reaction in enumerate(self._reactions):
            temp = reaction.reference_temperature if temperature is None else temperature
            compiled.append(CompiledReaction(
                index=idx,
                definition=reaction,
                reactant_indices=np.array(
                    [registry.index_of(sp) for sp, _ in reaction.reactants], dtype=int),
                reactant_stoichiometry=np.array(
                    [n for _, n in reaction.reactants], dtype=float),
                product_indices=np.array(
                    [registry.index_of(sp) for sp, _ in reaction.products], dtype=int),
                product_stoichiometry=np.array(
                    [n for _, n in reaction.products], dtype=float),
                arrhenius=arrhenius_factor(reaction.activation_energy, temp),
            ))
        return tuple(compiled)


class NeighborCoupling:
    """Multiplicative spatial factor g(c) applied to every propensity in a cell."""

    name = "none"
    depends_on_neighbors = False

    def field(self, activity: np.ndarray) -> np.ndarray:
        """Coupling factor for every cell, given per-cell total concentration."""
        return np.ones_like(activity)

    def at(self, activity: np.ndarray, x: int, y: int) -> float:
        return 1.0


class TanhNeighborCoupling(NeighborCoupling):
    """g = 1 + strength·tanh(mean neighbor activity - midpoint)."""

    name = "tanh"
    depends_on_neighbors = True

    def __init__(self, strength: float = 0.1, midpoint: float = 0.5):
        if not 0.0 <= strength < 1.0:
            raise InvalidConfigurationError(
                f"Coupling strength must be in [0, 1) to keep g > 0, got {strength}"
            )
        self.strength = strength
        self.midpoint = midpoint
        self._kernel = np.ones((3, 3))
        self._kernel[1, 1] = 0.0

    def field(self, activity: np.ndarray) -> np.ndarray:
        neighbor_sum = ndimage.correlate(activity, self._kernel, mode='constant', cval=0.0)
        neighbor_count = ndimage.correlate(
            np.ones_like(activity), self._kernel, mode='constant', cval=0.0)
        mean = np.divide(neighbor_sum, neighbor_count,
                         out=np.full_like(activity, self.midpoint),
                         where=neighbor_count > 0)
        return 1.0 + self.strength * np.tanh(mean - self.midpoint)

    def at(self, activity: np.ndarray, x: int, y: int) -> float:
        height, width = activity.shape
        y0, y1 = max(0, y - 1), min(height, y + 2)
        x0, x1 = max(0, x - 1), min(width, x + 2)
        block = activity[y0:y1, x0:x1]
        count = block.size - 1
        if count == 0:
            return 1.0
        mean = (block.sum() - activity[y, x]) / count
        return 1.0 + self.strength * math.tanh(mean - self.midpoint)


COUPLING_MODELS = {
    "none": NeighborCoupling,
    "tanh": TanhNeighborCoupling,
}


def create_coupling(name: str, **kwargs) -> NeighborCoupling:
    try:
        cls = COUPLING_MODELS[name]
    except KeyError:
        raise InvalidConfigurationError(
            f"Unknown neighbor coupling {name!r}; choose from {sorted(COUPLING_MODELS)}"
        ) from None
    return cls(**kwargs)


class PropensityModel:
    """Evaluates a(r, c) for every reaction in one cell.

    Parameters
    ----------
    reactions : tuple of CompiledReaction
        Network resolved against the species registry
    molecule_scale : float
        Concentration → count calibration constant
    law : {'power', 'combinatorial'}
        How counts are combined with stoichiometry
    """

    def __init__(self, reactions: Sequence[CompiledReaction],
                 molecule_scale: float = 1000.0, law: str = "power"):
        if molecule_scale <= 0 or not math.isfinite(molecule_scale):
            raise InvalidConfigurationError(
                f"molecule_scale must be finite and > 0, got {molecule_scale}")
        if law not in PROPENSITY_LAWS:
            raise InvalidConfigurationError(
                f"Unknown propensity law {law!r}; choose from {PROPENSITY_LAWS}")
        self.reactions = tuple(reactions)
        self.molecule_scale = float(molecule_scale)
        self.law = law
        self._base = np.array([r.definition.rate_constant * r.arrhenius
                               for r in self.reactions])

    @property
    def n_reactions(self) -> int:
        return len(self.reactions)

    def quantum(self, stoichiometry: float) -> float:
        """Concentration change corresponding to ``stoichiometry`` molecules."""
        return stoichiometry / self.molecule_scale

    def cell_propensities(self, concentrations: np.ndarray, coupling: float = 1.0,
                          out: Optional[np.ndarray] = None) -> np.ndarray:
        """Propensities of all reactions for one cell's species vector."""
        if out is None:
            out = np.zeros(self.n_reactions)
        counts = effective_counts(concentrations, self.molecule_scale)
        for r_idx, reaction in enumerate(self.reactions):
            n = counts[reaction.reactant_indices]
            if np.any(n <= 0.0):
                out[r_idx] = 0.0
                continue
            if self.law == "power":
                mass_action = float(np.prod(n ** reaction.reactant_stoichiometry))
            else:
                mass_action = 1.0
                for n_s, nu in zip(n, reaction.reactant_stoichiometry):
                    for i in range(int(nu)):
                        mass_action *= max(0.0, n_s - i)
            out[r_idx] = self._base[r_idx] * mass_action * coupling
        return out

    def propensity(self, reaction_index: int, concentrations: np.ndarray,
                   coupling: float = 1.0) -> float:
        return float(self.cell_propensities(concentrations, coupling)[reaction_index])


def default_pheromone_reactions() -> List[ReactionDefinition]:
    """Standard ant pheromone reaction set (requires the default species)."""
    return [
        ReactionDefinition("trail_decay", (("trail", 1),), (),
                           rate_constant=0.002, activation_energy=25000.0,
                           reference_temperature=298.0),
        ReactionDefinition("alarm_decay", (("alarm", 1),), (),
                           rate_constant=0.005, activation_energy=20000.0,
                           reference_temperature=298.0),
        # alarm is preserved: it suppresses trail without being consumed
        ReactionDefinition("alarm_trail_inhibition", (("alarm", 1), ("trail", 1)),
                           (("alarm", 1),),
                           rate_constant=0.1, activation_energy=15000.0,
                           reference_temperature=298.0),
        ReactionDefinition("recruitment_amplification", (("trail", 2), ("food", 1)),
                           (("trail", 2), ("recruitment", 1), ("food", 1)),
                           rate_constant=0.05, activation_energy=30000.0,
                           reference_temperature=298.0),
    ]
