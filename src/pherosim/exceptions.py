"""
Exception hierarchy for the chemical field engine.

Configuration problems are raised while the system is being built, never
mid-simulation. Numerical clamping and early returns under the event cap
are not errors and are reported through counters and step results.
"""


class ChemistryError(Exception):
    """Base class for all errors raised by pherosim."""


class UnknownSpeciesError(ChemistryError, KeyError):
    """An operation referenced a species id that is not registered."""

    def __init__(self, species_id):
        self.species_id = species_id
        super().__init__(f"Unknown species: {species_id!r}")

    def __str__(self) -> str:
        return self.args[0]


class UnknownReactionError(ChemistryError, KeyError):
    """An operation referenced a reaction id that is not registered."""

    def __init__(self, reaction_id):
        self.reaction_id = reaction_id
        super().__init__(f"Unknown reaction: {reaction_id!r}")

    def __str__(self) -> str:
        return self.args[0]


class InvalidConfigurationError(ChemistryError, ValueError):
    """The configuration cannot produce a stable, consistent simulation."""


class RegistryFrozenError(InvalidConfigurationError):
    """Registration attempted after grids were allocated."""
