from .abstract import ENERGY_TERMS, MDEngine
from .dummy import ArrayEngine

__all__ = ["ENERGY_TERMS", "MDEngine", "ArrayEngine"]
