from magnus.specialists.base import SpecialistAgent, SpecialistResponse
from magnus.specialists.invoker import SpecialistInvoker
from magnus.specialists.roles import ROLE_CATALOGUE, build_specialists

__all__ = [
    "ROLE_CATALOGUE",
    "SpecialistAgent",
    "SpecialistInvoker",
    "SpecialistResponse",
    "build_specialists",
]
