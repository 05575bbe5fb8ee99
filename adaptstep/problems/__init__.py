"""Reference problems implementing the collaborator interfaces."""
from .fisher_kpp import FisherKPPSetup, build_problem

__all__ = ["FisherKPPSetup", "build_problem"]
