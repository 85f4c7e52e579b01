"""
Argmin HE Worker Module
"""
from .compute_engine import RemoteComputeEngine, LoadedMaterial

__all__ = ['RemoteComputeEngine', 'LoadedMaterial']
