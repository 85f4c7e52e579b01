"""
Argmin HE Publisher Module
"""
from .key_material import KeyMaterialGenerator, GeneratedMaterial
from .verifier import Verifier, VerificationReport

__all__ = ['KeyMaterialGenerator', 'GeneratedMaterial', 'Verifier', 'VerificationReport']
