"""
Argmin HE - Outsourced argmin over CKKS/FHEW scheme switching
A publisher encrypts a vector and publishes its key material as artifacts;
a worker loads them, evaluates argmin homomorphically and returns the result.
"""

from .orchestrator import ProtocolOrchestrator, ProtocolState, RunResult

__all__ = ['ProtocolOrchestrator', 'ProtocolState', 'RunResult']
__version__ = '1.0.0'
