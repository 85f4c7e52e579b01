"""
Argmin HE - Core Module

The OpenFHE-backed session lives in core.openfhe_engine and is imported
explicitly, so the protocol layer loads without the engine installed.
"""
from .errors import (
    ProtocolError,
    ConfigurationError,
    ArtifactMissing,
    ArtifactCorrupt,
    ArtifactOverwrite,
    KeyMismatch,
    EvaluationFailure,
    VerificationFailure,
    ProtocolStateError,
    StoreUnavailable
)
from .parameters import ParameterSet, ArtifactNames, ProtocolConfig, load_config
from .engine import ArtifactKind, EngineSession, KeyPair, Ciphertext, BootstrapKeyBundle
from .artifact_store import (
    ArtifactRecord,
    ArtifactStore,
    MemoryArtifactStore,
    DirectoryArtifactStore,
    HttpArtifactStore
)
from .security_logger import SecurityLogger, DataType, OperationType

__all__ = [
    # Errors
    'ProtocolError', 'ConfigurationError', 'ArtifactMissing', 'ArtifactCorrupt',
    'ArtifactOverwrite', 'KeyMismatch', 'EvaluationFailure', 'VerificationFailure',
    'ProtocolStateError', 'StoreUnavailable',
    # Configuration
    'ParameterSet', 'ArtifactNames', 'ProtocolConfig', 'load_config',
    # Engine contract
    'ArtifactKind', 'EngineSession', 'KeyPair', 'Ciphertext', 'BootstrapKeyBundle',
    # Artifact store
    'ArtifactRecord', 'ArtifactStore', 'MemoryArtifactStore',
    'DirectoryArtifactStore', 'HttpArtifactStore',
    # Audit
    'SecurityLogger', 'DataType', 'OperationType'
]
