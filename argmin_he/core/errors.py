"""
Protocol Errors
===============
Typed failures of the publish / compute / verify protocol.

Every error is fatal for the run that raised it. The orchestrator catches
them in one place and decides termination; nothing below it retries.
"""

from typing import Optional


class ProtocolError(ValueError):
    """Base class for every failure of a protocol run"""

    kind = "protocol_error"

    def __init__(self,
                 message: str,
                 phase: Optional[str] = None,
                 artifact: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.artifact = artifact

    def describe(self) -> str:
        """Human readable message naming the failing phase and artifact"""
        parts = [self.kind]
        if self.phase:
            parts.append(f"phase={self.phase}")
        if self.artifact:
            parts.append(f"artifact={self.artifact}")
        return f"[{' '.join(parts)}] {self.message}"

    def to_dict(self) -> dict:
        return {
            'kind': self.kind,
            'message': self.message,
            'phase': self.phase,
            'artifact': self.artifact
        }


class ConfigurationError(ProtocolError):
    """Invalid parameter combination at context-generation time"""
    kind = "configuration_error"


class ArtifactMissing(ProtocolError):
    """Expected artifact name not present in the store"""
    kind = "artifact_missing"


class ArtifactCorrupt(ProtocolError):
    """Payload present but does not decode into its declared type"""
    kind = "artifact_corrupt"


class ArtifactOverwrite(ProtocolError):
    """Second write to a name already published in this run"""
    kind = "artifact_overwrite"


class KeyMismatch(ProtocolError):
    """Bootstrapping bundle baseG differs from the one the worker expects"""
    kind = "key_mismatch"


class EvaluationFailure(ProtocolError):
    """Homomorphic evaluation contract violated (missing keys, no precompute)"""
    kind = "evaluation_failure"


class VerificationFailure(ProtocolError):
    """Decrypted result does not match the expected plaintext indicator"""
    kind = "verification_failure"


class ProtocolStateError(ProtocolError):
    """Step invoked out of order, or after the run already failed"""
    kind = "protocol_state_error"


class StoreUnavailable(ProtocolError):
    """Store backend failed to read or write (I/O or transport error)"""
    kind = "store_unavailable"
