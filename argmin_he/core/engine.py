"""
Cryptographic Engine Contract
=============================
The protocol never implements homomorphic math itself. It drives an
EngineSession: one role's view of the cryptographic engine, owning every
context and key that role has generated or loaded.

Engines keep process-wide caches (eval keys, registered contexts). A session
therefore exposes an explicit, idempotent reset() that clears them; a role
calls it before loading material so that nothing leaks between runs.
"""

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .parameters import ParameterSet


class ArtifactKind(Enum):
    """Declared type of a published artifact. There is no secret-key kind."""
    CRYPTO_CONTEXT = "crypto_context"
    PUBLIC_KEY = "public_key"
    MULT_KEY = "mult_key"
    ROTATION_KEY = "rotation_key"
    SWITCH_KEY = "switch_key"
    COMPARISON_CONTEXT = "comparison_context"
    REFRESH_KEY = "refresh_key"
    KEY_SWITCH_KEY = "key_switch_key"
    CIPHERTEXT = "ciphertext"


# Kinds a deserializer installs into the session instead of returning a value
INSTALLED_KINDS = frozenset({
    ArtifactKind.CRYPTO_CONTEXT,
    ArtifactKind.MULT_KEY,
    ArtifactKind.ROTATION_KEY,
    ArtifactKind.SWITCH_KEY,
    ArtifactKind.COMPARISON_CONTEXT,
})


@dataclass
class KeyPair:
    """
    Asymmetric key material produced by the publisher.

    The secret half stays inside the publisher's session and process;
    only public_key is ever serialized.
    """
    public_key: Any
    secret_key: Any = field(repr=False)
    key_id: str = ""

    def public_only(self) -> 'KeyPair':
        return KeyPair(public_key=self.public_key, secret_key=None, key_id=self.key_id)


@dataclass
class Ciphertext:
    """Engine ciphertext handle with the metadata the protocol relies on"""
    handle: Any = field(repr=False)
    slots: int
    scheme: str = "CKKS"
    key_id: str = ""

    def metadata(self) -> dict:
        return {'slots': self.slots, 'scheme': self.scheme, 'key_id': self.key_id}


@dataclass
class BootstrapKeyBundle:
    """FHEW bootstrapping material for one baseG value; base_g None is the default bundle"""
    base_g: Optional[int]
    refresh_key: Any = field(repr=False)
    key_switch_key: Any = field(repr=False)


class EngineSession(ABC):
    """
    One role's handle on the cryptographic engine.

    Publisher sessions generate material; worker sessions deserialize it.
    Implementations wrap engine exceptions into the protocol error types
    (ConfigurationError, ArtifactCorrupt, EvaluationFailure).
    """

    name = "engine"

    # ==================== LIFECYCLE ====================

    @abstractmethod
    def reset(self):
        """Drop every context and key this process holds. Idempotent."""

    @property
    @abstractmethod
    def has_context(self) -> bool:
        """True once a context was generated or loaded"""

    # ==================== PUBLISHER ====================

    @abstractmethod
    def generate_context(self, params: ParameterSet):
        """Create the CKKS context with scheme switching enabled"""

    @abstractmethod
    def generate_key_pair(self) -> KeyPair:
        """Generate a fresh key pair in the current context"""

    @abstractmethod
    def generate_scheme_switching_keys(self, key_pair: KeyPair, params: ParameterSet):
        """
        Generate evaluation keys, the FHEW->CKKS switching key, the
        comparison context and one bootstrapping bundle per baseG.
        """

    @abstractmethod
    def bootstrap_bundles(self) -> Dict[int, BootstrapKeyBundle]:
        """Bundles held by the comparison context, keyed by baseG"""

    @abstractmethod
    def default_bootstrap_bundle(self) -> BootstrapKeyBundle:
        """Bundle the comparison context uses when no baseG is given"""

    @abstractmethod
    def encrypt(self, public_key: Any, values: Sequence[float]) -> Ciphertext:
        """Encrypt real values into a packed CKKS ciphertext"""

    @abstractmethod
    def decrypt(self, secret_key: Any, ciphertext: Ciphertext, length: int) -> List[float]:
        """Decrypt and return the real part of the first `length` slots"""

    # ==================== SERIALIZATION ====================

    @abstractmethod
    def serialize(self, kind: ArtifactKind, obj: Any = None) -> bytes:
        """
        Serialize one artifact.

        For kinds held by the session (context, eval keys, switch key,
        comparison context) obj is ignored; for the others it is the
        public key, ciphertext handle, or bundle key to encode.
        """

    @abstractmethod
    def deserialize(self, kind: ArtifactKind, payload: bytes) -> Any:
        """
        Deserialize one artifact.

        INSTALLED_KINDS are loaded into the session and None is returned;
        other kinds return the decoded object.
        """

    @abstractmethod
    def load_bootstrap_bundle(self, bundle: BootstrapKeyBundle, default: bool = False):
        """Install a bundle into the comparison context (under its baseG, or as default)"""

    # ==================== EVALUATION ====================

    @abstractmethod
    def comparison_beta(self) -> int:
        """Noise bound beta of the comparison (FHEW) scheme"""

    @abstractmethod
    def precompute_comparison(self, p_lwe: int, scale_sign: float):
        """Fix the plaintext modulus and sign scaling used by comparisons"""

    @abstractmethod
    def eval_argmin(self,
                    ciphertext: Ciphertext,
                    public_key: Any,
                    num_values: int,
                    num_slots: int,
                    first_index: int = 0) -> List[Ciphertext]:
        """
        Return [minimum, argmin indicator] as CKKS ciphertexts.

        Compares the num_values slots starting at first_index.
        """


def key_fingerprint(payload: bytes) -> str:
    """Short identifier for key material, derived from its serialization"""
    return hashlib.sha256(payload).hexdigest()[:16]
