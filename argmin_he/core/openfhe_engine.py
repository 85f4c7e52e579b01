"""
OpenFHE Engine Session
======================
EngineSession backed by the OpenFHE Python bindings (`openfhe`).

CKKS carries the data vector; comparisons run in FHEW through OpenFHE's
scheme switching (CKKS -> FHEW sign evaluation -> CKKS). Objects are
serialized with OpenFHE's BINARY format through a scratch file, the same
file-based calls OpenFHE's own serialization examples use, and the bytes
are handed to the artifact store.

Parameters:
- Security level HEStd_NotSet / FHEW TOY: correctness runs only
- FLEXIBLEAUTO scaling
- Intermediate switching modulus of 27 bits
"""

import os
import tempfile
from typing import Any, Callable, Dict, List, Optional, Sequence

import openfhe

from .engine import (
    ArtifactKind,
    BootstrapKeyBundle,
    Ciphertext,
    EngineSession,
    KeyPair,
    key_fingerprint,
)
from .errors import ArtifactCorrupt, ConfigurationError, EvaluationFailure
from .parameters import ParameterSet


INTERMEDIATE_SWITCH_MOD_SIZE = 27

# pybind11 surfaces OpenFHE's C++ exceptions as these
ENGINE_ERRORS = (RuntimeError, ValueError, TypeError)

FEATURES = (
    openfhe.PKESchemeFeature.PKE,
    openfhe.PKESchemeFeature.KEYSWITCH,
    openfhe.PKESchemeFeature.LEVELEDSHE,
    openfhe.PKESchemeFeature.ADVANCEDSHE,
    openfhe.PKESchemeFeature.FHE,
    openfhe.PKESchemeFeature.SCHEMESWITCH,
)


class OpenFHESession(EngineSession):
    """
    One role's OpenFHE state.

    OpenFHE keeps eval keys and contexts in process-wide registries;
    reset() clears them so the worker cannot pick up a previous run's keys.
    """

    name = "openfhe"

    def __init__(self):
        self._context = None
        self._bin_context = None
        self._raw_key_pair = None
        self._params: Optional[ParameterSet] = None

    # ==================== LIFECYCLE ====================

    def reset(self):
        openfhe.ClearEvalMultKeys()
        openfhe.ClearEvalAutomorphismKeys()
        openfhe.ClearEvalSumKeys()
        openfhe.ReleaseAllContexts()
        self._context = None
        self._bin_context = None
        self._raw_key_pair = None
        self._params = None

    @property
    def has_context(self) -> bool:
        return self._context is not None

    def _require_context(self):
        if self._context is None:
            raise EvaluationFailure("No crypto context generated or loaded")
        return self._context

    def _require_bin_context(self):
        if self._bin_context is None:
            raise EvaluationFailure("No comparison (FHEW) context generated or loaded")
        return self._bin_context

    # ==================== PUBLISHER ====================

    def generate_context(self, params: ParameterSet):
        parameters = openfhe.CCParamsCKKSRNS()
        parameters.SetMultiplicativeDepth(params.mult_depth)
        parameters.SetSecurityLevel(openfhe.SecurityLevel.HEStd_NotSet)
        parameters.SetRingDim(params.ring_dim)
        parameters.SetBatchSize(params.batch_size)
        parameters.SetScalingModSize(params.scale_mod_size)
        parameters.SetFirstModSize(params.first_mod_size)
        parameters.SetScalingTechnique(openfhe.ScalingTechnique.FLEXIBLEAUTO)

        try:
            context = openfhe.GenCryptoContext(parameters)
            for feature in FEATURES:
                context.Enable(feature)
        except ENGINE_ERRORS as e:
            raise ConfigurationError(f"OpenFHE rejected the parameter set: {e}",
                                     phase="CONTEXT_READY") from e

        self._context = context
        self._params = params

    def generate_key_pair(self) -> KeyPair:
        context = self._require_context()
        raw = context.KeyGen()
        self._raw_key_pair = raw
        public_bytes = self.serialize(ArtifactKind.PUBLIC_KEY, raw.publicKey)
        return KeyPair(
            public_key=raw.publicKey,
            secret_key=raw.secretKey,
            key_id=key_fingerprint(public_bytes)
        )

    def generate_scheme_switching_keys(self, key_pair: KeyPair, params: ParameterSet):
        context = self._require_context()
        if self._raw_key_pair is None or self._raw_key_pair.publicKey is not key_pair.public_key:
            raise EvaluationFailure("Scheme switching keys requested for a foreign key pair")

        switch_params = openfhe.SchSwchParams()
        switch_params.SetSecurityLevelCKKS(openfhe.SecurityLevel.HEStd_NotSet)
        switch_params.SetSecurityLevelFHEW(openfhe.BINFHE_PARAMSET.TOY)
        switch_params.SetArbitraryFunctionEvaluation(False)
        switch_params.SetCtxtModSizeFHEWLargePrec(params.log_q_lwe)
        switch_params.SetCtxtModSizeFHEWIntermedSwch(INTERMEDIATE_SWITCH_MOD_SIZE)
        switch_params.SetNumSlotsCKKS(params.batch_size)
        switch_params.SetNumValues(params.batch_size)
        switch_params.SetComputeArgmin(True)
        switch_params.SetOneHotEncoding(params.one_hot)

        try:
            fhew_secret_key = context.EvalSchemeSwitchingSetup(switch_params)
            context.EvalSchemeSwitchingKeyGen(self._raw_key_pair, fhew_secret_key)
            self._bin_context = context.GetBinCCForSchemeSwitch()
        except ENGINE_ERRORS as e:
            raise ConfigurationError(f"Scheme switching setup failed: {e}",
                                     phase="KEYS_GENERATED") from e

    def bootstrap_bundles(self) -> Dict[int, BootstrapKeyBundle]:
        bin_context = self._require_bin_context()
        return {
            int(base_g): BootstrapKeyBundle(base_g=int(base_g),
                                            refresh_key=key.BSkey,
                                            key_switch_key=key.KSkey)
            for base_g, key in bin_context.GetBTKeyMap().items()
        }

    def default_bootstrap_bundle(self) -> BootstrapKeyBundle:
        bin_context = self._require_bin_context()
        return BootstrapKeyBundle(base_g=None,
                                  refresh_key=bin_context.GetRefreshKey(),
                                  key_switch_key=bin_context.GetSwitchKey())

    def encrypt(self, public_key: Any, values: Sequence[float]) -> Ciphertext:
        context = self._require_context()
        try:
            plaintext = context.MakeCKKSPackedPlaintext([float(v) for v in values])
            handle = context.Encrypt(public_key, plaintext)
        except ENGINE_ERRORS as e:
            raise EvaluationFailure(f"Encryption failed: {e}") from e
        slots = self._params.batch_size if self._params else len(values)
        return Ciphertext(handle=handle, slots=slots)

    def decrypt(self, secret_key: Any, ciphertext: Ciphertext, length: int) -> List[float]:
        context = self._require_context()
        if secret_key is None:
            raise EvaluationFailure("Cannot decrypt: no secret key in this session")
        try:
            plaintext = context.Decrypt(secret_key, ciphertext.handle)
            plaintext.SetLength(length)
            values = plaintext.GetRealPackedValue()
        except ENGINE_ERRORS as e:
            raise EvaluationFailure(f"Decryption failed: {e}") from e
        return [float(v) for v in values[:length]]

    # ==================== SERIALIZATION ====================

    def _to_bytes(self, kind: ArtifactKind, write: Callable[[str], bool]) -> bytes:
        with tempfile.TemporaryDirectory(prefix="argmin-he-") as scratch:
            path = os.path.join(scratch, f"{kind.value}.bin")
            try:
                ok = write(path)
            except ENGINE_ERRORS as e:
                raise EvaluationFailure(f"OpenFHE could not serialize {kind.value}: {e}") from e
            if ok is False or not os.path.exists(path):
                raise EvaluationFailure(f"OpenFHE could not serialize {kind.value}")
            with open(path, 'rb') as f:
                return f.read()

    def _from_bytes(self, kind: ArtifactKind, payload: bytes, read: Callable[[str], Any]) -> Any:
        with tempfile.TemporaryDirectory(prefix="argmin-he-") as scratch:
            path = os.path.join(scratch, f"{kind.value}.bin")
            with open(path, 'wb') as f:
                f.write(payload)
            try:
                result = read(path)
            except ENGINE_ERRORS as e:
                raise ArtifactCorrupt(f"OpenFHE could not decode {kind.value}: {e}") from e

        # Deserialize* helpers return (object, ok); the key loaders return ok
        if isinstance(result, tuple):
            obj, ok = result
        else:
            obj, ok = None, result
        if not ok:
            raise ArtifactCorrupt(f"OpenFHE could not decode {kind.value}")
        return obj

    def serialize(self, kind: ArtifactKind, obj: Any = None) -> bytes:
        binary = openfhe.BINARY

        if kind == ArtifactKind.CRYPTO_CONTEXT:
            context = self._require_context()
            return self._to_bytes(kind, lambda p: openfhe.SerializeToFile(p, context, binary))
        if kind == ArtifactKind.MULT_KEY:
            context = self._require_context()
            return self._to_bytes(kind, lambda p: context.SerializeEvalMultKey(p, binary))
        if kind == ArtifactKind.ROTATION_KEY:
            context = self._require_context()
            return self._to_bytes(kind, lambda p: context.SerializeEvalAutomorphismKey(p, binary))
        if kind == ArtifactKind.SWITCH_KEY:
            switch_key = self._require_context().GetSwkFC()
            return self._to_bytes(kind, lambda p: openfhe.SerializeToFile(p, switch_key, binary))
        if kind == ArtifactKind.COMPARISON_CONTEXT:
            bin_context = self._require_bin_context()
            return self._to_bytes(kind, lambda p: openfhe.SerializeToFile(p, bin_context, binary))
        if kind in (ArtifactKind.PUBLIC_KEY, ArtifactKind.REFRESH_KEY,
                    ArtifactKind.KEY_SWITCH_KEY, ArtifactKind.CIPHERTEXT):
            if obj is None:
                raise EvaluationFailure(f"Nothing to serialize for {kind.value}")
            return self._to_bytes(kind, lambda p: openfhe.SerializeToFile(p, obj, binary))

        raise EvaluationFailure(f"Unsupported artifact kind {kind}")

    def deserialize(self, kind: ArtifactKind, payload: bytes) -> Any:
        binary = openfhe.BINARY

        if kind == ArtifactKind.CRYPTO_CONTEXT:
            self._context = self._from_bytes(
                kind, payload, lambda p: openfhe.DeserializeCryptoContext(p, binary))
            return None
        if kind == ArtifactKind.MULT_KEY:
            context = self._require_context()
            self._from_bytes(kind, payload, lambda p: context.DeserializeEvalMultKey(p, binary))
            return None
        if kind == ArtifactKind.ROTATION_KEY:
            context = self._require_context()
            self._from_bytes(kind, payload, lambda p: context.DeserializeEvalAutomorphismKey(p, binary))
            return None
        if kind == ArtifactKind.SWITCH_KEY:
            context = self._require_context()
            switch_key = self._from_bytes(
                kind, payload, lambda p: openfhe.DeserializeCiphertext(p, binary))
            context.SetSwkFC(switch_key)
            return None
        if kind == ArtifactKind.COMPARISON_CONTEXT:
            context = self._require_context()
            self._bin_context = self._from_bytes(
                kind, payload, lambda p: openfhe.DeserializeBinFHEContext(p, binary))
            context.SetBinCCForSchemeSwitch(self._bin_context)
            return None
        if kind == ArtifactKind.PUBLIC_KEY:
            return self._from_bytes(kind, payload, lambda p: openfhe.DeserializePublicKey(p, binary))
        if kind == ArtifactKind.REFRESH_KEY:
            return self._from_bytes(kind, payload, lambda p: openfhe.DeserializeRefreshKey(p, binary))
        if kind == ArtifactKind.KEY_SWITCH_KEY:
            return self._from_bytes(kind, payload, lambda p: openfhe.DeserializeSwitchingKey(p, binary))
        if kind == ArtifactKind.CIPHERTEXT:
            return self._from_bytes(kind, payload, lambda p: openfhe.DeserializeCiphertext(p, binary))

        raise ArtifactCorrupt(f"Unsupported artifact kind {kind}")

    def load_bootstrap_bundle(self, bundle: BootstrapKeyBundle, default: bool = False):
        bin_context = self._require_bin_context()
        key = openfhe.RingGSWBTKey()
        key.BSkey = bundle.refresh_key
        key.KSkey = bundle.key_switch_key
        try:
            if default:
                bin_context.BTKeyLoad(key)
            else:
                bin_context.BTKeyMapLoadSingleElement(bundle.base_g, key)
        except ENGINE_ERRORS as e:
            raise EvaluationFailure(f"Could not load bootstrapping keys: {e}") from e

    # ==================== EVALUATION ====================

    def comparison_beta(self) -> int:
        return int(self._require_bin_context().GetBeta())

    def precompute_comparison(self, p_lwe: int, scale_sign: float):
        context = self._require_context()
        try:
            context.EvalCompareSwitchPrecompute(p_lwe, scale_sign)
        except ENGINE_ERRORS as e:
            raise EvaluationFailure(f"Comparison precompute failed: {e}") from e

    def eval_argmin(self,
                    ciphertext: Ciphertext,
                    public_key: Any,
                    num_values: int,
                    num_slots: int,
                    first_index: int = 0) -> List[Ciphertext]:
        context = self._require_context()
        try:
            handle = ciphertext.handle
            if first_index:
                handle = context.EvalRotate(handle, first_index)
            results = context.EvalMinSchemeSwitching(handle, public_key,
                                                     num_values, num_slots)
        except ENGINE_ERRORS as e:
            raise EvaluationFailure(f"EvalMinSchemeSwitching failed: {e}") from e
        return [
            Ciphertext(handle=handle, slots=num_slots, scheme=ciphertext.scheme,
                       key_id=ciphertext.key_id)
            for handle in results
        ]
