"""
Remote Compute Engine
=====================
The worker side of the protocol: loads published material, runs the
scheme-switching argmin on the encrypted vector and returns the result.

The worker is the UNTRUSTED party:
- It only ever reads public artifacts (context, public and evaluation keys,
  switching and bootstrapping keys, the initial ciphertext)
- It never holds a secret key and never sees plaintext
- Every artifact it reads is recorded in the security audit log

Evaluation contract:
1. load_artifacts() resets the engine, then loads everything in catalog order
2. precompute() runs once per loaded context
3. eval_argmin() is refused until all of the above happened
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..core.artifact_store import ArtifactRecord, ArtifactStore, DATA_TYPES
from ..core.engine import ArtifactKind, BootstrapKeyBundle, Ciphertext, EngineSession
from ..core.errors import EvaluationFailure, KeyMismatch
from ..core.parameters import (
    ArtifactNames,
    COMPARISON_CONTEXT,
    CONTEXT,
    INITIAL_CIPHERTEXT,
    KEY_SWITCH_KEY,
    MULT_KEY,
    PUBLIC_KEY,
    REFRESH_KEY,
    RESULT_CIPHERTEXT,
    ROTATION_KEY,
    SWITCH_KEY,
)
from ..core.security_logger import DataType, OperationType, SecurityLogger, WORKER


ARGMIN_OUTPUT = 1


@dataclass
class LoadedMaterial:
    """What the worker holds after load_artifacts()"""
    key_id: str = ""
    public_key: Any = field(default=None, repr=False)
    ciphertext: Optional[Ciphertext] = None
    vector_size: int = 0
    log_q_lwe: Optional[int] = None
    published_base_g: Optional[List[int]] = None
    context: bool = False
    eval_keys: bool = False
    switch_key: bool = False
    comparison_context: bool = False
    default_bundle: bool = False
    bundles: List[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'key_id': self.key_id,
            'vector_size': self.vector_size,
            'slots': self.ciphertext.slots if self.ciphertext else None,
            'log_q_lwe': self.log_q_lwe,
            'published_base_g': self.published_base_g,
            'context': self.context,
            'eval_keys': self.eval_keys,
            'switch_key': self.switch_key,
            'comparison_context': self.comparison_context,
            'default_bundle': self.default_bundle,
            'bundles': list(self.bundles)
        }


class RemoteComputeEngine:
    """
    Worker that evaluates argmin over a published ciphertext.

    Usage:
        worker = RemoteComputeEngine(session, names, base_g_list=[1 << 18])
        worker.load_artifacts(store)
        worker.precompute()
        results = worker.eval_argmin(worker.loaded.ciphertext, worker.loaded.public_key,
                                     num_values=4, num_outputs=4)
        worker.return_result(store)
    """

    def __init__(self,
                 session: EngineSession,
                 names: Optional[ArtifactNames] = None,
                 base_g_list: Sequence[int] = (),
                 security_logger: Optional[SecurityLogger] = None):
        """
        Args:
            session: Worker engine session (never given a secret key)
            names: Artifact naming used for baseG-indexed bundles
            base_g_list: baseG values the worker expects bundles for
            security_logger: Security audit logger
        """
        self.session = session
        self.names = names or ArtifactNames()
        self.base_g_list = [int(b) for b in base_g_list]
        self.logger = security_logger

        self.loaded = LoadedMaterial()
        self.precomputed = False
        self.results: List[Ciphertext] = []
        self.selected: Optional[Ciphertext] = None
        self.last_computation_ms = 0.0

    # ==================== LOADING ====================

    def _read(self, store: ArtifactStore, name: str, kind: ArtifactKind) -> ArtifactRecord:
        record = store.get_record(name, kind)
        self._check_key_id(record)
        if self.logger:
            self.logger.log_load(WORKER, name, DATA_TYPES[kind], len(record.payload))
        return record

    def _check_key_id(self, record: ArtifactRecord):
        # The public key fixes the run; every later artifact must belong to it
        key_id = record.metadata.get('key_id', '')
        if self.loaded.key_id and key_id and key_id != self.loaded.key_id:
            raise KeyMismatch(
                f"Artifact '{record.name}' belongs to key {key_id!r}, "
                f"loaded public key is {self.loaded.key_id!r}",
                artifact=record.name
            )

    def _install(self, store: ArtifactStore, name: str, kind: ArtifactKind):
        record = self._read(store, name, kind)
        self.session.deserialize(kind, record.payload)
        return record

    def reset(self):
        """Drop every context and key held by this worker. Idempotent."""
        self.session.reset()
        self.loaded = LoadedMaterial()
        self.precomputed = False
        self.results = []
        self.selected = None
        if self.logger:
            self.logger.log(WORKER, OperationType.RESET, [DataType.METADATA],
                            {'engine': self.session.name})

    def load_artifacts(self, store: ArtifactStore) -> LoadedMaterial:
        """
        Reset the engine, then load every published artifact.

        Load order follows the engine's dependencies: context first, then
        keys installed into it, the comparison context, the bootstrapping
        bundles it holds, the switching key, and finally the ciphertext.

        Raises:
            ArtifactMissing: If any expected artifact is absent
            ArtifactCorrupt: If a payload does not decode into its type
            KeyMismatch: If a bundle or artifact belongs to other key material
        """
        self.reset()
        loaded = self.loaded

        context_record = self._install(store, CONTEXT, ArtifactKind.CRYPTO_CONTEXT)
        loaded.context = True

        public_record = self._read(store, PUBLIC_KEY, ArtifactKind.PUBLIC_KEY)
        loaded.public_key = self.session.deserialize(ArtifactKind.PUBLIC_KEY,
                                                     public_record.payload)
        loaded.key_id = public_record.metadata.get('key_id', '')
        self._check_key_id(context_record)

        self._install(store, MULT_KEY, ArtifactKind.MULT_KEY)
        self._install(store, ROTATION_KEY, ArtifactKind.ROTATION_KEY)
        loaded.eval_keys = True

        comparison_record = self._install(store, COMPARISON_CONTEXT,
                                          ArtifactKind.COMPARISON_CONTEXT)
        loaded.comparison_context = True
        if 'log_q_lwe' in comparison_record.metadata:
            loaded.log_q_lwe = int(comparison_record.metadata['log_q_lwe'])
        if 'base_g' in comparison_record.metadata:
            loaded.published_base_g = [int(b) for b in comparison_record.metadata['base_g']]

        self.load_bundle(store, None, REFRESH_KEY, KEY_SWITCH_KEY)
        loaded.default_bundle = True
        for base_g in self.base_g_list:
            self._check_published(base_g)
            self.load_bundle(store, base_g,
                             self.names.refresh_key_name(base_g),
                             self.names.key_switch_key_name(base_g))
            loaded.bundles.append(base_g)

        self._install(store, SWITCH_KEY, ArtifactKind.SWITCH_KEY)
        loaded.switch_key = True

        ct_record = self._read(store, INITIAL_CIPHERTEXT, ArtifactKind.CIPHERTEXT)
        handle = self.session.deserialize(ArtifactKind.CIPHERTEXT, ct_record.payload)
        metadata = ct_record.metadata
        loaded.ciphertext = Ciphertext(handle=handle,
                                       slots=int(metadata['slots']),
                                       scheme=metadata.get('scheme', 'CKKS'),
                                       key_id=metadata.get('key_id', ''))
        loaded.vector_size = int(metadata.get('vector_size', loaded.ciphertext.slots))

        return loaded

    def _check_published(self, base_g: int):
        # Another baseG under the default names would otherwise surface as a missing artifact
        published = self.loaded.published_base_g
        if published is not None and base_g not in published:
            name = self.names.refresh_key_name(base_g)
            raise KeyMismatch(
                f"Bootstrapping keys were published for baseG {published}, expected {base_g}",
                artifact=name
            )

    def load_bundle(self,
                    store: ArtifactStore,
                    base_g: Optional[int],
                    refresh_name: str,
                    key_switch_name: str):
        """
        Load one bootstrapping bundle into the comparison context.

        Args:
            base_g: baseG the bundle must carry, or None for the default bundle
            refresh_name: Logical name of the refresh key artifact
            key_switch_name: Logical name of the key-switching key artifact

        Raises:
            KeyMismatch: If either half was published for another baseG
        """
        if not self.loaded.comparison_context:
            raise EvaluationFailure("Comparison context must be loaded before bootstrapping keys",
                                    artifact=refresh_name)

        halves = []
        for name, kind in ((refresh_name, ArtifactKind.REFRESH_KEY),
                           (key_switch_name, ArtifactKind.KEY_SWITCH_KEY)):
            record = self._read(store, name, kind)
            published = record.metadata.get('base_g')
            if published is not None:
                published = int(published)
            if published != base_g:
                raise KeyMismatch(
                    f"Bundle '{name}' was published for baseG {published}, expected {base_g}",
                    artifact=name
                )
            halves.append(self.session.deserialize(kind, record.payload))

        bundle = BootstrapKeyBundle(base_g=base_g, refresh_key=halves[0], key_switch_key=halves[1])
        self.session.load_bootstrap_bundle(bundle, default=base_g is None)

    # ==================== EVALUATION ====================

    def precompute(self, modulus_lwe: Optional[int] = None, scale_sign: float = 512.0) -> int:
        """
        Fix the comparison plaintext modulus: modulus_lwe / (2 * beta).

        Args:
            modulus_lwe: FHEW ciphertext modulus; defaults to 2^log_q_lwe as
                published with the comparison context
            scale_sign: Scaling applied before each sign evaluation

        Returns:
            The plaintext modulus used

        Raises:
            EvaluationFailure: If material is not loaded, or precompute
                already ran for this context
        """
        if not (self.loaded.context and self.loaded.comparison_context):
            raise EvaluationFailure("Precompute requires a loaded context and comparison context")
        if self.precomputed:
            raise EvaluationFailure("Comparison precompute already ran for this context")

        if modulus_lwe is None:
            if self.loaded.log_q_lwe is None:
                raise EvaluationFailure("FHEW modulus unknown: not published with the comparison context",
                                        artifact=COMPARISON_CONTEXT)
            modulus_lwe = 1 << self.loaded.log_q_lwe

        beta = self.session.comparison_beta()
        p_lwe = modulus_lwe // (2 * beta)
        if p_lwe < 1:
            raise EvaluationFailure(f"FHEW modulus {modulus_lwe} is too small for beta {beta}")

        self.session.precompute_comparison(p_lwe, scale_sign)
        self.precomputed = True

        if self.logger:
            self.logger.log(WORKER, OperationType.PRECOMPUTE, [DataType.PUBLIC_PARAM],
                            {'p_lwe': p_lwe, 'beta': beta, 'scale_sign': scale_sign})
        return p_lwe

    def _missing_material(self) -> List[str]:
        loaded = self.loaded
        missing = []
        if not loaded.context:
            missing.append(CONTEXT)
        if not loaded.eval_keys:
            missing.append(f"{MULT_KEY}/{ROTATION_KEY}")
        if not loaded.comparison_context:
            missing.append(COMPARISON_CONTEXT)
        if not loaded.default_bundle:
            missing.append(REFRESH_KEY)
        for base_g in self.base_g_list:
            if base_g not in loaded.bundles:
                missing.append(self.names.refresh_key_name(base_g))
        if not loaded.switch_key:
            missing.append(SWITCH_KEY)
        return missing

    def eval_argmin(self,
                    ciphertext: Ciphertext,
                    public_key: Any,
                    num_values: int,
                    num_outputs: int,
                    first_index: int = 0,
                    output_selector: int = ARGMIN_OUTPUT) -> List[Ciphertext]:
        """
        Evaluate minimum and argmin over num_values slots.

        Args:
            ciphertext: Encrypted vector
            public_key: Public key the ciphertext was encrypted under
            num_values: Number of slots compared (a power of two)
            num_outputs: Slot count of the result ciphertexts
            first_index: Slot of the first compared value
            output_selector: Which result is returned (0 = min, 1 = argmin)

        Returns:
            [minimum, argmin indicator]; the selected one is kept for return_result

        Raises:
            EvaluationFailure: If keys are missing, precompute has not run,
                or the slot range is invalid
        """
        missing = self._missing_material()
        if missing:
            raise EvaluationFailure(f"Evaluation keys not loaded: {', '.join(missing)}")
        if not self.precomputed:
            raise EvaluationFailure("eval_argmin called before comparison precompute")
        if num_values < 1:
            raise EvaluationFailure(f"num_values must be positive, got {num_values}")
        if num_values & (num_values - 1):
            raise EvaluationFailure(
                f"num_values must be a power of two for the argmin tree, got {num_values}"
            )
        if first_index < 0 or first_index + num_values > num_outputs:
            raise EvaluationFailure(
                f"Slots [{first_index}, {first_index + num_values}) exceed {num_outputs} outputs"
            )
        if num_outputs > ciphertext.slots:
            raise EvaluationFailure(
                f"num_outputs {num_outputs} exceeds the ciphertext's {ciphertext.slots} slots"
            )

        start_time = time.time()
        results = self.session.eval_argmin(ciphertext, public_key, num_values,
                                           num_outputs, first_index)
        self.last_computation_ms = (time.time() - start_time) * 1000

        if not 0 <= output_selector < len(results):
            raise EvaluationFailure(
                f"output_selector {output_selector} out of range for {len(results)} results"
            )
        self.results = results
        self.selected = results[output_selector]

        if self.logger:
            self.logger.log(WORKER, OperationType.EVALUATE,
                            [DataType.CIPHERTEXT, DataType.PUBLIC_KEY],
                            {'operation': 'argmin',
                             'num_values': num_values,
                             'num_outputs': num_outputs,
                             'first_index': first_index,
                             'output_selector': output_selector,
                             'computation_time_ms': round(self.last_computation_ms, 2)})
        return results

    def return_result(self, store: ArtifactStore) -> ArtifactRecord:
        """
        Publish the selected result ciphertext.

        Raises:
            EvaluationFailure: If nothing was evaluated
            ArtifactOverwrite: If a result was already returned
        """
        if self.selected is None:
            raise EvaluationFailure("No result to return: eval_argmin has not run",
                                    artifact=RESULT_CIPHERTEXT)

        record = ArtifactRecord(
            RESULT_CIPHERTEXT, ArtifactKind.CIPHERTEXT,
            self.session.serialize(ArtifactKind.CIPHERTEXT, self.selected.handle),
            self.selected.metadata()
        )
        store.put_record(record)

        if self.logger:
            self.logger.log(WORKER, OperationType.RETURN, [DataType.CIPHERTEXT],
                            {'artifact': RESULT_CIPHERTEXT, 'size_bytes': len(record.payload)})
        return record

    def run(self,
            store: ArtifactStore,
            output_selector: int = ARGMIN_OUTPUT,
            scale_sign: float = 512.0) -> ArtifactRecord:
        """Load, precompute, evaluate over every slot and return the result"""
        loaded = self.load_artifacts(store)
        self.precompute(scale_sign=scale_sign)
        self.eval_argmin(loaded.ciphertext, loaded.public_key,
                         num_values=loaded.ciphertext.slots,
                         num_outputs=loaded.ciphertext.slots,
                         output_selector=output_selector)
        return self.return_result(store)

    def get_stats(self) -> Dict[str, Any]:
        return {
            'engine': self.session.name,
            'loaded': self.loaded.to_dict(),
            'precomputed': self.precomputed,
            'results': len(self.results),
            'last_computation_ms': round(self.last_computation_ms, 2)
        }
