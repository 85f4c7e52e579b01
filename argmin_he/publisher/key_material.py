"""
Key Material Generator
======================
Publisher-side generation of everything the worker needs.

Key Distribution Model:
1. Publisher builds the CKKS context from the ParameterSet
2. Publisher generates its key pair, evaluation keys, the FHEW->CKKS
   switching key and one bootstrapping bundle per baseG
3. Publisher encrypts its data vector under the fresh public key
4. Everything except the secret key is turned into ArtifactRecords

Generation is one-shot: the generator keeps no state between calls; the
engine session it drives is reset before every new context.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import numpy as np

from ..core.artifact_store import ArtifactRecord, ArtifactStore, DATA_TYPES
from ..core.engine import ArtifactKind, BootstrapKeyBundle, Ciphertext, EngineSession, KeyPair
from ..core.errors import ConfigurationError, KeyMismatch
from ..core.parameters import (
    ArtifactNames,
    ParameterSet,
    COMPARISON_CONTEXT,
    CONTEXT,
    INITIAL_CIPHERTEXT,
    KEY_SWITCH_KEY,
    MULT_KEY,
    PUBLIC_KEY,
    REFRESH_KEY,
    ROTATION_KEY,
    SWITCH_KEY,
)
from ..core.security_logger import DataType, OperationType, PUBLISHER, SecurityLogger


def pad_vector(values: Sequence[float], slots: int) -> List[float]:
    """
    Fill the vector up to slots with a value above its maximum.

    The argmin tree compares a power-of-two window, so every slot the
    scheme-switching keys were set up for takes part; the filler can never
    be the minimum.
    """
    values = [float(v) for v in values]
    filler = max(values) + 1.0
    return values + [filler] * (slots - len(values))


@dataclass
class GeneratedMaterial:
    """
    Everything one generation run produced, by name.

    The secret key lives in key_pair and never leaves the publisher.
    """
    params: ParameterSet
    key_pair: KeyPair
    initial_ciphertext: Ciphertext
    plaintext: List[float]
    padded: List[float]
    bootstrap_bundles: Dict[int, BootstrapKeyBundle]
    default_bundle: BootstrapKeyBundle
    generated_at: str = field(default_factory=lambda: datetime.now().isoformat())
    generation_time_ms: float = 0.0

    @property
    def vector_size(self) -> int:
        return len(self.plaintext)

    def expected_indicator(self) -> List[float]:
        """One-hot indicator of the first minimal entry"""
        indicator = [0.0] * self.vector_size
        indicator[int(np.argmin(self.plaintext))] = 1.0
        return indicator

    def summary(self) -> dict:
        return {
            'key_id': self.key_pair.key_id,
            'vector_size': self.vector_size,
            'slots': self.initial_ciphertext.slots,
            'padding': self.padded[self.vector_size:],
            'base_g': sorted(self.bootstrap_bundles),
            'generated_at': self.generated_at,
            'generation_time_ms': round(self.generation_time_ms, 2)
        }


class KeyMaterialGenerator:
    """
    Drives a publisher EngineSession through context and key generation.

    Usage:
        generator = KeyMaterialGenerator(session)
        generator.build_context(params)
        material = generator.generate_keys(params, [1.0, 2.0, 3.0, 4.0])
        records = generator.build_records(material, names)
    """

    def __init__(self,
                 session: EngineSession,
                 security_logger: Optional[SecurityLogger] = None):
        """
        Args:
            session: Publisher engine session
            security_logger: Security audit logger
        """
        self.session = session
        self.logger = security_logger

    def build_context(self, params: ParameterSet):
        """
        Reset the engine and create a fresh context.

        Raises:
            ConfigurationError: If the parameters are invalid or rejected
        """
        params.validate()
        self.session.reset()
        self.session.generate_context(params)

        if self.logger:
            self.logger.log(PUBLISHER, OperationType.GENERATE, [DataType.PUBLIC_PARAM],
                            {'step': 'context', 'engine': self.session.name, **params.to_dict()})

    def generate_keys(self, params: ParameterSet, values: Sequence[float]) -> GeneratedMaterial:
        """
        Generate keys, switching material and the initial ciphertext.

        Args:
            params: The ParameterSet the context was built with
            values: Data vector to encrypt (at most batch_size entries; padded
                to batch_size before encryption)

        Returns:
            GeneratedMaterial with named fields

        Raises:
            ConfigurationError: If the vector does not fit the context
            KeyMismatch: If a requested baseG has no bootstrapping bundle
        """
        values = [float(v) for v in values]
        if not values:
            raise ConfigurationError("Data vector is empty", phase="KEYS_GENERATED")
        if len(values) > params.batch_size:
            raise ConfigurationError(
                f"Data vector has {len(values)} entries but batch_size is {params.batch_size}",
                phase="KEYS_GENERATED"
            )
        if not np.all(np.isfinite(values)):
            raise ConfigurationError("Data vector contains non-finite values",
                                     phase="KEYS_GENERATED")

        start_time = time.time()

        key_pair = self.session.generate_key_pair()
        self.session.generate_scheme_switching_keys(key_pair, params)

        bundles = self.session.bootstrap_bundles()
        missing = [b for b in params.base_g_list if b not in bundles]
        if missing:
            raise KeyMismatch(
                f"Engine produced bootstrapping keys for baseG {sorted(bundles)}, "
                f"not for requested {missing}",
                phase="KEYS_GENERATED"
            )
        requested = {b: bundles[b] for b in params.base_g_list}

        padded = pad_vector(values, params.batch_size)
        ciphertext = self.session.encrypt(key_pair.public_key, padded)
        ciphertext.key_id = key_pair.key_id

        if self.logger:
            self.logger.log(PUBLISHER, OperationType.GENERATE,
                            [DataType.SECRET_KEY, DataType.PUBLIC_KEY],
                            {'step': 'keys', 'key_id': key_pair.key_id,
                             'base_g': list(params.base_g_list)})
            self.logger.log(PUBLISHER, OperationType.ENCRYPT,
                            [DataType.PLAINTEXT, DataType.CIPHERTEXT],
                            {'vector_size': len(values), 'slots': ciphertext.slots})

        return GeneratedMaterial(
            params=params,
            key_pair=key_pair,
            initial_ciphertext=ciphertext,
            plaintext=values,
            padded=padded,
            bootstrap_bundles=requested,
            default_bundle=self.session.default_bootstrap_bundle(),
            generation_time_ms=(time.time() - start_time) * 1000
        )

    def generate(self, params: ParameterSet, values: Sequence[float]) -> GeneratedMaterial:
        """One-shot: build the context, then generate all material"""
        self.build_context(params)
        return self.generate_keys(params, values)

    # ==================== ARTIFACT CATALOG ====================

    def build_records(self,
                      material: GeneratedMaterial,
                      names: ArtifactNames) -> List[ArtifactRecord]:
        """
        Serialize every worker-facing artifact, in publish order.

        The secret key has no ArtifactKind and is never part of the result.
        """
        session = self.session
        key_id = material.key_pair.key_id
        common = {'key_id': key_id}

        records = [
            ArtifactRecord(CONTEXT, ArtifactKind.CRYPTO_CONTEXT,
                           session.serialize(ArtifactKind.CRYPTO_CONTEXT), dict(common)),
            ArtifactRecord(PUBLIC_KEY, ArtifactKind.PUBLIC_KEY,
                           session.serialize(ArtifactKind.PUBLIC_KEY, material.key_pair.public_key),
                           dict(common)),
            ArtifactRecord(MULT_KEY, ArtifactKind.MULT_KEY,
                           session.serialize(ArtifactKind.MULT_KEY), dict(common)),
            ArtifactRecord(ROTATION_KEY, ArtifactKind.ROTATION_KEY,
                           session.serialize(ArtifactKind.ROTATION_KEY), dict(common)),
            ArtifactRecord(SWITCH_KEY, ArtifactKind.SWITCH_KEY,
                           session.serialize(ArtifactKind.SWITCH_KEY), dict(common)),
            ArtifactRecord(COMPARISON_CONTEXT, ArtifactKind.COMPARISON_CONTEXT,
                           session.serialize(ArtifactKind.COMPARISON_CONTEXT),
                           {**common, 'log_q_lwe': material.params.log_q_lwe,
                            'base_g': sorted(material.bootstrap_bundles)}),
        ]

        records.extend(self._bundle_records(material.default_bundle, REFRESH_KEY,
                                            KEY_SWITCH_KEY, common))
        for base_g, bundle in material.bootstrap_bundles.items():
            records.extend(self._bundle_records(bundle,
                                                names.refresh_key_name(base_g),
                                                names.key_switch_key_name(base_g),
                                                {**common, 'base_g': base_g}))

        ciphertext = material.initial_ciphertext
        records.append(ArtifactRecord(
            INITIAL_CIPHERTEXT, ArtifactKind.CIPHERTEXT,
            session.serialize(ArtifactKind.CIPHERTEXT, ciphertext.handle),
            {**ciphertext.metadata(), 'vector_size': material.vector_size}
        ))
        return records

    def _bundle_records(self,
                        bundle: BootstrapKeyBundle,
                        refresh_name: str,
                        key_switch_name: str,
                        metadata: dict) -> List[ArtifactRecord]:
        return [
            ArtifactRecord(refresh_name, ArtifactKind.REFRESH_KEY,
                           self.session.serialize(ArtifactKind.REFRESH_KEY, bundle.refresh_key),
                           dict(metadata)),
            ArtifactRecord(key_switch_name, ArtifactKind.KEY_SWITCH_KEY,
                           self.session.serialize(ArtifactKind.KEY_SWITCH_KEY, bundle.key_switch_key),
                           dict(metadata)),
        ]

    def publish(self, records: List[ArtifactRecord], store: ArtifactStore):
        """
        Write every record. The first failure propagates; there is no
        partial-publish recovery.
        """
        for record in records:
            store.put_record(record)
            if self.logger:
                self.logger.log_publish(PUBLISHER, record.name, DATA_TYPES[record.kind],
                                        len(record.payload))
