"""
Plaintext Engine Double
=======================
EngineSession that keeps values in the clear so the protocol layer can be
tested without OpenFHE. It enforces the same contract as the real engine:
keys belong to one context, decryption needs the matching secret key, and
argmin refuses to run before every key is loaded and precompute has run,
and only compares power-of-two windows.
"""

import hashlib
import json
import secrets
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from argmin_he.core.engine import (
    ArtifactKind,
    BootstrapKeyBundle,
    Ciphertext,
    EngineSession,
    KeyPair,
    key_fingerprint,
)
from argmin_he.core.errors import ArtifactCorrupt, EvaluationFailure
from argmin_he.core.parameters import ParameterSet


BETA = 128


def _public_id(secret_key: str) -> str:
    return hashlib.sha256(secret_key.encode('utf-8')).hexdigest()


class PlaintextSession(EngineSession):
    """In-memory stand-in for an OpenFHE session"""

    name = "plaintext"

    def __init__(self, produced_base_g: Optional[Sequence[int]] = None):
        """
        Args:
            produced_base_g: baseG values to generate bundles for instead of
                the requested ones (simulates an engine default mismatch)
        """
        self.produced_base_g = produced_base_g
        self.reset_count = 0
        self.reset()

    def reset(self):
        self.reset_count += 1
        self._context: Optional[dict] = None
        self._mult_key: Optional[dict] = None
        self._rotation_key: Optional[dict] = None
        self._switch_key: Optional[dict] = None
        self._comparison: Optional[dict] = None
        self._bundles: Dict[int, BootstrapKeyBundle] = {}
        self._default_bundle: Optional[BootstrapKeyBundle] = None
        self._loaded_bundles: Dict[Any, BootstrapKeyBundle] = {}
        self._precompute = None

    @property
    def has_context(self) -> bool:
        return self._context is not None

    def _require_context(self) -> dict:
        if self._context is None:
            raise EvaluationFailure("No crypto context generated or loaded")
        return self._context

    # ==================== PUBLISHER ====================

    def generate_context(self, params: ParameterSet):
        self._context = {'context_id': secrets.token_hex(8), 'params': params.to_dict()}

    def generate_key_pair(self) -> KeyPair:
        context = self._require_context()
        secret_key = secrets.token_hex(16)
        public_key = {'context_id': context['context_id'], 'key': _public_id(secret_key)}
        return KeyPair(public_key=public_key,
                       secret_key=secret_key,
                       key_id=key_fingerprint(self.serialize(ArtifactKind.PUBLIC_KEY, public_key)))

    def generate_scheme_switching_keys(self, key_pair: KeyPair, params: ParameterSet):
        context = self._require_context()
        owner = {'context_id': context['context_id'], 'key': key_pair.public_key['key']}
        self._mult_key = dict(owner)
        self._rotation_key = dict(owner)
        self._switch_key = dict(owner)
        self._comparison = {**owner, 'beta': BETA, 'log_q_lwe': params.log_q_lwe,
                            'one_hot': params.one_hot}

        base_g_list = self.produced_base_g if self.produced_base_g is not None else params.base_g_list
        self._bundles = {b: self._make_bundle(owner, b) for b in base_g_list}
        self._default_bundle = self._make_bundle(owner, None)

    @staticmethod
    def _make_bundle(owner: dict, base_g: Optional[int]) -> BootstrapKeyBundle:
        return BootstrapKeyBundle(base_g=base_g,
                                  refresh_key={**owner, 'part': 'refresh', 'base_g': base_g},
                                  key_switch_key={**owner, 'part': 'ks', 'base_g': base_g})

    def bootstrap_bundles(self) -> Dict[int, BootstrapKeyBundle]:
        return dict(self._bundles)

    def default_bootstrap_bundle(self) -> BootstrapKeyBundle:
        return self._default_bundle

    def encrypt(self, public_key: Any, values: Sequence[float]) -> Ciphertext:
        context = self._require_context()
        slots = context['params']['batch_size']
        padded = [float(v) for v in values] + [0.0] * (slots - len(values))
        return Ciphertext(handle={'key': public_key['key'], 'values': padded}, slots=slots)

    def decrypt(self, secret_key: Any, ciphertext: Ciphertext, length: int) -> List[float]:
        self._require_context()
        if secret_key is None or _public_id(secret_key) != ciphertext.handle['key']:
            raise EvaluationFailure("Secret key does not match the ciphertext")
        return list(ciphertext.handle['values'][:length])

    # ==================== SERIALIZATION ====================

    def serialize(self, kind: ArtifactKind, obj: Any = None) -> bytes:
        held = {
            ArtifactKind.CRYPTO_CONTEXT: self._context,
            ArtifactKind.MULT_KEY: self._mult_key,
            ArtifactKind.ROTATION_KEY: self._rotation_key,
            ArtifactKind.SWITCH_KEY: self._switch_key,
            ArtifactKind.COMPARISON_CONTEXT: self._comparison,
        }
        body = held[kind] if kind in held else obj
        if body is None:
            raise EvaluationFailure(f"Nothing to serialize for {kind.value}")
        return json.dumps({'kind': kind.value, 'body': body}).encode('utf-8')

    def deserialize(self, kind: ArtifactKind, payload: bytes) -> Any:
        try:
            data = json.loads(payload.decode('utf-8'))
            body = data['body']
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError) as e:
            raise ArtifactCorrupt(f"Cannot decode {kind.value}: {e}") from e
        if data.get('kind') != kind.value:
            raise ArtifactCorrupt(f"Payload is a {data.get('kind')}, not {kind.value}")

        if kind == ArtifactKind.CRYPTO_CONTEXT:
            self._context = body
            return None
        if kind in (ArtifactKind.MULT_KEY, ArtifactKind.ROTATION_KEY,
                    ArtifactKind.SWITCH_KEY, ArtifactKind.COMPARISON_CONTEXT):
            context = self._require_context()
            if body['context_id'] != context['context_id']:
                raise ArtifactCorrupt(f"{kind.value} belongs to another context")
            attribute = {
                ArtifactKind.MULT_KEY: '_mult_key',
                ArtifactKind.ROTATION_KEY: '_rotation_key',
                ArtifactKind.SWITCH_KEY: '_switch_key',
                ArtifactKind.COMPARISON_CONTEXT: '_comparison',
            }[kind]
            setattr(self, attribute, body)
            return None
        return body

    def load_bootstrap_bundle(self, bundle: BootstrapKeyBundle, default: bool = False):
        if self._comparison is None:
            raise EvaluationFailure("No comparison context loaded")
        self._loaded_bundles['default' if default else bundle.base_g] = bundle

    # ==================== EVALUATION ====================

    def comparison_beta(self) -> int:
        if self._comparison is None:
            raise EvaluationFailure("No comparison context loaded")
        return self._comparison['beta']

    def precompute_comparison(self, p_lwe: int, scale_sign: float):
        self._require_context()
        self._precompute = (p_lwe, scale_sign)

    def eval_argmin(self,
                    ciphertext: Ciphertext,
                    public_key: Any,
                    num_values: int,
                    num_slots: int,
                    first_index: int = 0) -> List[Ciphertext]:
        self._require_context()
        if self._mult_key is None or self._rotation_key is None:
            raise EvaluationFailure("Evaluation keys not loaded")
        if self._switch_key is None:
            raise EvaluationFailure("Scheme switching key not loaded")
        if 'default' not in self._loaded_bundles:
            raise EvaluationFailure("Bootstrapping keys not loaded")
        if self._precompute is None:
            raise EvaluationFailure("Comparison precompute has not run")
        if ciphertext.handle['key'] != self._switch_key['key']:
            raise EvaluationFailure("Ciphertext was encrypted under another key")
        if num_values < 1 or num_values & (num_values - 1):
            raise EvaluationFailure(f"Argmin tree needs a power-of-two window, got {num_values}")

        values = ciphertext.handle['values'][first_index:first_index + num_values]
        minimum = min(values)
        if self._comparison['one_hot']:
            indicator = [0.0] * num_slots
            indicator[values.index(minimum)] = 1.0
        else:
            indicator = [1.0 if v == minimum else 0.0 for v in values]
            indicator += [0.0] * (num_slots - len(indicator))

        key = ciphertext.handle['key']
        return [
            Ciphertext(handle={'key': key, 'values': [minimum] * num_slots}, slots=num_slots,
                       key_id=ciphertext.key_id),
            Ciphertext(handle={'key': key, 'values': indicator}, slots=num_slots,
                       key_id=ciphertext.key_id),
        ]


class WrongAnswerSession(PlaintextSession):
    """Worker session whose argmin always marks the last slot"""

    def eval_argmin(self, ciphertext, public_key, num_values, num_slots, first_index=0):
        results = super().eval_argmin(ciphertext, public_key, num_values, num_slots, first_index)
        indicator = [0.0] * num_slots
        indicator[num_values - 1] = 1.0
        results[1].handle = {'key': ciphertext.handle['key'], 'values': indicator}
        return results
