"""
Result Verifier
===============
Publisher-side check of the worker's argmin result.

Loads the result artifact, decrypts it with the retained secret key and
compares it with the indicator computed from the original plaintext.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

import numpy as np

from ..core.artifact_store import ArtifactStore, DATA_TYPES
from ..core.engine import ArtifactKind, Ciphertext, EngineSession
from ..core.errors import ArtifactCorrupt, VerificationFailure
from ..core.parameters import RESULT_CIPHERTEXT
from ..core.security_logger import DataType, OperationType, PUBLISHER, SecurityLogger
from .key_material import GeneratedMaterial


@dataclass
class VerificationReport:
    """Outcome of decrypting and checking the argmin result"""
    decrypted: List[float]
    expected: List[float]
    max_error: float
    one_hot: bool
    passed: bool
    tolerance: float
    verified_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def rounded(self) -> List[float]:
        return [round(v, 4) for v in self.decrypted]

    def to_dict(self) -> dict:
        return {
            'decrypted': self.rounded,
            'expected': self.expected,
            'max_error': self.max_error,
            'one_hot': self.one_hot,
            'passed': self.passed,
            'tolerance': self.tolerance,
            'verified_at': self.verified_at
        }


class Verifier:
    """
    Checks the returned result against the publisher's own data.

    One-hot mode: every slot must be within tolerance of the expected
    indicator. Non-one-hot mode is approximate: slots are thresholded at 0.5
    and only the first marked position is compared.
    """

    def __init__(self,
                 session: EngineSession,
                 tolerance: float = 0.05,
                 security_logger: Optional[SecurityLogger] = None):
        """
        Args:
            session: Publisher engine session (holds the context)
            tolerance: Maximum absolute error per slot in one-hot mode
            security_logger: Security audit logger
        """
        self.session = session
        self.tolerance = tolerance
        self.logger = security_logger

    def load_result(self, store: ArtifactStore, material: GeneratedMaterial) -> Ciphertext:
        record = store.get_record(RESULT_CIPHERTEXT, ArtifactKind.CIPHERTEXT)
        if record.metadata.get('key_id') != material.key_pair.key_id:
            raise ArtifactCorrupt(
                f"Result was computed under key {record.metadata.get('key_id')!r}, "
                f"expected {material.key_pair.key_id!r}",
                phase="VERIFIED", artifact=RESULT_CIPHERTEXT
            )
        handle = self.session.deserialize(ArtifactKind.CIPHERTEXT, record.payload)

        if self.logger:
            self.logger.log_load(PUBLISHER, RESULT_CIPHERTEXT, DATA_TYPES[record.kind],
                                 len(record.payload))

        return Ciphertext(handle=handle,
                          slots=int(record.metadata.get('slots', material.params.batch_size)),
                          scheme=record.metadata.get('scheme', 'CKKS'),
                          key_id=record.metadata.get('key_id', ''))

    def check(self, decrypted: List[float], material: GeneratedMaterial) -> VerificationReport:
        """Compare decrypted slots with the expected indicator"""
        expected = material.expected_indicator()
        observed = np.asarray(decrypted, dtype=float)
        target = np.asarray(expected, dtype=float)
        max_error = float(np.max(np.abs(observed - target)))

        one_hot = material.params.one_hot
        if one_hot:
            passed = max_error <= self.tolerance
        else:
            marked = np.flatnonzero(observed >= 0.5)
            passed = marked.size > 0 and int(marked[0]) == int(np.argmax(target))

        return VerificationReport(
            decrypted=[float(v) for v in observed],
            expected=expected,
            max_error=max_error,
            one_hot=one_hot,
            passed=bool(passed),
            tolerance=self.tolerance
        )

    def verify(self, store: ArtifactStore, material: GeneratedMaterial) -> VerificationReport:
        """
        Load, decrypt and check the result artifact.

        Raises:
            ArtifactMissing / ArtifactCorrupt: If the result cannot be loaded
            VerificationFailure: If the decrypted result does not match
        """
        result = self.load_result(store, material)
        decrypted = self.session.decrypt(material.key_pair.secret_key, result,
                                         material.vector_size)

        if self.logger:
            self.logger.log(PUBLISHER, OperationType.DECRYPT,
                            [DataType.CIPHERTEXT, DataType.SECRET_KEY, DataType.PLAINTEXT],
                            {'artifact': RESULT_CIPHERTEXT, 'authorized': True})

        report = self.check(decrypted, material)

        if self.logger:
            self.logger.log(PUBLISHER, OperationType.VERIFY, [DataType.PLAINTEXT],
                            report.to_dict())

        if not report.passed:
            raise VerificationFailure(
                f"Decrypted argmin {report.rounded} does not match expected {report.expected} "
                f"(max error {report.max_error:.4f})",
                phase="VERIFIED", artifact=RESULT_CIPHERTEXT
            )
        return report
