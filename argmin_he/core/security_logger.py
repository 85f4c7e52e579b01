"""
Security Logger for the Argmin Protocol
=======================================
Audit trail proving the worker only ever handles public material.

Purpose:
- Log every generate / publish / load / evaluate / decrypt step per role
- Classify the data each step touched (ciphertext, public or secret keys, plaintext)
- Flag any worker access to secret key material or plaintext as a violation
- Record fatal protocol errors with the phase and artifact that failed
"""

import json
import threading
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


PUBLISHER = "publisher"
WORKER = "worker"


class DataType(Enum):
    """Classification of data handled in an operation"""
    CIPHERTEXT = "ciphertext"
    PUBLIC_KEY = "public_key"        # context, public key, eval / switching / bootstrap keys
    SECRET_KEY = "secret_key"        # never allowed outside the publisher
    PLAINTEXT = "plaintext"          # the publisher's data vector or decrypted result
    PUBLIC_PARAM = "public_param"    # parameter set, vector length, baseG
    METADATA = "metadata"


class OperationType(Enum):
    """Protocol operations recorded in the audit trail"""
    GENERATE = "generate"
    ENCRYPT = "encrypt"
    PUBLISH = "publish"
    LOAD = "load"
    RESET = "reset"
    PRECOMPUTE = "precompute"
    EVALUATE = "evaluate"
    RETURN = "return"
    DECRYPT = "decrypt"
    VERIFY = "verify"
    FAILURE = "failure"


@dataclass
class SecurityLogEntry:
    """Single security audit log entry"""
    timestamp: str
    entity: str          # 'publisher' or 'worker'
    operation: str
    data_types: List[str]
    is_safe: bool
    details: Dict[str, Any]
    sequence_id: int

    def to_dict(self) -> dict:
        return asdict(self)


class SecurityLogger:
    """
    Append-only audit log for one or more protocol runs.

    The worker should ONLY have entries with ciphertext, public key material
    and public parameters. A SECRET_KEY or PLAINTEXT entry for the worker is
    a security violation.
    """

    def __init__(self, log_file: Optional[str] = None):
        """
        Initialize security logger.

        Args:
            log_file: Optional JSON-lines file to persist entries
        """
        self._entries: List[SecurityLogEntry] = []
        self._lock = threading.Lock()
        self._sequence = 0
        self.log_file = Path(log_file) if log_file else None

        if self.log_file and self.log_file.exists():
            self._load_from_file()

    def log(self,
            entity: str,
            operation: OperationType,
            data_types: List[DataType],
            details: Dict[str, Any] = None) -> SecurityLogEntry:
        """
        Log a security-relevant operation.

        Args:
            entity: Role that performed the operation
            operation: Type of operation performed
            data_types: Types of data involved in the operation
            details: Additional context (artifact name, phase, sizes)

        Returns:
            The created log entry
        """
        with self._lock:
            self._sequence += 1

            is_safe = True
            if entity == WORKER and (DataType.SECRET_KEY in data_types or
                                     DataType.PLAINTEXT in data_types):
                is_safe = False

            entry = SecurityLogEntry(
                timestamp=datetime.now().isoformat(),
                entity=entity,
                operation=operation.value,
                data_types=[dt.value for dt in data_types],
                is_safe=is_safe,
                details=details or {},
                sequence_id=self._sequence
            )

            self._entries.append(entry)

            if self.log_file:
                self._append_to_file(entry)

            return entry

    def log_publish(self, entity: str, artifact: str, data_type: DataType, size_bytes: int) -> SecurityLogEntry:
        """Log an artifact written to the store"""
        return self.log(
            entity=entity,
            operation=OperationType.PUBLISH,
            data_types=[data_type],
            details={'artifact': artifact, 'size_bytes': size_bytes}
        )

    def log_load(self, entity: str, artifact: str, data_type: DataType, size_bytes: int) -> SecurityLogEntry:
        """Log an artifact read from the store"""
        return self.log(
            entity=entity,
            operation=OperationType.LOAD,
            data_types=[data_type],
            details={'artifact': artifact, 'size_bytes': size_bytes}
        )

    def log_failure(self, entity: str, error) -> SecurityLogEntry:
        """Log a fatal protocol error"""
        return self.log(
            entity=entity,
            operation=OperationType.FAILURE,
            data_types=[DataType.METADATA],
            details=error.to_dict()
        )

    def get_all_entries(self) -> List[SecurityLogEntry]:
        return list(self._entries)

    def get_entries_for_entity(self, entity: str) -> List[SecurityLogEntry]:
        return [e for e in self._entries if e.entity == entity]

    def get_violations(self) -> List[SecurityLogEntry]:
        return [e for e in self._entries if not e.is_safe]

    def verify_no_violations(self) -> bool:
        return len(self.get_violations()) == 0

    def artifacts_for(self, entity: str, operation: OperationType) -> List[str]:
        """Artifact names an entity published or loaded, in order"""
        return [
            e.details['artifact'] for e in self._entries
            if e.entity == entity and e.operation == operation.value and 'artifact' in e.details
        ]

    def get_worker_summary(self) -> Dict[str, Any]:
        """
        Summary of worker operations for audit.

        Proves the worker never touched secret key material or plaintext.
        """
        worker_entries = self.get_entries_for_entity(WORKER)

        data_types_seen = set()
        for entry in worker_entries:
            data_types_seen.update(entry.data_types)

        exposed = {DataType.SECRET_KEY.value, DataType.PLAINTEXT.value} & data_types_seen
        return {
            'total_operations': len(worker_entries),
            'data_types_handled': sorted(data_types_seen),
            'secret_key_access': DataType.SECRET_KEY.value in data_types_seen,
            'plaintext_access': DataType.PLAINTEXT.value in data_types_seen,
            'violations': len([e for e in worker_entries if not e.is_safe]),
            'privacy_preserved': not exposed
        }

    def generate_audit_report(self) -> Dict[str, Any]:
        worker_summary = self.get_worker_summary()

        return {
            'report_generated': datetime.now().isoformat(),
            'total_log_entries': len(self._entries),
            'entities': sorted(set(e.entity for e in self._entries)),
            'published_artifacts': self.artifacts_for(PUBLISHER, OperationType.PUBLISH),
            'worker_privacy_audit': worker_summary,
            'security_violations': [e.to_dict() for e in self.get_violations()],
            'conclusion': (
                "PRIVACY PRESERVED: Worker never accessed secret keys or plaintext."
                if worker_summary['privacy_preserved']
                else "PRIVACY VIOLATION: Worker accessed secret keys or plaintext!"
            )
        }

    def _append_to_file(self, entry: SecurityLogEntry):
        with open(self.log_file, 'a') as f:
            f.write(json.dumps(entry.to_dict()) + '\n')

    def _load_from_file(self):
        with open(self.log_file, 'r') as f:
            for line in f:
                if line.strip():
                    data = json.loads(line)
                    self._entries.append(SecurityLogEntry(**data))
                    self._sequence = max(self._sequence, data['sequence_id'])

    def clear(self):
        """Clear all entries (for testing)"""
        self._entries.clear()
        self._sequence = 0
        if self.log_file and self.log_file.exists():
            self.log_file.unlink()
