"""
Protocol Orchestrator
=====================
Drives one publish / compute / verify run through a strict state machine:

    INIT -> CONTEXT_READY -> KEYS_GENERATED -> PUBLISHED
         -> COMPUTED -> RETURNED -> VERIFIED

Each step is one method. Steps must be called in order; the first
ProtocolError ends the run and every later step is refused. run() executes
all steps, catches errors in one place and reports the outcome as a
RunResult value.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from .core.artifact_store import ArtifactStore
from .core.engine import EngineSession
from .core.errors import ProtocolError, ProtocolStateError
from .core.parameters import ProtocolConfig
from .core.security_logger import PUBLISHER, SecurityLogger, WORKER
from .publisher.key_material import GeneratedMaterial, KeyMaterialGenerator
from .publisher.verifier import VerificationReport, Verifier
from .worker.compute_engine import RemoteComputeEngine


class ProtocolState(Enum):
    """Protocol phases, in the only order they can be reached"""
    INIT = "INIT"
    CONTEXT_READY = "CONTEXT_READY"
    KEYS_GENERATED = "KEYS_GENERATED"
    PUBLISHED = "PUBLISHED"
    COMPUTED = "COMPUTED"
    RETURNED = "RETURNED"
    VERIFIED = "VERIFIED"


# Steps executed by the worker; everything else runs on the publisher
WORKER_STATES = frozenset({ProtocolState.COMPUTED, ProtocolState.RETURNED})


@dataclass
class StateTransition:
    """One completed step"""
    from_state: str
    to_state: str
    timestamp: str
    elapsed_ms: float

    def to_dict(self) -> dict:
        return {
            'from': self.from_state,
            'to': self.to_state,
            'timestamp': self.timestamp,
            'elapsed_ms': round(self.elapsed_ms, 2)
        }


@dataclass
class RunResult:
    """Outcome of ProtocolOrchestrator.run()"""
    state: ProtocolState
    failed_phase: Optional[str] = None
    error: Optional[ProtocolError] = None
    report: Optional[VerificationReport] = None
    history: List[StateTransition] = field(default_factory=list)
    material: Optional[Dict] = None

    @property
    def succeeded(self) -> bool:
        return self.state == ProtocolState.VERIFIED and self.error is None

    @property
    def total_ms(self) -> float:
        return sum(t.elapsed_ms for t in self.history)

    def to_dict(self) -> dict:
        return {
            'state': self.state.value,
            'succeeded': self.succeeded,
            'failed_phase': self.failed_phase,
            'error': self.error.to_dict() if self.error else None,
            'report': self.report.to_dict() if self.report else None,
            'history': [t.to_dict() for t in self.history],
            'material': self.material,
            'total_ms': round(self.total_ms, 2)
        }


class ProtocolOrchestrator:
    """
    Coordinates the publisher and the worker for a single run.

    The publisher and worker each own an EngineSession. The orchestrator
    hands the worker nothing but the store: everything it needs must come
    from published artifacts.

    Usage:
        orchestrator = ProtocolOrchestrator(config, store, OpenFHESession(),
                                            OpenFHESession(), [1, 2, 3, 4])
        result = orchestrator.run()
        if result.succeeded:
            print(result.report.rounded)
    """

    def __init__(self,
                 config: ProtocolConfig,
                 store: ArtifactStore,
                 publisher_session: EngineSession,
                 worker_session: EngineSession,
                 values: Sequence[float],
                 security_logger: Optional[SecurityLogger] = None):
        """
        Args:
            config: Parameters, artifact naming and verification tolerance
            store: Artifact store shared by both roles
            publisher_session: Engine session of the data owner
            worker_session: Engine session of the computing party
            values: Data vector to publish encrypted
            security_logger: Security audit logger
        """
        self.config = config
        self.store = store
        self.values = [float(v) for v in values]
        self.logger = security_logger

        self.generator = KeyMaterialGenerator(publisher_session, security_logger)
        self.worker = RemoteComputeEngine(worker_session,
                                          names=config.names,
                                          base_g_list=config.params.base_g_list,
                                          security_logger=security_logger)
        self.verifier = Verifier(publisher_session, config.tolerance, security_logger)

        self.state = ProtocolState.INIT
        self.error: Optional[ProtocolError] = None
        self.material: Optional[GeneratedMaterial] = None
        self.report: Optional[VerificationReport] = None
        self.history: List[StateTransition] = []

    @property
    def failed(self) -> bool:
        return self.error is not None

    def _advance(self,
                 expected: ProtocolState,
                 target: ProtocolState,
                 action: Callable[[], None]):
        if self.error is not None:
            raise ProtocolStateError(
                f"Run already failed in {self.error.phase}; start a new run",
                phase=target.value
            )
        if self.state != expected:
            raise ProtocolStateError(
                f"Cannot move to {target.value} from {self.state.value} "
                f"(requires {expected.value})",
                phase=target.value
            )

        start_time = time.time()
        try:
            action()
        except ProtocolError as e:
            if e.phase is None:
                e.phase = target.value
            self.error = e
            if self.logger:
                entity = WORKER if target in WORKER_STATES else PUBLISHER
                self.logger.log_failure(entity, e)
            raise

        self.history.append(StateTransition(
            from_state=self.state.value,
            to_state=target.value,
            timestamp=datetime.now().isoformat(),
            elapsed_ms=(time.time() - start_time) * 1000
        ))
        self.state = target

    # ==================== STEPS ====================

    def build_context(self):
        """INIT -> CONTEXT_READY"""
        self._advance(ProtocolState.INIT, ProtocolState.CONTEXT_READY,
                      lambda: self.generator.build_context(self.config.params))

    def generate_keys(self):
        """CONTEXT_READY -> KEYS_GENERATED: key pair, switching material, initial ciphertext"""
        def action():
            self.material = self.generator.generate_keys(self.config.params, self.values)

        self._advance(ProtocolState.CONTEXT_READY, ProtocolState.KEYS_GENERATED, action)

    def publish(self):
        """KEYS_GENERATED -> PUBLISHED: every public artifact goes to the store"""
        def action():
            records = self.generator.build_records(self.material, self.config.names)
            self.generator.publish(records, self.store)

        self._advance(ProtocolState.KEYS_GENERATED, ProtocolState.PUBLISHED, action)

    def compute(self):
        """PUBLISHED -> COMPUTED: worker loads everything and evaluates argmin"""
        def action():
            loaded = self.worker.load_artifacts(self.store)
            self.worker.precompute(scale_sign=self.config.params.scale_sign)
            self.worker.eval_argmin(loaded.ciphertext, loaded.public_key,
                                    num_values=loaded.ciphertext.slots,
                                    num_outputs=loaded.ciphertext.slots)

        self._advance(ProtocolState.PUBLISHED, ProtocolState.COMPUTED, action)

    def return_result(self):
        """COMPUTED -> RETURNED"""
        self._advance(ProtocolState.COMPUTED, ProtocolState.RETURNED,
                      lambda: self.worker.return_result(self.store))

    def verify(self) -> VerificationReport:
        """RETURNED -> VERIFIED: publisher decrypts and checks the indicator"""
        def action():
            self.report = self.verifier.verify(self.store, self.material)

        self._advance(ProtocolState.RETURNED, ProtocolState.VERIFIED, action)
        return self.report

    # ==================== DRIVER ====================

    def run(self, after_publish: Optional[Callable[[ArtifactStore], None]] = None) -> RunResult:
        """
        Execute every step in order and stop at the first failure.

        Args:
            after_publish: Called with the store between publish and compute
                (lets a caller tamper with or drop artifacts)

        Returns:
            RunResult; failures are reported in it, never raised
        """
        steps = [
            self.build_context,
            self.generate_keys,
            self.publish,
            self.compute,
            self.return_result,
            self.verify,
        ]
        try:
            for step in steps:
                step()
                if step == self.publish and after_publish is not None:
                    after_publish(self.store)
        except ProtocolError as e:
            return RunResult(
                state=self.state,
                failed_phase=e.phase,
                error=e,
                history=list(self.history),
                material=self.material.summary() if self.material else None
            )

        return RunResult(
            state=self.state,
            report=self.report,
            history=list(self.history),
            material=self.material.summary() if self.material else None
        )

    def get_status(self) -> Dict:
        return {
            'state': self.state.value,
            'failed': self.failed,
            'error': self.error.to_dict() if self.error else None,
            'history': [t.to_dict() for t in self.history],
            'worker': self.worker.get_stats()
        }
