#!/usr/bin/env python3
"""
Argmin HE - Protocol Runner
===========================
Single entry point for a publish / compute / verify run.

Usage:
    python run_protocol.py                              # [1, 2, 3, 4], in-memory store
    python run_protocol.py --values 4 3 1 1             # Custom data vector
    python run_protocol.py --store-dir ./artifacts      # File exchange
    python run_protocol.py --store-url http://127.0.0.1:8800
    python run_protocol.py --drop-artifact switch-key   # Simulate a lost artifact
    python run_protocol.py serve-artifacts --port 8800  # Artifact server

Exit status is 0 once the result is VERIFIED, 1 otherwise.
"""

import argparse
import json
import sys
from dataclasses import replace
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from argmin_he.core.errors import ProtocolError


def build_store(args, names):
    """Pick the artifact store backend from the command line"""
    from argmin_he.core.artifact_store import (
        DirectoryArtifactStore,
        HttpArtifactStore,
        MemoryArtifactStore,
    )

    if args.store_url:
        return HttpArtifactStore(args.store_url, names=names)
    if args.store_dir:
        return DirectoryArtifactStore(args.store_dir, names=names)
    return MemoryArtifactStore(names=names)


def build_config(args):
    from argmin_he.core.parameters import load_config

    config = load_config(args.config).with_overrides(
        ring_dim=args.ring_dim,
        batch_size=args.batch_size,
        base_depth=args.base_depth,
        scale_mod_size=args.scale_mod_size,
        first_mod_size=args.first_mod_size,
        log_q_lwe=args.log_q_lwe,
        scale_sign=args.scale_sign,
        one_hot=False if args.no_one_hot else None,
        base_g_list=tuple(args.base_g) if args.base_g else None
    )
    if args.tolerance is not None:
        config = replace(config, tolerance=args.tolerance)
    return config


def run_protocol(args, session_factory=None) -> int:
    """
    Run one protocol instance and print the outcome.

    Args:
        args: Parsed command line
        session_factory: Builds one EngineSession per role (default: OpenFHE)
    """
    if session_factory is None:
        from argmin_he.core.openfhe_engine import OpenFHESession
        session_factory = OpenFHESession

    from argmin_he.core.security_logger import SecurityLogger
    from argmin_he.orchestrator import ProtocolOrchestrator

    print("=" * 70)
    print("Scheme-Switching Argmin over Published Artifacts")
    print("Using CKKS -> FHEW -> CKKS (OpenFHE)")
    print("=" * 70)

    try:
        config = build_config(args)
        config.params.validate()
        store = build_store(args, config.names)
    except ProtocolError as e:
        print(f"\n✗ {e.describe()}")
        return 1

    params = config.params
    print("\n[1] CONFIGURATION")
    print("-" * 40)
    print(f"  Values: {args.values}")
    print(f"  Ring dimension: {params.ring_dim}, batch size: {params.batch_size}")
    print(f"  Multiplicative depth: {params.mult_depth}")
    print(f"  FHEW modulus: 2^{params.log_q_lwe}, baseG: {list(params.base_g_list)}")
    print(f"  One-hot: {params.one_hot}, tolerance: {config.tolerance}")
    print(f"  Store: {type(store).__name__}")

    if args.fresh:
        store.clear()
        print("  Store cleared")

    logger = SecurityLogger(args.audit_log)

    def drop_artifacts(target_store):
        for name in args.drop_artifact or []:
            removed = target_store.delete(name)
            print(f"  Dropped '{name}'" if removed else f"  '{name}' was not published")

    orchestrator = ProtocolOrchestrator(
        config=config,
        store=store,
        publisher_session=session_factory(),
        worker_session=session_factory(),
        values=args.values,
        security_logger=logger
    )

    print("\n[2] PROTOCOL RUN")
    print("-" * 40)
    result = orchestrator.run(after_publish=drop_artifacts)

    for transition in result.history:
        print(f"  ✓ {transition.from_state} -> {transition.to_state} "
              f"({transition.elapsed_ms:.1f} ms)")

    print("\n[3] SECURITY AUDIT")
    print("-" * 40)
    audit = logger.generate_audit_report()
    worker_audit = audit['worker_privacy_audit']
    print(f"  Total operations logged: {audit['total_log_entries']}")
    print(f"  Artifacts published: {len(audit['published_artifacts'])}")
    print(f"  Worker secret key access: {worker_audit['secret_key_access']}")
    print(f"  Worker plaintext access: {worker_audit['plaintext_access']}")
    print(f"\n  CONCLUSION: {audit['conclusion']}")

    if args.report:
        with open(args.report, 'w') as f:
            json.dump({'run': result.to_dict(), 'audit': audit}, f, indent=2)
        print(f"  Report written to {args.report}")

    if args.clear:
        store.clear()

    print("\n" + "=" * 70)
    if not result.succeeded:
        print(f"✗ Run failed in {result.failed_phase}")
        print(f"  {result.error.describe()}")
        print("=" * 70)
        return 1

    report = result.report
    print(f"✓ VERIFIED in {result.total_ms:.1f} ms")
    print(f"  Decrypted: {report.rounded}")
    print(f"  Expected:  {report.expected}")
    print(f"  Max error: {report.max_error:.2e}")
    print("=" * 70)
    return 0


def serve_artifacts(args) -> int:
    """Run the artifact server"""
    from argmin_he.server.artifact_server import run_server

    print("=" * 70)
    print("Argmin HE - Artifact Server")
    print("=" * 70)
    print(f"\nListening on http://{args.host}:{args.port}")
    print(f"Backend: {args.directory or 'memory'}")

    run_server(host=args.host, port=args.port, directory=args.directory)
    return 0


def main(argv=None, session_factory=None) -> int:
    parser = argparse.ArgumentParser(
        description="Outsourced argmin over CKKS/FHEW scheme switching"
    )
    parser.add_argument('--values', type=float, nargs='+', default=[1.0, 2.0, 3.0, 4.0],
                        help='Data vector to encrypt (default: 1 2 3 4)')
    store_group = parser.add_mutually_exclusive_group()
    store_group.add_argument('--store-dir', help='Exchange artifacts through this directory')
    store_group.add_argument('--store-url', help='Exchange artifacts through an artifact server')
    parser.add_argument('--config', help='JSON configuration file')
    parser.add_argument('--ring-dim', type=int, help='CKKS ring dimension')
    parser.add_argument('--batch-size', type=int, help='CKKS batch size')
    parser.add_argument('--base-depth', type=int, help='Base multiplicative depth')
    parser.add_argument('--scale-mod-size', type=int, help='Scaling modulus bits')
    parser.add_argument('--first-mod-size', type=int, help='First modulus bits')
    parser.add_argument('--log-q-lwe', type=int, help='FHEW ciphertext modulus bits')
    parser.add_argument('--scale-sign', type=float, help='Sign evaluation scaling')
    parser.add_argument('--base-g', type=int, nargs='+', help='baseG values to publish bundles for')
    parser.add_argument('--no-one-hot', action='store_true',
                        help='Request a non-one-hot argmin indicator')
    parser.add_argument('--tolerance', type=float, help='Verification tolerance (default: 0.05)')
    parser.add_argument('--drop-artifact', action='append', metavar='NAME',
                        help='Delete a published artifact before the worker runs')
    parser.add_argument('--audit-log', help='Append audit entries to this JSON-lines file')
    parser.add_argument('--report', help='Write the run result and audit report as JSON')
    parser.add_argument('--fresh', action='store_true', help='Clear the store before publishing')
    parser.add_argument('--clear', action='store_true', help='Clear the store after the run')

    subparsers = parser.add_subparsers(dest='command')
    serve = subparsers.add_parser('serve-artifacts', help='Run the artifact server')
    serve.add_argument('--host', default='127.0.0.1', help='Bind address (default: 127.0.0.1)')
    serve.add_argument('--port', type=int, default=8800, help='Port (default: 8800)')
    serve.add_argument('--directory', help='Persist artifacts in this directory')

    args = parser.parse_args(argv)

    if args.command == 'serve-artifacts':
        return serve_artifacts(args)
    return run_protocol(args, session_factory)


if __name__ == "__main__":
    sys.exit(main())
