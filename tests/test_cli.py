"""
Command Line Tests
==================
Exit codes and printed output of run_protocol.py.
"""

import json

from fakes import PlaintextSession

import run_protocol


class TestRunProtocolCli:
    """Tests for the protocol runner"""

    def test_verified_run(self, capsys):
        code = run_protocol.main(['--values', '4', '3', '1', '1'], session_factory=PlaintextSession)
        out = capsys.readouterr().out

        assert code == 0
        assert "VERIFIED" in out
        assert "[0.0, 0.0, 1.0, 0.0]" in out
        assert "PRIVACY PRESERVED" in out

    def test_dropped_artifact_exits_1(self, capsys):
        code = run_protocol.main(['--drop-artifact', 'switch-key'], session_factory=PlaintextSession)
        out = capsys.readouterr().out

        assert code == 1
        assert "phase=COMPUTED" in out
        assert "artifact=switch-key" in out

    def test_invalid_parameters_exit_1(self, capsys):
        code = run_protocol.main(['--ring-dim', '100'], session_factory=PlaintextSession)
        assert code == 1
        assert "configuration_error" in capsys.readouterr().out

    def test_directory_store_and_report(self, tmp_path):
        store_dir = tmp_path / "artifacts"
        report = tmp_path / "report.json"
        audit_log = tmp_path / "audit.jsonl"

        code = run_protocol.main(['--store-dir', str(store_dir), '--report', str(report),
                                  '--audit-log', str(audit_log)],
                                 session_factory=PlaintextSession)
        assert code == 0
        assert (store_dir / "result-ciphertext.bin").exists()

        data = json.loads(report.read_text())
        assert data['run']['state'] == "VERIFIED"
        assert data['audit']['worker_privacy_audit']['violations'] == 0
        assert audit_log.read_text().strip()

    def test_reused_directory_needs_fresh(self, tmp_path):
        args = ['--store-dir', str(tmp_path)]
        assert run_protocol.main(args, session_factory=PlaintextSession) == 0
        assert run_protocol.main(args, session_factory=PlaintextSession) == 1
        assert run_protocol.main(args + ['--fresh'], session_factory=PlaintextSession) == 0

    def test_clear_after_run(self, tmp_path):
        code = run_protocol.main(['--store-dir', str(tmp_path), '--clear'],
                                 session_factory=PlaintextSession)
        assert code == 0
        assert list(tmp_path.glob("*.bin")) == []

    def test_config_file_and_overrides(self, tmp_path, capsys):
        config = tmp_path / "config.json"
        config.write_text(json.dumps({'params': {'batch_size': 8, 'ring_dim': 128},
                                      'tolerance': 0.01}))
        code = run_protocol.main(['--config', str(config), '--values', '9', '8', '7', '6', '5',
                                  '--base-g', '16384', '262144'],
                                 session_factory=PlaintextSession)
        out = capsys.readouterr().out

        assert code == 0
        assert "batch size: 8" in out
        assert "[16384, 262144]" in out
        assert "tolerance: 0.01" in out
