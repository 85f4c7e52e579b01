"""
Configuration Tests
===================
Tests for ParameterSet validation, artifact naming and config files.
"""

import json

import pytest

from argmin_he.core.errors import ConfigurationError, KeyMismatch, ProtocolError
from argmin_he.core.parameters import (
    ArtifactNames,
    DEFAULT_BASE_G,
    ParameterSet,
    ProtocolConfig,
    load_config,
)


class TestParameterSet:
    """Tests for ParameterSet defaults and validation"""

    def test_default_parameters(self, params):
        """Defaults match the OpenFHE scheme-switching example"""
        assert params.ring_dim == 64
        assert params.batch_size == 4
        assert params.mult_depth == 15, "depth is 13 + log2(4)"
        assert params.modulus_lwe == 1 << 25
        assert params.base_g_list == (DEFAULT_BASE_G,)
        assert params.one_hot is True
        assert params.validate() is params

    def test_depth_grows_with_batch(self):
        assert ParameterSet(batch_size=16).mult_depth == 17

    @pytest.mark.parametrize("overrides", [
        {'ring_dim': 100},
        {'batch_size': 3},
        {'batch_size': 64},
        {'base_depth': 0},
        {'scale_mod_size': 60, 'first_mod_size': 60},
        {'first_mod_size': 61},
        {'log_q_lwe': 40},
        {'scale_sign': 0.0},
        {'base_g_list': ()},
        {'base_g_list': (3,)},
        {'base_g_list': (1 << 18, 1 << 18)},
    ])
    def test_invalid_parameters(self, overrides):
        """Each bad combination is rejected before context generation"""
        with pytest.raises(ConfigurationError) as exc_info:
            ParameterSet(**overrides).validate()
        assert exc_info.value.phase == "CONTEXT_READY"

    def test_problems_are_reported_together(self):
        with pytest.raises(ConfigurationError) as exc_info:
            ParameterSet(ring_dim=100, log_q_lwe=1).validate()
        message = str(exc_info.value)
        assert "ring_dim" in message and "log_q_lwe" in message

    def test_dict_roundtrip(self, params):
        restored = ParameterSet.from_dict(params.to_dict())
        assert restored == params

    def test_from_dict_rejects_unknown_fields(self):
        with pytest.raises(ConfigurationError):
            ParameterSet.from_dict({'ring_dimension': 64})

    def test_immutable(self, params):
        with pytest.raises(Exception):
            params.ring_dim = 128


class TestArtifactNames:
    """Tests for logical name resolution"""

    def test_identity_by_default(self):
        names = ArtifactNames()
        assert names.store_key("switch-key") == "switch-key"
        assert names.logical_name("switch-key") == "switch-key"

    def test_mapping_and_reverse_lookup(self):
        names = ArtifactNames(mapping={'context': 'cc'})
        assert names.store_key('context') == 'cc'
        assert names.logical_name('cc') == 'context'

    def test_bundle_names_carry_base_g(self):
        names = ArtifactNames()
        assert names.refresh_key_name(262144) == "262144-refresh-key"
        assert names.key_switch_key_name(262144) == "262144-key-switch-key"

    def test_publisher_names_order(self):
        names = ArtifactNames().publisher_names([1 << 18])
        assert names[0] == "context"
        assert names[-1] == "initial-ciphertext"
        assert names.index("comparison-context") < names.index("refresh-key")
        assert "262144-key-switch-key" in names
        assert "result-ciphertext" not in names, "the worker writes the result"

    def test_from_dict_validation(self):
        with pytest.raises(ConfigurationError):
            ArtifactNames.from_dict({'mapping': {'secret-key': 'sk'}})
        with pytest.raises(ConfigurationError):
            ArtifactNames.from_dict({'mapping': {'context': 'x', 'public-key': 'x'}})


class TestProtocolConfig:
    """Tests for config files and overrides"""

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "config.json"
        config = ProtocolConfig(params=ParameterSet(batch_size=8, ring_dim=128),
                                names=ArtifactNames(mapping={'context': 'cc'}),
                                tolerance=0.1)
        config.save(str(path))

        loaded = load_config(str(path))
        assert loaded.params.batch_size == 8
        assert loaded.names.store_key('context') == 'cc'
        assert loaded.tolerance == 0.1

    def test_partial_file_uses_defaults(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({'params': {'log_q_lwe': 20}}))
        loaded = ProtocolConfig.from_file(str(path))
        assert loaded.params.log_q_lwe == 20
        assert loaded.params.ring_dim == 64

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_config(str(tmp_path / "absent.json"))

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError):
            load_config(str(path))

    def test_no_path_gives_defaults(self):
        assert load_config() == ProtocolConfig()

    def test_overrides_skip_none(self, config):
        updated = config.with_overrides(ring_dim=128, batch_size=None)
        assert updated.params.ring_dim == 128
        assert updated.params.batch_size == config.params.batch_size
        assert config.with_overrides(ring_dim=None) is config

    def test_unknown_override(self, config):
        with pytest.raises(ConfigurationError):
            config.with_overrides(ring_dimension=128)


class TestProtocolErrors:
    """Tests for error descriptions"""

    def test_describe_names_phase_and_artifact(self):
        error = KeyMismatch("wrong baseG", phase="COMPUTED", artifact="262144-refresh-key")
        assert error.describe() == "[key_mismatch phase=COMPUTED artifact=262144-refresh-key] wrong baseG"
        assert error.to_dict()['kind'] == "key_mismatch"

    def test_errors_are_value_errors(self):
        assert issubclass(ProtocolError, ValueError)
        assert isinstance(ConfigurationError("x"), ProtocolError)
